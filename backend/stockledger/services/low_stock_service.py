# Overview: Low-stock threshold detection and post-commit listener dispatch.

from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Callable

from flask import Flask, current_app

from ..extensions import LOW_STOCK_LISTENERS


@dataclass(frozen=True)
class LowStockEvent:
    shop_id: int
    item_id: int
    new_quantity: int
    low_stock_threshold: int
    previous_quantity: int

    def to_dict(self) -> dict:
        return asdict(self)


LowStockListener = Callable[[LowStockEvent], None]


def crossed_low_stock_threshold(old_quantity: int, new_quantity: int, threshold: int | None) -> bool:
    """True only for the operation that takes the balance from >= threshold to below it."""
    if threshold is None:
        return False
    return old_quantity >= threshold and new_quantity < threshold


def effective_threshold(item_threshold: int | None) -> int | None:
    if item_threshold is not None:
        return item_threshold
    return current_app.config.get("DEFAULT_LOW_STOCK_THRESHOLD")


def register_low_stock_listener(app: Flask, listener: LowStockListener) -> None:
    app.extensions.setdefault(LOW_STOCK_LISTENERS, []).append(listener)


def log_low_stock(event: LowStockEvent) -> None:
    """Default listener: leave a trace in the app log for whoever tails it."""
    current_app.logger.warning(
        "Low stock: shop %s item %s dropped from %s to %s (threshold %s)",
        event.shop_id,
        event.item_id,
        event.previous_quantity,
        event.new_quantity,
        event.low_stock_threshold,
    )


def dispatch(events: list[LowStockEvent]) -> None:
    """
    Hand events to every registered listener.

    Runs after commit: a failing listener is logged and skipped, it can
    never undo the stock change that triggered it.
    """
    listeners = current_app.extensions.get(LOW_STOCK_LISTENERS, [])
    for event in events:
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                current_app.logger.exception(
                    "Low-stock listener %r failed for shop %s item %s",
                    listener,
                    event.shop_id,
                    event.item_id,
                )

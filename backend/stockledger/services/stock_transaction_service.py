# Overview: Stock transaction coordinator; atomic sales, stock-ins, adjustments, transfers and returns.

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import MovementEntry, SaleLineItem, SaleTransaction
from ..models.stock import (
    KIND_ADJUSTMENT,
    KIND_RETURN,
    KIND_SALE,
    KIND_STOCK_IN,
    KIND_TRANSFER_IN,
    KIND_TRANSFER_OUT,
)
from ..time_utils import utcnow
from ..validation import (
    InsufficientStockError,
    NotFoundError,
    ValidationError,
    clean_optional_str,
    coerce_int,
    require_non_negative_int,
    require_positive_int,
    require_str,
)
from . import (
    catalog_service,
    low_stock_service,
    movement_ledger_service,
    sequence_service,
    stock_account_service,
)
from .concurrency import (
    ConsistencyViolationError,
    begin_locked_write,
    lock_timeout_guard,
    release_locks,
)

"""
Stock transaction coordinator (authoritative)

Every public operation is one all-or-nothing DB transaction:

    Validating -> Locking -> Applying -> Committed
    Validating -> Rejected                       (nothing touched)
    Locking | Applying -> RolledBack             (nothing survives)

- Validating: input shape, catalog/shop lookups. Reads only.
- Locking: bounded-wait write phase, then one row lock per (shop, item) in
  ascending order. Availability is checked against the freshly locked rows.
- Applying: balance delta + ledger entry per pair, then operation-specific
  writes (invoice number, sale header and lines).
- Committed: locks released; low-stock listeners run after the commit.

No network or user-facing I/O happens while locks are held. Retrying after
ConcurrencyTimeoutError is the caller's decision; the coordinator never
retries on its own.
"""


@dataclass(frozen=True)
class StockIntent:
    """One signed quantity change the coordinator is asked to apply."""
    shop_id: int
    item_id: int
    delta: int
    kind: str
    reason: str | None = None

    @property
    def key(self) -> tuple[int, int]:
        return (self.shop_id, self.item_id)


@dataclass(frozen=True)
class SaleLineRequest:
    item_id: int
    quantity: int
    # None means "use the catalog price"
    unit_price_cents: int | None = None


@dataclass
class StockOutcome:
    correlation_id: str
    entries: dict[tuple[int, int], MovementEntry] = field(default_factory=dict)
    quantities: dict[tuple[int, int], int] = field(default_factory=dict)
    result: Any = None


class _ReplayedSale(Exception):
    """A sale with the same idempotency key committed while we waited for locks."""

    def __init__(self, sale_id: int):
        super().__init__(f"sale {sale_id} already committed for this idempotency key")
        self.sale_id = sale_id


def new_correlation_id() -> str:
    return uuid.uuid4().hex


# =============================================================================
# Transaction engine
# =============================================================================

def _check_availability(intents: Iterable[StockIntent], balances: Mapping[tuple[int, int], int]) -> None:
    shortages = []
    shop_ids = set()
    for intent in intents:
        if intent.delta >= 0:
            continue
        available = balances[intent.key]
        if available + intent.delta < 0:
            shortages.append({
                "item_id": intent.item_id,
                "requested": -intent.delta,
                "available": available,
            })
            shop_ids.add(intent.shop_id)
    if shortages:
        raise InsufficientStockError(shortages, shop_id=shop_ids.pop() if len(shop_ids) == 1 else None)


def _execute(
    intents: list[StockIntent],
    *,
    actor_id: str,
    correlation_id: str,
    thresholds: Mapping[tuple[int, int], int | None] | None = None,
    reference_correlation_id: str | None = None,
    guard: Callable[[], None] | None = None,
    finalize: Callable[[dict[tuple[int, int], MovementEntry]], Any] | None = None,
) -> StockOutcome:
    """
    Run intents as one atomic unit.

    guard runs after every lock is held and before anything is written; it
    may raise to abort. finalize runs after the ledger writes, inside the
    same transaction, and its return value becomes outcome.result.
    """
    keys = [intent.key for intent in intents]
    if not keys:
        raise ValidationError("Nothing to apply")
    if len(set(keys)) != len(keys):
        raise ValidationError("Each shop/item pair may appear only once per operation")

    shop_ids = {shop_id for shop_id, _ in keys}
    context_shop = next(iter(shop_ids)) if len(shop_ids) == 1 else None
    ordered = sorted(intents, key=lambda intent: intent.key)

    previous: dict[tuple[int, int], int] = {}
    outcome = StockOutcome(correlation_id=correlation_id)

    try:
        with lock_timeout_guard(shop_id=context_shop, item_ids=[item_id for _, item_id in keys]):
            begin_locked_write()
            accounts = stock_account_service.lock_accounts(keys)
            if guard is not None:
                guard()

            previous = {key: account.quantity for key, account in accounts.items()}
            _check_availability(intents, previous)

            occurred_at = utcnow()
            for intent in ordered:
                new_quantity = stock_account_service.apply_delta(intent.shop_id, intent.item_id, intent.delta)
                entry = MovementEntry(
                    shop_id=intent.shop_id,
                    item_id=intent.item_id,
                    actor_id=actor_id,
                    kind=intent.kind,
                    quantity_delta=intent.delta,
                    resulting_quantity=new_quantity,
                    reason=intent.reason,
                    occurred_at=occurred_at,
                    correlation_id=correlation_id,
                    reference_correlation_id=reference_correlation_id,
                )
                movement_ledger_service.append(entry, prior_quantity=new_quantity - intent.delta)
                outcome.entries[intent.key] = entry
                outcome.quantities[intent.key] = new_quantity

            if finalize is not None:
                outcome.result = finalize(outcome.entries)

            db.session.commit()
    except ConsistencyViolationError:
        db.session.rollback()
        current_app.logger.critical(
            "Stock ledger consistency violation (correlation %s, keys %s)",
            correlation_id,
            sorted(set(keys)),
            exc_info=True,
        )
        raise
    except Exception:
        db.session.rollback()
        raise
    finally:
        release_locks()

    _notify_low_stock(previous, outcome.quantities, thresholds or {})
    return outcome


def _notify_low_stock(
    previous: Mapping[tuple[int, int], int],
    quantities: Mapping[tuple[int, int], int],
    thresholds: Mapping[tuple[int, int], int | None],
) -> None:
    events = []
    for key, new_quantity in quantities.items():
        threshold = thresholds.get(key)
        old_quantity = previous.get(key, 0)
        if low_stock_service.crossed_low_stock_threshold(old_quantity, new_quantity, threshold):
            events.append(low_stock_service.LowStockEvent(
                shop_id=key[0],
                item_id=key[1],
                new_quantity=new_quantity,
                low_stock_threshold=threshold,
                previous_quantity=old_quantity,
            ))
    if events:
        low_stock_service.dispatch(events)


def _thresholds(shop_id: int, items: Mapping[int, catalog_service.CatalogItem]) -> dict[tuple[int, int], int | None]:
    return {
        (shop_id, item.id): low_stock_service.effective_threshold(item.low_stock_threshold)
        for item in items.values()
    }


def _require_actor(actor_id: Any) -> str:
    return require_str(actor_id, "actor_id", max_length=64)


# =============================================================================
# Sale input handling
# =============================================================================

def _coerce_sale_line(raw: Any, position: int) -> SaleLineRequest:
    label = f"line_items[{position}]"
    if isinstance(raw, SaleLineRequest):
        item_id, quantity, unit_price = raw.item_id, raw.quantity, raw.unit_price_cents
    elif isinstance(raw, Mapping):
        item_id, quantity, unit_price = raw.get("item_id"), raw.get("quantity"), raw.get("unit_price_cents")
    else:
        raise ValidationError(f"{label} must be an object with item_id and quantity")

    if item_id is None:
        raise ValidationError(f"{label}.item_id is required")
    if quantity is None:
        raise ValidationError(f"{label}.quantity is required")

    return SaleLineRequest(
        item_id=coerce_int(item_id, f"{label}.item_id"),
        quantity=require_positive_int(quantity, f"{label}.quantity"),
        unit_price_cents=(
            None if unit_price is None else require_non_negative_int(unit_price, f"{label}.unit_price_cents")
        ),
    )


def _coerce_lines(line_items: Any) -> list[SaleLineRequest]:
    if line_items is None or isinstance(line_items, (str, bytes, Mapping)):
        raise ValidationError("line_items must be a list")
    return [_coerce_sale_line(raw, position) for position, raw in enumerate(line_items)]


def merge_line_items(line_items: Any) -> list[SaleLineRequest]:
    """
    Collapse repeated items into one line, keeping first-seen order.

    Quantities add up. Two lines for the same item with different explicit
    prices cannot be merged and are rejected rather than one overwriting
    the other.
    """
    merged: dict[int, SaleLineRequest] = {}
    for line in _coerce_lines(line_items):
        current = merged.get(line.item_id)
        if current is None:
            merged[line.item_id] = line
            continue
        if (
            current.unit_price_cents is not None
            and line.unit_price_cents is not None
            and current.unit_price_cents != line.unit_price_cents
        ):
            raise ValidationError(f"Item {line.item_id} appears with conflicting unit prices")
        merged[line.item_id] = SaleLineRequest(
            item_id=line.item_id,
            quantity=current.quantity + line.quantity,
            unit_price_cents=current.unit_price_cents if current.unit_price_cents is not None else line.unit_price_cents,
        )
    return list(merged.values())


def _validate_sale_lines(line_items: Any) -> list[SaleLineRequest]:
    lines = _coerce_lines(line_items)
    if not lines:
        raise ValidationError("A sale needs at least one line item")

    seen: set[int] = set()
    duplicates: set[int] = set()
    for line in lines:
        if line.item_id in seen:
            duplicates.add(line.item_id)
        seen.add(line.item_id)
    if duplicates:
        raise ValidationError(
            f"Duplicate item ids in sale: {sorted(duplicates)}; merge them into one line each"
        )
    return lines


def _validate_payment_meta(payment_meta: Mapping | None) -> dict:
    meta = dict(payment_meta or {})
    discount = meta.get("discount_cents")
    return {
        "payment_type": clean_optional_str(meta.get("payment_type"), "payment_type", max_length=32) or "cash",
        "customer_id": clean_optional_str(meta.get("customer_id"), "customer_id", max_length=64),
        "notes": clean_optional_str(meta.get("notes"), "notes"),
        "discount_cents": 0 if discount is None else require_non_negative_int(discount, "discount_cents"),
        "idempotency_key": clean_optional_str(meta.get("idempotency_key"), "idempotency_key", max_length=128),
    }


# =============================================================================
# Public operations
# =============================================================================

def apply_sale(
    shop_id: int,
    merchant_id: int,
    line_items: Any,
    payment_meta: Mapping | None = None,
    *,
    actor_id: str,
) -> SaleTransaction:
    """
    Check out a multi-item sale atomically.

    Every line is decremented, ledgered and invoiced, or none is. When any
    line is short, InsufficientStockError lists every short line with its
    requested and available quantity.

    payment_meta keys: payment_type, customer_id, notes, discount_cents,
    idempotency_key. A repeated idempotency_key for the same shop returns
    the sale committed the first time instead of selling again.
    """
    actor_id = _require_actor(actor_id)
    shop_id = coerce_int(shop_id, "shop_id")
    merchant_id = coerce_int(merchant_id, "merchant_id")
    lines = _validate_sale_lines(line_items)
    meta = _validate_payment_meta(payment_meta)

    # A committed sale replays even if the shop or its items changed since
    idempotency_key = meta["idempotency_key"]
    if idempotency_key is not None:
        existing = find_sale_by_idempotency_key(shop_id, idempotency_key)
        if existing is not None:
            return existing

    shop = catalog_service.require_active_shop(shop_id, merchant_id=merchant_id)
    items = catalog_service.get_items_for_shop(shop, [line.item_id for line in lines])

    priced = []
    for line in lines:
        item = items[line.item_id]
        unit_price = line.unit_price_cents if line.unit_price_cents is not None else item.price_cents
        if unit_price is None:
            raise ValidationError(f"Inventory item {item.id} has no price")
        priced.append((line, item, unit_price, unit_price * line.quantity))

    subtotal = sum(line_total for _, _, _, line_total in priced)
    discount = meta["discount_cents"]
    if discount > subtotal:
        raise ValidationError("discount_cents cannot exceed the sale subtotal")

    correlation_id = new_correlation_id()
    intents = [StockIntent(shop_id, line.item_id, -line.quantity, KIND_SALE) for line in lines]

    def _guard() -> None:
        if idempotency_key is None:
            return
        committed_id = (
            db.session.query(SaleTransaction.id)
            .filter_by(shop_id=shop_id, idempotency_key=idempotency_key)
            .scalar()
        )
        if committed_id is not None:
            raise _ReplayedSale(committed_id)

    def _persist(entries: dict[tuple[int, int], MovementEntry]) -> SaleTransaction:
        sale = SaleTransaction(
            shop_id=shop_id,
            merchant_id=merchant_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            invoice_number=sequence_service.next_invoice_number(),
            idempotency_key=idempotency_key,
            payment_type=meta["payment_type"],
            customer_id=meta["customer_id"],
            notes=meta["notes"],
            subtotal_cents=subtotal,
            discount_cents=discount,
            total_cents=subtotal - discount,
            created_at=utcnow(),
            lines=[
                SaleLineItem(
                    line_number=number,
                    item_id=line.item_id,
                    item_name=item.name,
                    item_sku=item.sku,
                    quantity=line.quantity,
                    unit_price_cents=unit_price,
                    line_total_cents=line_total,
                    movement_entry_id=entries[(shop_id, line.item_id)].id,
                )
                for number, (line, item, unit_price, line_total) in enumerate(priced, start=1)
            ],
        )
        db.session.add(sale)
        db.session.flush()
        return sale

    try:
        outcome = _execute(
            intents,
            actor_id=actor_id,
            correlation_id=correlation_id,
            thresholds=_thresholds(shop_id, items),
            guard=_guard,
            finalize=_persist,
        )
    except _ReplayedSale as replay:
        return db.session.get(SaleTransaction, replay.sale_id)
    except IntegrityError:
        # Lost a race on the idempotency key; the winner's sale is the answer
        if idempotency_key is not None:
            existing = find_sale_by_idempotency_key(shop_id, idempotency_key)
            if existing is not None:
                return existing
        raise

    sale = outcome.result
    current_app.logger.info(
        "Sale %s committed: shop %s, %d line(s), total %s cents",
        sale.invoice_number,
        shop_id,
        len(lines),
        sale.total_cents,
    )
    return sale


def apply_stock_in(
    shop_id: int,
    item_id: int,
    quantity: int,
    actor_id: str,
    *,
    reason: str | None = None,
) -> int:
    """Receive units into a shop. Creates the stock account on first use."""
    actor_id = _require_actor(actor_id)
    shop_id = coerce_int(shop_id, "shop_id")
    item_id = coerce_int(item_id, "item_id")
    quantity = require_positive_int(quantity, "quantity")

    shop = catalog_service.require_active_shop(shop_id)
    items = catalog_service.get_items_for_shop(shop, [item_id])

    outcome = _execute(
        [StockIntent(shop_id, item_id, quantity, KIND_STOCK_IN, clean_optional_str(reason, "reason") or "Stock-in")],
        actor_id=actor_id,
        correlation_id=new_correlation_id(),
        thresholds=_thresholds(shop_id, items),
    )
    return outcome.quantities[(shop_id, item_id)]


def apply_stock_in_batch(
    shop_id: int,
    items: Any,
    actor_id: str,
    *,
    reason: str | None = None,
) -> dict[int, int]:
    """
    Receive several items into one shop as a single unit.

    Returns {item_id: new_quantity}. One bad line rejects the whole batch.
    """
    actor_id = _require_actor(actor_id)
    shop_id = coerce_int(shop_id, "shop_id")
    if items is None or isinstance(items, (str, bytes, Mapping)):
        raise ValidationError("items must be a list")

    requested: dict[int, int] = {}
    for position, raw in enumerate(items):
        if not isinstance(raw, Mapping):
            raise ValidationError(f"items[{position}] must be an object with item_id and quantity")
        item_id = coerce_int(raw.get("item_id"), f"items[{position}].item_id")
        if item_id in requested:
            raise ValidationError(f"Duplicate item id {item_id} in stock-in batch")
        requested[item_id] = require_positive_int(raw.get("quantity"), f"items[{position}].quantity")
    if not requested:
        raise ValidationError("A stock-in batch needs at least one item")

    shop = catalog_service.require_active_shop(shop_id)
    catalog_items = catalog_service.get_items_for_shop(shop, list(requested))
    note = clean_optional_str(reason, "reason") or "Stock-in"

    outcome = _execute(
        [StockIntent(shop_id, item_id, quantity, KIND_STOCK_IN, note) for item_id, quantity in requested.items()],
        actor_id=actor_id,
        correlation_id=new_correlation_id(),
        thresholds=_thresholds(shop_id, catalog_items),
    )
    return {item_id: outcome.quantities[(shop_id, item_id)] for item_id in requested}


def apply_adjustment(
    shop_id: int,
    item_id: int,
    delta: int,
    reason: str,
    actor_id: str,
) -> int:
    """
    Manual correction: negative for shrinkage or damage, positive for found stock.

    A reason is mandatory and the result may not go below zero.
    """
    actor_id = _require_actor(actor_id)
    shop_id = coerce_int(shop_id, "shop_id")
    item_id = coerce_int(item_id, "item_id")
    delta = coerce_int(delta, "delta")
    if delta == 0:
        raise ValidationError("delta must not be zero")
    reason = require_str(reason, "reason")

    shop = catalog_service.require_active_shop(shop_id)
    items = catalog_service.get_items_for_shop(shop, [item_id])

    outcome = _execute(
        [StockIntent(shop_id, item_id, delta, KIND_ADJUSTMENT, reason)],
        actor_id=actor_id,
        correlation_id=new_correlation_id(),
        thresholds=_thresholds(shop_id, items),
    )
    return outcome.quantities[(shop_id, item_id)]


def apply_transfer(
    item_id: int,
    from_shop_id: int,
    to_shop_id: int,
    quantity: int,
    actor_id: str,
    *,
    reason: str | None = None,
) -> dict:
    """
    Move units of one item between two shops of the same merchant.

    Both accounts are locked in canonical order; the outgoing and incoming
    entries share one correlation id.
    """
    actor_id = _require_actor(actor_id)
    item_id = coerce_int(item_id, "item_id")
    from_shop_id = coerce_int(from_shop_id, "from_shop_id")
    to_shop_id = coerce_int(to_shop_id, "to_shop_id")
    quantity = require_positive_int(quantity, "quantity")
    if from_shop_id == to_shop_id:
        raise ValidationError("Source and destination shops must be different")

    from_shop = catalog_service.require_active_shop(from_shop_id)
    catalog_service.require_active_shop(to_shop_id, merchant_id=from_shop.merchant_id)
    items = catalog_service.get_items_for_shop(from_shop, [item_id])
    note = clean_optional_str(reason, "reason") or f"Transfer from shop {from_shop_id} to shop {to_shop_id}"

    thresholds = _thresholds(from_shop_id, items)
    thresholds.update(_thresholds(to_shop_id, items))

    outcome = _execute(
        [
            StockIntent(from_shop_id, item_id, -quantity, KIND_TRANSFER_OUT, note),
            StockIntent(to_shop_id, item_id, quantity, KIND_TRANSFER_IN, note),
        ],
        actor_id=actor_id,
        correlation_id=new_correlation_id(),
        thresholds=thresholds,
    )
    return {
        "correlation_id": outcome.correlation_id,
        "item_id": item_id,
        "from_shop_id": from_shop_id,
        "to_shop_id": to_shop_id,
        "from_quantity": outcome.quantities[(from_shop_id, item_id)],
        "to_quantity": outcome.quantities[(to_shop_id, item_id)],
    }


def apply_return(
    sale_id: int,
    item_id: int,
    quantity: int,
    actor_id: str,
    *,
    reason: str | None = None,
) -> int:
    """
    Put units sold on a committed sale back into the shop's stock.

    The sale itself is never edited. Across all returns, no more units of an
    item can come back than the sale sold.
    """
    actor_id = _require_actor(actor_id)
    sale_id = coerce_int(sale_id, "sale_id")
    item_id = coerce_int(item_id, "item_id")
    quantity = require_positive_int(quantity, "quantity")

    sale = get_sale(sale_id)
    line = next((line for line in sale.lines if line.item_id == item_id), None)
    if line is None:
        raise ValidationError(f"Item {item_id} was not sold on sale {sale.invoice_number}")

    shop_id = sale.shop_id
    sold = line.quantity
    sale_correlation_id = sale.correlation_id
    invoice_number = sale.invoice_number

    shop = catalog_service.require_active_shop(shop_id)
    items = catalog_service.get_items_for_shop(shop, [item_id])

    def _guard() -> None:
        already = movement_ledger_service.returned_quantity(sale_correlation_id, item_id)
        if already + quantity > sold:
            raise ValidationError(
                f"Cannot return {quantity} of item {item_id}: "
                f"{sold - already} of {sold} sold on {invoice_number} still returnable"
            )

    outcome = _execute(
        [StockIntent(
            shop_id,
            item_id,
            quantity,
            KIND_RETURN,
            clean_optional_str(reason, "reason") or f"Return for {invoice_number}",
        )],
        actor_id=actor_id,
        correlation_id=new_correlation_id(),
        thresholds=_thresholds(shop_id, items),
        reference_correlation_id=sale_correlation_id,
        guard=_guard,
    )
    return outcome.quantities[(shop_id, item_id)]


# =============================================================================
# Sale reads
# =============================================================================

def get_sale(sale_id: int) -> SaleTransaction:
    sale = db.session.get(SaleTransaction, sale_id)
    if sale is None:
        raise NotFoundError(f"Sale {sale_id} not found")
    return sale


def get_sale_by_invoice(invoice_number: str) -> SaleTransaction:
    sale = db.session.query(SaleTransaction).filter_by(invoice_number=invoice_number).first()
    if sale is None:
        raise NotFoundError(f"Invoice {invoice_number} not found")
    return sale


def find_sale_by_idempotency_key(shop_id: int, idempotency_key: str) -> SaleTransaction | None:
    return (
        db.session.query(SaleTransaction)
        .filter_by(shop_id=shop_id, idempotency_key=idempotency_key)
        .first()
    )

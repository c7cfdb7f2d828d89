# Overview: Stock account reads and the lock-guarded balance mutation used by the coordinator.

from __future__ import annotations

from typing import Iterable

from ..extensions import db
from ..models import StockAccount
from ..time_utils import utcnow
from ..validation import InsufficientStockError
from .concurrency import (
    ConsistencyViolationError,
    holds_lock,
    insert_if_absent,
    lock_for_update,
    mark_locks_held,
)


def ensure_account(shop_id: int, item_id: int) -> None:
    """Materialize a zero-balance account for the pair if none exists yet."""
    insert_if_absent(
        StockAccount,
        {"shop_id": shop_id, "item_id": item_id, "quantity": 0},
        ["shop_id", "item_id"],
    )


def get_balance(shop_id: int, item_id: int, *, commit: bool = True) -> int:
    """
    Current on-hand quantity for (shop, item).

    Lazily creates the zero record when the pair has never been stocked.
    commit=False leaves the materialization to the caller's transaction.
    """
    existing = (
        db.session.query(StockAccount.quantity)
        .filter_by(shop_id=shop_id, item_id=item_id)
        .scalar()
    )
    if existing is not None:
        return int(existing)

    ensure_account(shop_id, item_id)
    if commit:
        db.session.commit()
    else:
        db.session.flush()
    quantity = (
        db.session.query(StockAccount.quantity)
        .filter_by(shop_id=shop_id, item_id=item_id)
        .scalar()
    )
    return int(quantity or 0)


def lock_accounts(keys: Iterable[tuple[int, int]]) -> dict[tuple[int, int], StockAccount]:
    """
    Lock the accounts for every (shop_id, item_id) key in canonical order.

    Ascending order is mandatory: two operations over overlapping item sets
    then always queue on the same first row and can never deadlock.
    populate_existing() forces a fresh read so a stale identity-map copy
    never feeds a validation decision.
    """
    ordered = sorted(set(keys))
    accounts: dict[tuple[int, int], StockAccount] = {}
    for shop_id, item_id in ordered:
        ensure_account(shop_id, item_id)
        account = (
            lock_for_update(
                db.session.query(StockAccount).filter_by(shop_id=shop_id, item_id=item_id)
            )
            .populate_existing()
            .one()
        )
        accounts[(shop_id, item_id)] = account
    mark_locks_held(ordered)
    return accounts


def apply_delta(shop_id: int, item_id: int, delta: int) -> int:
    """
    Add delta to the account and return the new quantity.

    Only the stock coordinator may call this, while it holds the row lock
    and in the same transaction that appends the matching ledger entry.
    """
    key = (shop_id, item_id)
    if not holds_lock(key):
        raise ConsistencyViolationError(
            f"apply_delta on shop {shop_id} item {item_id} without holding its stock lock"
        )

    account = db.session.query(StockAccount).filter_by(shop_id=shop_id, item_id=item_id).one()
    new_quantity = account.quantity + delta
    if new_quantity < 0:
        raise InsufficientStockError(
            [{"item_id": item_id, "requested": -delta, "available": account.quantity}],
            shop_id=shop_id,
        )

    account.quantity = new_quantity
    account.last_movement_at = utcnow()
    return new_quantity


def list_shop_balances(shop_id: int, *, page: int = 1, per_page: int = 50) -> dict:
    """Paginated stock overview for one shop, ordered by item id."""
    per_page = min(max(per_page, 1), 200)
    page = max(page, 1)

    base_query = (
        db.session.query(StockAccount)
        .filter_by(shop_id=shop_id)
        .order_by(StockAccount.item_id.asc())
    )
    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    accounts = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [a.to_dict() for a in accounts],
        "count": len(accounts),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }

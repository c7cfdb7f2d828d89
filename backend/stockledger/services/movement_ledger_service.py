# Overview: Append-only stock movement ledger; audit history and balance reconstruction.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..models import MovementEntry, StockAccount
from ..validation import ValidationError
from ..models.stock import MOVEMENT_KINDS
from .concurrency import ConsistencyViolationError

"""
Movement ledger invariants (authoritative)

- Append-only: rows are never updated or deleted (ORM listeners enforce it).
- Entries are written inside the same DB transaction as the balance change
  they record, while the writer holds that pair's stock lock.
- For each (shop, item), resulting_quantity of an entry equals the previous
  entry's resulting_quantity plus quantity_delta (0 before the first entry).
- The ledger is the source of truth; StockAccount is its materialized sum.
"""


def append(entry: MovementEntry, *, prior_quantity: int) -> int:
    """
    Append one movement and return its id.

    prior_quantity is the account balance immediately before the caller's
    delta. A mismatch with either the entry's snapshot or the ledger's own
    last snapshot means the account and ledger have drifted: that is a
    coordination bug, so the enclosing transaction must abort.
    """
    if entry.kind not in MOVEMENT_KINDS:
        raise ValidationError(f"Unknown movement kind {entry.kind!r}")
    if not entry.correlation_id:
        raise ValidationError("correlation_id is required")

    expected = prior_quantity + entry.quantity_delta
    if entry.resulting_quantity != expected:
        raise ConsistencyViolationError(
            f"Entry for shop {entry.shop_id} item {entry.item_id} claims resulting quantity "
            f"{entry.resulting_quantity}, expected {expected}"
        )

    last_snapshot = (
        db.session.query(MovementEntry.resulting_quantity)
        .filter_by(shop_id=entry.shop_id, item_id=entry.item_id)
        .order_by(MovementEntry.id.desc())
        .limit(1)
        .scalar()
    )
    ledger_prior = last_snapshot if last_snapshot is not None else 0
    if ledger_prior != prior_quantity:
        raise ConsistencyViolationError(
            f"Ledger for shop {entry.shop_id} item {entry.item_id} ends at {ledger_prior} "
            f"but the account held {prior_quantity}"
        )

    db.session.add(entry)
    db.session.flush()  # assigns entry.id without committing
    return entry.id


def history(
    shop_id: int,
    item_id: int,
    *,
    page: int = 1,
    per_page: int | None = None,
    newest_first: bool = True,
) -> dict:
    """
    Paginated movement history for one (shop, item). Read-only.

    Order is deterministic (occurred_at, then id), so repeated calls with the
    same pagination return the same entries while no new writes occur.
    """
    max_per_page = current_app.config.get("HISTORY_MAX_PER_PAGE", 200)
    if per_page is None:
        per_page = current_app.config.get("HISTORY_DEFAULT_PER_PAGE", 50)
    per_page = min(max(per_page, 1), max_per_page)
    page = max(page, 1)

    base_query = db.session.query(MovementEntry).filter_by(shop_id=shop_id, item_id=item_id)
    if newest_first:
        ordering = (MovementEntry.occurred_at.desc(), MovementEntry.id.desc())
    else:
        ordering = (MovementEntry.occurred_at.asc(), MovementEntry.id.asc())

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    entries = base_query.order_by(*ordering).offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": entries,
        "count": len(entries),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
            "order": "newest_first" if newest_first else "oldest_first",
        },
    }


def reconstruct_balance(shop_id: int, item_id: int) -> int:
    """Sum every delta for the pair. Integrity checks only; not on the hot path."""
    total = (
        db.session.query(func.coalesce(func.sum(MovementEntry.quantity_delta), 0))
        .filter(MovementEntry.shop_id == shop_id, MovementEntry.item_id == item_id)
        .scalar()
    )
    return int(total or 0)


def entries_for_correlation(correlation_id: str) -> list[MovementEntry]:
    return (
        db.session.query(MovementEntry)
        .filter_by(correlation_id=correlation_id)
        .order_by(MovementEntry.id.asc())
        .all()
    )


def returned_quantity(reference_correlation_id: str, item_id: int) -> int:
    """Units already returned against a sale for one item."""
    total = (
        db.session.query(func.coalesce(func.sum(MovementEntry.quantity_delta), 0))
        .filter(
            MovementEntry.reference_correlation_id == reference_correlation_id,
            MovementEntry.item_id == item_id,
        )
        .scalar()
    )
    return int(total or 0)


def verify_integrity(shop_id: int | None = None) -> list[dict]:
    """
    Compare every stock account with the sum of its ledger.

    Returns one row per mismatch; an empty list means the ledger and the
    materialized balances agree.
    """
    sums = (
        db.session.query(
            MovementEntry.shop_id,
            MovementEntry.item_id,
            func.sum(MovementEntry.quantity_delta).label("ledger_quantity"),
        )
        .group_by(MovementEntry.shop_id, MovementEntry.item_id)
    )
    if shop_id is not None:
        sums = sums.filter(MovementEntry.shop_id == shop_id)
    ledger_totals = {(row.shop_id, row.item_id): int(row.ledger_quantity or 0) for row in sums.all()}

    accounts = db.session.query(StockAccount)
    if shop_id is not None:
        accounts = accounts.filter_by(shop_id=shop_id)
    account_totals = {(a.shop_id, a.item_id): a.quantity for a in accounts.all()}

    mismatches = []
    for key in sorted(set(ledger_totals) | set(account_totals)):
        ledger_quantity = ledger_totals.get(key, 0)
        account_quantity = account_totals.get(key, 0)
        if ledger_quantity != account_quantity:
            mismatches.append({
                "shop_id": key[0],
                "item_id": key[1],
                "account_quantity": account_quantity,
                "ledger_quantity": ledger_quantity,
            })
    return mismatches

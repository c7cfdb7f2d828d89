from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from stockledger.time_utils import to_utc_z, utcnow

"""
Stock invariants (authoritative)

- A StockAccount holds the on-hand quantity for one (shop, item) pair.
- quantity == SUM(quantity_delta) over that pair's MovementEntry rows, always.
- quantity is never negative (CHECK constraint backs the service check).
- MovementEntry rows are append-only: corrections are new entries, never edits.
- Both are written in the same DB transaction, only by the stock coordinator.
"""

KIND_STOCK_IN = "stock_in"
KIND_SALE = "sale"
KIND_RETURN = "return"
KIND_ADJUSTMENT = "adjustment"
KIND_TRANSFER_IN = "transfer_in"
KIND_TRANSFER_OUT = "transfer_out"

MOVEMENT_KINDS = frozenset({
    KIND_STOCK_IN,
    KIND_SALE,
    KIND_RETURN,
    KIND_ADJUSTMENT,
    KIND_TRANSFER_IN,
    KIND_TRANSFER_OUT,
})


class StockAccount(db.Model):
    """Materialized on-hand balance for one item in one shop."""
    __tablename__ = "stock_accounts"
    __table_args__ = (
        db.UniqueConstraint("shop_id", "item_id", name="uq_stock_accounts_shop_item"),
        db.CheckConstraint("quantity >= 0", name="ck_stock_accounts_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False, default=0)
    last_movement_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def key(self) -> tuple[int, int]:
        return (self.shop_id, self.item_id)

    def __repr__(self) -> str:
        return f"<StockAccount shop_id={self.shop_id} item_id={self.item_id} quantity={self.quantity}>"

    def to_dict(self) -> dict:
        return {
            "shop_id": self.shop_id,
            "item_id": self.item_id,
            "quantity": self.quantity,
            "last_movement_at": to_utc_z(self.last_movement_at),
        }


class MovementEntry(db.Model):
    """
    One immutable, signed quantity change in the stock ledger.

    resulting_quantity is the balance snapshot right after this entry; it
    always equals the previous entry's snapshot for the same pair plus
    quantity_delta. correlation_id groups the entries of one logical
    operation (a sale, a transfer, a batch stock-in).
    """
    __tablename__ = "movement_entries"
    __table_args__ = (
        db.Index("ix_movement_entries_shop_item_occurred", "shop_id", "item_id", "occurred_at"),
        db.Index("ix_movement_entries_correlation", "correlation_id"),
        db.Index("ix_movement_entries_reference", "reference_correlation_id", "item_id"),
        db.CheckConstraint("resulting_quantity >= 0", name="ck_movement_entries_resulting_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False)
    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False)

    # Opaque user or system identifier supplied by the caller
    actor_id = db.Column(db.String(64), nullable=False)

    kind = db.Column(db.String(32), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    resulting_quantity = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    correlation_id = db.Column(db.String(64), nullable=False)

    # Returns point back at the sale they reverse
    reference_correlation_id = db.Column(db.String(64), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<MovementEntry id={self.id} kind={self.kind} shop_id={self.shop_id} "
            f"item_id={self.item_id} delta={self.quantity_delta} result={self.resulting_quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "item_id": self.item_id,
            "actor_id": self.actor_id,
            "kind": self.kind,
            "quantity_delta": self.quantity_delta,
            "resulting_quantity": self.resulting_quantity,
            "reason": self.reason,
            "occurred_at": to_utc_z(self.occurred_at),
            "correlation_id": self.correlation_id,
            "reference_correlation_id": self.reference_correlation_id,
        }


class LedgerImmutabilityError(Exception):
    """Raised when code tries to edit or delete a ledger row through the ORM."""


@event.listens_for(MovementEntry, "before_update")
def prevent_movement_update(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Movement entries are immutable - cannot modify entry {target.id}"
    )


@event.listens_for(MovementEntry, "before_delete")
def prevent_movement_delete(mapper, connection, target):
    raise LedgerImmutabilityError(
        f"Movement entries are immutable - cannot delete entry {target.id}; append a correction instead"
    )

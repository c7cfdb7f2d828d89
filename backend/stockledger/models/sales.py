from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.orm import object_session

from ..extensions import db
from stockledger.time_utils import to_utc_z, utcnow
from .stock import LedgerImmutabilityError


class SaleTransaction(db.Model):
    """
    Committed sale header.

    Created only by the stock coordinator in the same transaction as its
    stock deltas and ledger entries. Never edited afterwards: returns and
    refunds are recorded as new ledger entries that reference this sale.
    """
    __tablename__ = "sale_transactions"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_sale_transactions_invoice_number"),
        db.UniqueConstraint("correlation_id", name="uq_sale_transactions_correlation"),
        # Caller-supplied retry key; NULLs never collide
        db.UniqueConstraint("shop_id", "idempotency_key", name="uq_sale_transactions_shop_idempotency"),
        db.Index("ix_sale_transactions_shop_created", "shop_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    shop_id = db.Column(db.Integer, db.ForeignKey("shops.id"), nullable=False, index=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)
    actor_id = db.Column(db.String(64), nullable=False)

    correlation_id = db.Column(db.String(64), nullable=False)
    invoice_number = db.Column(db.String(32), nullable=False)
    idempotency_key = db.Column(db.String(128), nullable=True)

    payment_type = db.Column(db.String(32), nullable=False, default="cash")
    customer_id = db.Column(db.String(64), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    lines = db.relationship(
        "SaleLineItem",
        back_populates="sale",
        order_by="SaleLineItem.line_number",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<SaleTransaction id={self.id} invoice={self.invoice_number!r} shop_id={self.shop_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "shop_id": self.shop_id,
            "merchant_id": self.merchant_id,
            "actor_id": self.actor_id,
            "correlation_id": self.correlation_id,
            "invoice_number": self.invoice_number,
            "idempotency_key": self.idempotency_key,
            "payment_type": self.payment_type,
            "customer_id": self.customer_id,
            "notes": self.notes,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class SaleLineItem(db.Model):
    """One line of a sale; maps 1:1 to a 'sale' MovementEntry."""
    __tablename__ = "sale_line_items"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "item_id", name="uq_sale_line_items_sale_item"),
        db.UniqueConstraint("sale_id", "line_number", name="uq_sale_line_items_sale_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sale_transactions.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    item_id = db.Column(db.Integer, db.ForeignKey("inventory_items.id"), nullable=False)
    # Denormalized for historical accuracy
    item_name = db.Column(db.String(255), nullable=False)
    item_sku = db.Column(db.String(100), nullable=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    movement_entry_id = db.Column(db.Integer, db.ForeignKey("movement_entries.id"), nullable=False)

    sale = db.relationship("SaleTransaction", back_populates="lines")

    def to_dict(self) -> dict:
        return {
            "line_number": self.line_number,
            "item_id": self.item_id,
            "item_name": self.item_name,
            "item_sku": self.item_sku,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "movement_entry_id": self.movement_entry_id,
        }


@event.listens_for(SaleTransaction, "before_update")
def prevent_sale_update(mapper, connection, target):
    # Collection bookkeeping marks the header dirty without changing a column
    session = object_session(target)
    if session is not None and not session.is_modified(target, include_collections=False):
        return
    raise LedgerImmutabilityError(f"Sale {target.invoice_number} is committed and cannot be modified")


@event.listens_for(SaleTransaction, "before_delete")
def prevent_sale_delete(mapper, connection, target):
    raise LedgerImmutabilityError(f"Sale {target.invoice_number} is committed and cannot be deleted")


@event.listens_for(SaleLineItem, "before_update")
def prevent_sale_line_update(mapper, connection, target):
    raise LedgerImmutabilityError(f"Sale line {target.id} is committed and cannot be modified")

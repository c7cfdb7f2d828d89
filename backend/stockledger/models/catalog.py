from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class Merchant(db.Model):
    """
    Tenant root. Shops and inventory items belong to exactly one merchant.

    Owned by the merchant-management system; the ledger only reads it.
    """
    __tablename__ = "merchants"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Merchant id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Shop(db.Model):
    """
    A physical shop of a merchant. Stock is held per shop.

    Inactive shops reject every stock operation.
    """
    __tablename__ = "shops"
    __table_args__ = (
        db.UniqueConstraint("merchant_id", "name", name="uq_shops_merchant_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    merchant = db.relationship("Merchant", backref=db.backref("shops", lazy=True))

    def __repr__(self) -> str:
        return f"<Shop id={self.id} name={self.name!r} merchant_id={self.merchant_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class InventoryItem(db.Model):
    """
    Merchant-level master inventory item.

    SKUs are unique within a merchant. Prices are authoritative in cents.
    Archived items are treated as missing by the catalog lookup.
    """
    __tablename__ = "inventory_items"
    __table_args__ = (
        db.UniqueConstraint("merchant_id", "sku", name="uq_inventory_items_merchant_sku"),
        db.Index("ix_inventory_items_merchant_archived", "merchant_id", "is_archived"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    merchant_id = db.Column(db.Integer, db.ForeignKey("merchants.id"), nullable=False, index=True)

    name = db.Column(db.String(255), nullable=False)
    sku = db.Column(db.String(100), nullable=True)

    price_cents = db.Column(db.Integer, nullable=True)

    # Alert when a shop's balance drops below this many units
    low_stock_threshold = db.Column(db.Integer, nullable=True)

    is_archived = db.Column(db.Boolean, nullable=False, default=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    merchant = db.relationship("Merchant", backref=db.backref("inventory_items", lazy=True))

    def __repr__(self) -> str:
        return f"<InventoryItem id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "merchant_id": self.merchant_id,
            "name": self.name,
            "sku": self.sku,
            "price_cents": self.price_cents,
            "low_stock_threshold": self.low_stock_threshold,
            "is_archived": self.is_archived,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }

# Overview: Read-only adapter over the merchant catalog and shop registry.

from __future__ import annotations

from dataclasses import dataclass

from ..extensions import db
from ..models import InventoryItem, Shop
from ..validation import NotFoundError, ValidationError


@dataclass(frozen=True)
class CatalogItem:
    id: int
    merchant_id: int
    name: str
    sku: str | None
    price_cents: int | None
    low_stock_threshold: int | None


@dataclass(frozen=True)
class ShopInfo:
    id: int
    merchant_id: int
    is_active: bool


def get_item(item_id: int) -> CatalogItem:
    """Look up a sellable item. Archived items are reported as missing."""
    item = db.session.get(InventoryItem, item_id)
    if item is None or item.is_archived:
        raise NotFoundError(f"Inventory item {item_id} not found")
    return CatalogItem(
        id=item.id,
        merchant_id=item.merchant_id,
        name=item.name,
        sku=item.sku,
        price_cents=item.price_cents,
        low_stock_threshold=item.low_stock_threshold,
    )


def get_shop(shop_id: int) -> ShopInfo:
    shop = db.session.get(Shop, shop_id)
    if shop is None:
        raise NotFoundError(f"Shop {shop_id} not found")
    return ShopInfo(id=shop.id, merchant_id=shop.merchant_id, is_active=bool(shop.is_active))


def require_active_shop(shop_id: int, *, merchant_id: int | None = None) -> ShopInfo:
    shop = get_shop(shop_id)
    if not shop.is_active:
        raise ValidationError(f"Shop {shop_id} is inactive")
    if merchant_id is not None and shop.merchant_id != merchant_id:
        raise ValidationError(f"Shop {shop_id} does not belong to merchant {merchant_id}")
    return shop


def get_items_for_shop(shop: ShopInfo, item_ids) -> dict[int, CatalogItem]:
    """Resolve every item and make sure it belongs to the shop's merchant."""
    items: dict[int, CatalogItem] = {}
    for item_id in item_ids:
        item = get_item(item_id)
        if item.merchant_id != shop.merchant_id:
            raise ValidationError(f"Inventory item {item_id} does not belong to shop {shop.id}'s merchant")
        items[item_id] = item
    return items

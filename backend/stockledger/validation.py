from __future__ import annotations

from typing import Any


class ValidationError(ValueError):
    """400-level input problem (bad quantity, missing reason, empty sale)."""


class NotFoundError(ValueError):
    """404-level: unknown shop, item, or sale; archived items count as missing."""


class ConflictError(ValueError):
    """409-level business rule conflict."""


class InsufficientStockError(ConflictError):
    """
    Requested quantity exceeds what the shop holds.

    Carries every short line so a point-of-sale UI can highlight each one.
    item_id / requested / available describe the first shortage for callers
    that only deal with single-item operations.
    """

    def __init__(self, shortages: list[dict], *, shop_id: int | None = None):
        if not shortages:
            raise ValueError("InsufficientStockError requires at least one shortage")
        self.shortages = [dict(s) for s in shortages]
        self.shop_id = shop_id
        first = self.shortages[0]
        self.item_id = first["item_id"]
        self.requested = first["requested"]
        self.available = first["available"]

        parts = [
            f"item {s['item_id']}: requested {s['requested']}, available {s['available']}"
            for s in self.shortages
        ]
        super().__init__("Insufficient stock (" + "; ".join(parts) + ")")

    @property
    def details(self) -> dict:
        return {"shop_id": self.shop_id, "items": self.shortages}


def coerce_int(value: Any, field: str) -> int:
    """
    Strict integer coercion for request values.

    Rejects bools, floats, decimals-as-strings and scientific notation so a
    quantity of "1e3" or 2.5 never reaches the ledger.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    if isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    raise ValidationError(f"{field} must be an integer")


def require_positive_int(value: Any, field: str) -> int:
    number = coerce_int(value, field)
    if number <= 0:
        raise ValidationError(f"{field} must be greater than 0")
    return number


def require_non_negative_int(value: Any, field: str) -> int:
    number = coerce_int(value, field)
    if number < 0:
        raise ValidationError(f"{field} must not be negative")
    return number


def clean_optional_str(value: Any, field: str, *, max_length: int = 255) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{field} must be at most {max_length} characters")
    return text


def require_str(value: Any, field: str, *, max_length: int = 255) -> str:
    text = clean_optional_str(value, field, max_length=max_length)
    if text is None:
        raise ValidationError(f"{field} is required")
    return text

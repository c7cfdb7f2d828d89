# Overview: Gap-free scoped sequence numbers (invoice numbers) via an atomic counter row.

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import SequenceCounter
from ..time_utils import business_year
from ..validation import ValidationError
from .concurrency import ConsistencyViolationError, begin_locked_write, insert_if_absent, lock_timeout_guard


def next_value(scope_key: str, *, commit: bool = False) -> int:
    """
    Atomically issue the next number for scope_key.

    The increment is a single UPDATE ... SET last_issued = last_issued + 1;
    its row lock serializes concurrent issuers until their transactions end,
    and the read that follows sees this transaction's own increment. Issued
    values are never computed from a "latest existing number" query.

    With commit=False (the default) the increment belongs to the caller's
    transaction, so a rollback also takes the number back and the scope
    stays gap-free. commit=True issues a standalone number and must be
    called outside any open write transaction.
    """
    if not scope_key:
        raise ValidationError("scope_key is required")

    def _issue() -> int:
        insert_if_absent(
            SequenceCounter,
            {"scope_key": scope_key, "last_issued": 0},
            ["scope_key"],
        )
        result = db.session.execute(
            update(SequenceCounter)
            .where(SequenceCounter.scope_key == scope_key)
            .values(last_issued=SequenceCounter.last_issued + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConsistencyViolationError(f"Sequence counter {scope_key!r} missing after creation")

        return int(
            db.session.query(SequenceCounter.last_issued)
            .filter_by(scope_key=scope_key)
            .scalar()
        )

    if not commit:
        return _issue()

    try:
        with lock_timeout_guard():
            begin_locked_write()
            value = _issue()
            db.session.commit()
        return value
    except Exception:
        db.session.rollback()
        raise


def invoice_scope(year: int) -> str:
    prefix = current_app.config.get("INVOICE_PREFIX", "INV")
    return f"{prefix}-{year}"


def format_invoice_number(year: int, number: int, *, pad: int = 4) -> str:
    """INV-2026-0001; numbers beyond the pad width simply grow wider."""
    return f"{invoice_scope(year)}-{number:0{pad}d}"


def next_invoice_number(now: datetime | None = None) -> str:
    """
    Issue the next invoice number inside the caller's transaction.

    The scope rolls over with the calendar year; a new year's counter is
    created on first use starting from zero.
    """
    year = business_year(now)
    return format_invoice_number(year, next_value(invoice_scope(year)))


def peek_last_issued(scope_key: str) -> int:
    """Last issued value for a scope (0 if never used). Read-only."""
    value = db.session.query(SequenceCounter.last_issued).filter_by(scope_key=scope_key).scalar()
    return int(value or 0)

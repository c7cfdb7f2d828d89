# Overview: Database-level locking primitives shared by the stock coordinator and sequence generator.

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError

from ..extensions import db

"""
Locking model

- All coordination goes through the shared database; there are no in-process
  locks, so any number of server processes may run side by side.
- PostgreSQL: SELECT ... FOR UPDATE per stock row, bounded by a
  transaction-local lock_timeout.
- SQLite: no row locks. BEGIN IMMEDIATE takes the database write lock at the
  start of the write phase and busy_timeout bounds the wait for it.
- Rows are always locked in canonical (shop_id, item_id) order.
"""

# session.info key recording which stock rows the current transaction holds
HELD_STOCK_LOCKS = "stockledger.held_stock_locks"

PG_LOCK_NOT_AVAILABLE = "55P03"
PG_DEADLOCK_DETECTED = "40P01"
PG_QUERY_CANCELED = "57014"


class ConcurrencyTimeoutError(Exception):
    """
    A lock could not be acquired within the configured bound.

    Nothing was written; retrying the whole operation from scratch is safe.
    """
    retryable = True

    def __init__(self, message: str, *, shop_id: int | None = None, item_ids: Iterable[int] = ()):
        super().__init__(message)
        self.shop_id = shop_id
        self.item_ids = sorted(set(item_ids))


class ConsistencyViolationError(Exception):
    """
    Ledger and stock account disagree, or the lock discipline was broken.

    Indicates a coordination bug, never a transient condition: abort, alert,
    and do not retry.
    """


def lock_for_update(query):
    """Apply row-level locking (SQLite ignores FOR UPDATE; see begin_locked_write)."""
    return query.with_for_update()


def dialect_name() -> str:
    return db.session.get_bind().dialect.name


def begin_locked_write(timeout_ms: int | None = None) -> None:
    """
    Open the write phase of a stock transaction with a bounded lock wait.

    Must run before the transaction's first write. Reads issued earlier in
    the same session (catalog lookups, validation) are fine.
    """
    if timeout_ms is None:
        timeout_ms = current_app.config.get("STOCK_LOCK_TIMEOUT_MS", 5000)
    timeout_ms = int(timeout_ms)

    name = dialect_name()
    if name == "sqlite":
        raw = db.session.connection().connection.dbapi_connection
        db.session.execute(text(f"PRAGMA busy_timeout = {timeout_ms}"))
        # An earlier write in this transaction already holds the write lock
        if not raw.in_transaction:
            db.session.execute(text("BEGIN IMMEDIATE"))
    elif name == "postgresql":
        db.session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))


def is_lock_timeout(exc: OperationalError) -> bool:
    orig = getattr(exc, "orig", None)
    pgcode = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if pgcode in (PG_LOCK_NOT_AVAILABLE, PG_DEADLOCK_DETECTED, PG_QUERY_CANCELED):
        return True
    message = str(orig if orig is not None else exc).lower()
    return "database is locked" in message or "lock timeout" in message


@contextmanager
def lock_timeout_guard(*, shop_id: int | None = None, item_ids: Iterable[int] = ()):
    """Translate a lock-wait failure from the driver into ConcurrencyTimeoutError."""
    try:
        yield
    except OperationalError as exc:
        if not is_lock_timeout(exc):
            raise
        item_ids = list(item_ids)
        raise ConcurrencyTimeoutError(
            f"Timed out waiting for stock lock (shop {shop_id}, items {sorted(set(item_ids))})",
            shop_id=shop_id,
            item_ids=item_ids,
        ) from exc


def insert_if_absent(model, values: dict, index_elements: list[str]) -> None:
    """
    INSERT a row unless one with the same unique key already exists.

    Concurrent creators of the same key both succeed; exactly one row remains.
    """
    name = dialect_name()
    if name in ("postgresql", "sqlite"):
        if name == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            from sqlalchemy.dialects.sqlite import insert
        stmt = insert(model.__table__).values(**values).on_conflict_do_nothing(index_elements=index_elements)
        db.session.execute(stmt)
        return

    exists = db.session.query(model).filter_by(**{k: values[k] for k in index_elements}).first()
    if exists is not None:
        return
    try:
        with db.session.begin_nested():
            db.session.add(model(**values))
    except IntegrityError:
        # Lost the creation race; the other writer's row is the one we wanted
        return


def mark_locks_held(keys: Iterable[tuple[int, int]]) -> None:
    db.session.info.setdefault(HELD_STOCK_LOCKS, set()).update(keys)


def holds_lock(key: tuple[int, int]) -> bool:
    return key in db.session.info.get(HELD_STOCK_LOCKS, ())


def release_locks() -> None:
    """Forget held stock locks; the DB releases them on commit/rollback."""
    db.session.info.pop(HELD_STOCK_LOCKS, None)

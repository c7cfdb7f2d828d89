from __future__ import annotations

from ..extensions import db
from stockledger.time_utils import to_utc_z


class SequenceCounter(db.Model):
    """
    Gap-free counter per scope key (e.g. "INV-2026").

    last_issued only moves through a single atomic UPDATE ... SET
    last_issued = last_issued + 1, so the row lock taken by that UPDATE
    serializes every issuer of the same scope.
    """
    __tablename__ = "sequence_counters"
    __table_args__ = (
        db.UniqueConstraint("scope_key", name="uq_sequence_counters_scope"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    scope_key = db.Column(db.String(64), nullable=False)
    last_issued = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "scope_key": self.scope_key,
            "last_issued": self.last_issued,
            "updated_at": to_utc_z(self.updated_at),
        }

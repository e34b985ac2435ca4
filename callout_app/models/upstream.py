"""
Upstream cache: one row per upstream entity (Structure or Volunteer).

Rows are the local mirror of the upstream feed. They are never deleted;
staleness is expressed by resetting ``fetched_at`` to ``EXPIRED_AT``, by
pruning the parent trail, or by ``enabled=False``.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Enum, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db

# Marks a row as never fetched, or as forced stale.
EXPIRED_AT = datetime(1984, 7, 10, tzinfo=timezone.utc)

TRAIL_SEPARATOR = "|"


class UpstreamRecordType(str, enum.Enum):
    """Kinds of upstream entities mirrored in the cache."""

    STRUCTURE = "structure"
    VOLUNTEER = "volunteer"


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on read)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def timestamps_match(left: datetime | None, right: datetime | None) -> bool:
    """Compare two timestamps with second precision."""
    if left is None or right is None:
        return False
    return int(as_utc(left).timestamp()) == int(as_utc(right).timestamp())


def trail_token(identifier: str) -> str:
    return f"{TRAIL_SEPARATOR}{identifier}{TRAIL_SEPARATOR}"


class UpstreamRecord(BaseModel):
    """Raw upstream entity plus its membership trail."""

    __tablename__ = "upstream_records"

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    type: Mapped[UpstreamRecordType] = mapped_column(
        Enum(UpstreamRecordType, name="upstream_record_type_enum"),
        nullable=False,
        index=True,
    )
    identifier: Mapped[str] = mapped_column(db.String(64), nullable=False)
    parent_identifier: Mapped[str | None] = mapped_column(
        db.Text,
        nullable=True,
        comment="Pipe-delimited ancestor trail, e.g. |S1|S2|",
    )
    content: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    enabled: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    fetched_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: EXPIRED_AT,
    )

    __table_args__ = (
        UniqueConstraint("type", "identifier", name="uq_upstream_records_type_identifier"),
        Index("idx_upstream_records_type_enabled", "type", "enabled"),
    )

    def __repr__(self):
        return f"<UpstreamRecord {self.type.value}:{self.identifier}>"

    @property
    def parent_identifiers(self) -> list[str]:
        """Ordered ancestor identifiers carried by the trail."""
        if not self.parent_identifier:
            return []
        return [token for token in self.parent_identifier.split(TRAIL_SEPARATOR) if token]

    def has_parent(self, identifier: str) -> bool:
        return trail_token(identifier) in (self.parent_identifier or "")

    def add_parent(self, identifier: str) -> bool:
        """Append ``identifier`` to the trail. Returns False when already present."""
        if self.has_parent(identifier):
            return False
        current = self.parent_identifier or TRAIL_SEPARATOR
        self.parent_identifier = f"{current}{identifier}{TRAIL_SEPARATOR}"
        return True

    def remove_parent(self, identifier: str) -> bool:
        """Drop ``identifier`` from the trail; an emptied trail becomes NULL."""
        if not self.has_parent(identifier):
            return False
        trail = self.parent_identifier.replace(trail_token(identifier), TRAIL_SEPARATOR)
        self.parent_identifier = None if trail == TRAIL_SEPARATOR else trail
        return True

    def expire(self) -> None:
        """Force a re-fetch on the next pass."""
        self.fetched_at = EXPIRED_AT

    @property
    def is_expired(self) -> bool:
        return timestamps_match(self.fetched_at, EXPIRED_AT)

    @property
    def structure_payload(self):
        from callout_app.upstream.payloads import decode_structure

        return decode_structure(self.content)

    @property
    def volunteer_payload(self):
        from callout_app.upstream.payloads import decode_volunteer

        return decode_volunteer(self.content)

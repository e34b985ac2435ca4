"""
Cache curator: the single writer of the upstream cache.

Creates placeholder rows for newly discovered identifiers, keeps the
volunteer membership trails in line with each structure's roster, and marks
rows stale (``fetched_at = EXPIRED_AT``) so the fetch step re-reads them.
Nothing here deletes a row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from callout_app.models import EXPIRED_AT, UpstreamRecord, UpstreamRecordType, db
from callout_app.models.upstream import trail_token
from callout_app.upstream.events import upstream_record_updated
from callout_app.upstream.metrics import record_expired, record_walk_failure

logger = logging.getLogger(__name__)

VOLUNTEER_IDENTIFIER_WIDTH = 12

# Record type listed in a parent's roster
ROSTER_CHILD_TYPES = {UpstreamRecordType.STRUCTURE: UpstreamRecordType.VOLUNTEER}


class UnknownUpstreamType(ValueError):
    """Raised when a record type does not name a cached entity kind."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Unknown upstream record type: {value!r}")
        self.value = value


class UpstreamRecordNotFound(LookupError):
    """Raised when a single-record sync targets an identifier absent from the cache."""

    def __init__(self, record_type: UpstreamRecordType, identifier: str) -> None:
        super().__init__(f"No enabled {record_type.value} record '{identifier}' in the upstream cache.")
        self.record_type = record_type
        self.identifier = identifier


def coerce_record_type(value: UpstreamRecordType | str) -> UpstreamRecordType:
    if isinstance(value, UpstreamRecordType):
        return value
    try:
        return UpstreamRecordType(str(value).strip().lower())
    except ValueError as exc:
        raise UnknownUpstreamType(value) from exc


def normalize_identifier(record_type: UpstreamRecordType, identifier: object) -> str:
    """Volunteer identifiers are zero-padded the way upstream emits them."""
    token = str(identifier).strip()
    if record_type is UpstreamRecordType.VOLUNTEER:
        return token.zfill(VOLUNTEER_IDENTIFIER_WIDTH)
    return token


@dataclass
class ListingSummary:
    created: int = 0
    attached: int = 0
    detached: int = 0
    disabled: int = 0
    expired: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "created": self.created,
            "attached": self.attached,
            "detached": self.detached,
            "disabled": self.disabled,
            "expired": self.expired,
        }


@dataclass(frozen=True)
class WalkFailure:
    identifier: str
    error: str


@dataclass
class WalkSummary:
    record_type: UpstreamRecordType
    visited: int = 0
    failures: list[WalkFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


class UpstreamCacheCurator:
    """Owns create/update/expire operations on ``UpstreamRecord`` rows."""

    def __init__(self, session: Session | None = None, *, clock: Callable[[], datetime] | None = None):
        self.session = session or db.session
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # Reads

    def find_record(
        self,
        record_type: UpstreamRecordType | str,
        identifier: str,
        *,
        only_enabled: bool = True,
    ) -> UpstreamRecord | None:
        record_type = coerce_record_type(record_type)
        stmt = select(UpstreamRecord).where(
            UpstreamRecord.type == record_type,
            UpstreamRecord.identifier == normalize_identifier(record_type, identifier),
        )
        if only_enabled:
            stmt = stmt.where(UpstreamRecord.enabled.is_(True))
        return self.session.scalars(stmt).first()

    def iter_enabled_records(self) -> list[tuple[UpstreamRecordType, str]]:
        """(type, identifier) of every enabled row, structures first, in discovery order."""
        stmt = (
            select(UpstreamRecord.type, UpstreamRecord.identifier)
            .where(UpstreamRecord.enabled.is_(True))
            .order_by(UpstreamRecord.id.asc())
        )
        rows = [(record_type, identifier) for record_type, identifier in self.session.execute(stmt)]
        rows.sort(key=lambda row: 0 if row[0] is UpstreamRecordType.STRUCTURE else 1)
        return rows

    def enabled_identifiers(self, record_type: UpstreamRecordType | str) -> set[str]:
        record_type = coerce_record_type(record_type)
        stmt = select(UpstreamRecord.identifier).where(
            UpstreamRecord.type == record_type,
            UpstreamRecord.enabled.is_(True),
        )
        return set(self.session.scalars(stmt))

    def count_records(self) -> dict[str, dict[str, int]]:
        """Counts per type: enabled, disabled, expired."""
        counts: dict[str, dict[str, int]] = {
            record_type.value: {"enabled": 0, "disabled": 0, "expired": 0} for record_type in UpstreamRecordType
        }
        stmt = select(UpstreamRecord.type, UpstreamRecord.enabled, func.count()).group_by(
            UpstreamRecord.type, UpstreamRecord.enabled
        )
        for record_type, enabled, total in self.session.execute(stmt):
            counts[record_type.value]["enabled" if enabled else "disabled"] += total
        expired_stmt = (
            select(UpstreamRecord.type, func.count())
            .where(UpstreamRecord.fetched_at <= EXPIRED_AT)
            .group_by(UpstreamRecord.type)
        )
        for record_type, total in self.session.execute(expired_stmt):
            counts[record_type.value]["expired"] = total
        return counts

    # Writes

    def create_record(
        self,
        record_type: UpstreamRecordType | str,
        identifier: str,
        parent_identifier: str | None = None,
    ) -> UpstreamRecord:
        """Create an expired placeholder so the fetch step picks it up."""
        trail = trail_token(parent_identifier) if parent_identifier else None
        record = self._new_record(coerce_record_type(record_type), identifier, trail)
        self.session.commit()
        return record

    def update_record(self, record: UpstreamRecord, content: Mapping[str, Any]) -> UpstreamRecord:
        """
        Store a freshly fetched payload.

        For a structure, the roster carried by the payload is applied to the
        volunteer trails through ``upsert_from_listing``.
        """
        record.content = dict(content)
        record.enabled = True
        record.fetched_at = self._clock()
        self.session.commit()
        self._debug(record, "Updated upstream record")

        if record.type is UpstreamRecordType.STRUCTURE:
            payload = record.structure_payload
            if payload is not None:
                self.upsert_from_listing(record.type, record.identifier, payload.roster)

        upstream_record_updated.send(record)
        return record

    def upsert_from_listing(
        self,
        parent_type: UpstreamRecordType | str,
        parent_identifier: str,
        roster: Iterable[str],
    ) -> ListingSummary:
        """
        Apply a freshly fetched roster of child identifiers under a parent.

        - unknown identifiers get an expired placeholder carrying the parent
        - known records missing the parent get it appended
        - records carrying the parent but absent from the roster lose it, are
          expired, and are disabled once their trail is empty

        An empty roster is treated as a possibly incomplete listing: the
        children are only expired, their trails are left untouched.
        """
        parent_type = coerce_record_type(parent_type)
        child_type = ROSTER_CHILD_TYPES.get(parent_type)
        if child_type is None:
            raise UnknownUpstreamType(parent_type)

        summary = ListingSummary()
        identifiers = list(dict.fromkeys(normalize_identifier(child_type, item) for item in roster if str(item).strip()))
        token = trail_token(parent_identifier)
        children_stmt = select(UpstreamRecord).where(
            UpstreamRecord.type == child_type,
            UpstreamRecord.parent_identifier.contains(token, autoescape=True),
        )

        if not identifiers:
            logger.warning(
                "Empty roster received; expiring children without detaching them",
                extra={"upstream_type": parent_type.value, "upstream_identifier": parent_identifier},
            )
            for child in list(self.session.scalars(children_stmt)):
                if not child.is_expired:
                    child.expire()
                    summary.expired += 1
            self.session.commit()
            record_expired(child_type.value, summary.expired)
            return summary

        wanted = set(identifiers)
        for child in list(self.session.scalars(children_stmt)):
            if child.identifier in wanted:
                continue
            child.remove_parent(parent_identifier)
            child.expire()
            summary.detached += 1
            summary.expired += 1
            if child.parent_identifier is None and child.enabled:
                child.enabled = False
                summary.disabled += 1
            self._debug(child, "Removed parent from upstream record")

        for identifier in identifiers:
            child = self.find_record(child_type, identifier, only_enabled=False)
            if child is None:
                self._new_record(child_type, identifier, token)
                summary.created += 1
                continue
            if child.add_parent(parent_identifier):
                summary.attached += 1
                if not child.enabled:
                    child.enabled = True
                    child.expire()
                elif child.content is not None:
                    # Membership changed: make the next pass reconcile it again
                    child.fetched_at = self._clock()
                self._debug(child, "Attached parent to upstream record")
                upstream_record_updated.send(child)

        self.session.commit()
        record_expired(child_type.value, summary.expired)
        logger.info(
            "Applied upstream roster",
            extra={
                "upstream_type": parent_type.value,
                "upstream_identifier": parent_identifier,
                **{f"upstream_roster_{key}": value for key, value in summary.to_dict().items()},
            },
        )
        return summary

    def mark_missing(self, record_type: UpstreamRecordType | str, seen_identifiers: Iterable[str]) -> int:
        """
        Expire enabled records of ``record_type`` absent from a refreshed listing.

        The records stay enabled: a listing may be incomplete, so they are
        only scheduled for re-fetch.
        """
        record_type = coerce_record_type(record_type)
        seen = {normalize_identifier(record_type, identifier) for identifier in seen_identifiers}
        if not seen:
            logger.warning(
                "Empty listing received; every enabled record will be re-fetched",
                extra={"upstream_type": record_type.value},
            )
        stmt = select(UpstreamRecord).where(
            UpstreamRecord.type == record_type,
            UpstreamRecord.enabled.is_(True),
        )
        expired = 0
        for record in self.session.scalars(stmt):
            if record.identifier in seen or record.is_expired:
                continue
            record.expire()
            expired += 1
        self.session.commit()
        record_expired(record_type.value, expired)
        return expired

    def walk(
        self,
        record_type: UpstreamRecordType | str,
        visitor: Callable[[UpstreamRecord], Any],
        *,
        only_enabled: bool = True,
    ) -> WalkSummary:
        """
        Call ``visitor`` once per cached record of ``record_type``, in discovery order.

        A failing visitor is logged, its pending changes are rolled back, and
        the walk moves on to the next record.
        """
        record_type = coerce_record_type(record_type)
        summary = WalkSummary(record_type=record_type)
        stmt = select(UpstreamRecord.id).where(UpstreamRecord.type == record_type).order_by(UpstreamRecord.id.asc())
        if only_enabled:
            stmt = stmt.where(UpstreamRecord.enabled.is_(True))
        record_ids = list(self.session.scalars(stmt))

        for record_id in record_ids:
            record = self.session.get(UpstreamRecord, record_id)
            if record is None or (only_enabled and not record.enabled):
                continue
            identifier = record.identifier
            summary.visited += 1
            try:
                visitor(record)
            except Exception as exc:
                self.session.rollback()
                record_walk_failure(record_type.value)
                summary.failures.append(WalkFailure(identifier=identifier, error=str(exc)))
                logger.exception(
                    "Failed to reconcile upstream record",
                    extra={"upstream_type": record_type.value, "upstream_identifier": identifier},
                )
        return summary

    # Internals

    def _new_record(
        self,
        record_type: UpstreamRecordType,
        identifier: str,
        parent_identifier: str | None,
    ) -> UpstreamRecord:
        record = UpstreamRecord(
            type=record_type,
            identifier=normalize_identifier(record_type, identifier),
            parent_identifier=parent_identifier,
            enabled=True,
            fetched_at=EXPIRED_AT,
        )
        self.session.add(record)
        self.session.flush()
        self._debug(record, f"Creating {record_type.value}")
        return record

    def _debug(self, record: UpstreamRecord, message: str) -> None:
        logger.debug(
            message,
            extra={
                "upstream_type": record.type.value,
                "upstream_identifier": record.identifier,
                "upstream_parent_identifier": record.parent_identifier,
            },
        )

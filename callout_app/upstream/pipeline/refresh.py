"""
Entry points for a reconciliation pass.

``refresh`` runs the whole pass in-process: structures (nodes, then parent
links) followed by volunteers. ``refresh_async`` fans the same work out as
one ``sync_one`` unit per cached record plus the finalisation units.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from callout_app.models import UpstreamRecordType, db
from callout_app.upstream.pipeline.curator import (
    UpstreamCacheCurator,
    UpstreamRecordNotFound,
    coerce_record_type,
    normalize_identifier,
)
from callout_app.upstream.pipeline.outcomes import ReconcileCounters, ReconcileOutcome
from callout_app.upstream.pipeline.structures import StructureReconciler
from callout_app.upstream.pipeline.volunteers import VolunteerReconciler
from callout_app.utils.upstream import UpstreamSettings, get_upstream_settings

logger = logging.getLogger(__name__)

PARENT_STRUCTURES_UNIT = "parent_structures"
SYNC_STRUCTURES_UNIT = "sync_structures"
SYNC_VOLUNTEERS_UNIT = "sync_volunteers"
FINALISATION_UNITS = (PARENT_STRUCTURES_UNIT, SYNC_STRUCTURES_UNIT, SYNC_VOLUNTEERS_UNIT)

Dispatcher = Callable[[Mapping[str, Any]], Any]


@dataclass
class RefreshSummary:
    force: bool = False
    structures: ReconcileCounters = field(default_factory=ReconcileCounters)
    parent_structures: ReconcileCounters = field(default_factory=ReconcileCounters)
    volunteers: ReconcileCounters = field(default_factory=ReconcileCounters)

    def to_dict(self) -> dict[str, Any]:
        return {
            "force": self.force,
            "structures": self.structures.to_dict(),
            "parent_structures": self.parent_structures.to_dict(),
            "volunteers": self.volunteers.to_dict(),
        }


def _default_dispatcher(kwargs: Mapping[str, Any]) -> Any:
    from callout_app.upstream.tasks import sync_one_task

    return sync_one_task.apply_async(kwargs=dict(kwargs))


class UpstreamRefreshService:
    """Facade over the curator and both reconcilers, sharing one session."""

    def __init__(self, session: Session | None = None, *, settings: UpstreamSettings | None = None):
        self.session = session or db.session
        self.settings = settings or get_upstream_settings()
        self.curator = UpstreamCacheCurator(self.session)
        self.structures = StructureReconciler(self.session, curator=self.curator, settings=self.settings)
        self.volunteers = VolunteerReconciler(self.session, curator=self.curator, settings=self.settings)

    def refresh(self, force: bool = False) -> RefreshSummary:
        """Synchronous full pass: every structure first, then every volunteer."""
        logger.info("Starting upstream refresh", extra={"upstream_force": force})
        summary = RefreshSummary(force=force)
        summary.structures, summary.parent_structures = self.structures.refresh_structures(force)
        summary.volunteers = self.volunteers.refresh_volunteers(force)
        logger.info(
            "Upstream refresh finished",
            extra={
                "upstream_force": force,
                "upstream_structures": summary.structures.to_dict(),
                "upstream_parent_structures": summary.parent_structures.to_dict(),
                "upstream_volunteers": summary.volunteers.to_dict(),
            },
        )
        return summary

    def plan_units(self, force: bool = False) -> list[dict[str, Any]]:
        """Units of work for ``refresh_async``, in dispatch order."""
        units: list[dict[str, Any]] = [
            {"record_type": record_type.value, "identifier": identifier, "force": force}
            for record_type, identifier in self.curator.iter_enabled_records()
        ]
        units.extend({"record_type": unit, "identifier": None, "force": force} for unit in FINALISATION_UNITS)
        return units

    def refresh_async(self, force: bool = False, dispatch: Dispatcher | None = None) -> int:
        """
        Queue one unit per enabled cached record plus the finalisation units.

        Returns:
            int: number of units dispatched
        """
        dispatch = dispatch or _default_dispatcher
        units = self.plan_units(force)
        for unit in units:
            dispatch(unit)
        logger.info("Dispatched upstream refresh units", extra={"upstream_units": len(units)})
        return len(units)

    def sync_one(self, record_type: str, identifier: str | None = None, force: bool = False) -> dict[str, Any]:
        """
        Run a single unit of work.

        ``record_type`` is either a cached record type (``structure`` or
        ``volunteer``, with ``identifier``) or one of the finalisation units.

        Raises:
            UnknownUpstreamType: ``record_type`` names neither.
            UpstreamRecordNotFound: no enabled cached record for ``identifier``.
        """
        if record_type == PARENT_STRUCTURES_UNIT:
            counters = self.structures.refresh_parent_structures()
            return {"unit": record_type, "counters": counters.to_dict()}
        if record_type == SYNC_STRUCTURES_UNIT:
            return {"unit": record_type, "disabled": self.structures.synchronize_with_upstream()}
        if record_type == SYNC_VOLUNTEERS_UNIT:
            return {"unit": record_type, "disabled": self.volunteers.synchronize_with_upstream()}

        resolved = coerce_record_type(record_type)
        if identifier is None:
            raise UpstreamRecordNotFound(resolved, "")
        record = self.curator.find_record(resolved, identifier)
        if record is None:
            raise UpstreamRecordNotFound(resolved, normalize_identifier(resolved, identifier))

        if resolved is UpstreamRecordType.STRUCTURE:
            outcome = self.structures.refresh_structure(record, force)
        else:
            payload = record.volunteer_payload
            if payload is None or payload.user_id is None:
                outcome = ReconcileOutcome.INVALID
            else:
                outcome = self.volunteers.refresh_volunteer(record, force)
        return {"unit": resolved.value, "identifier": record.identifier, "outcome": outcome.value}

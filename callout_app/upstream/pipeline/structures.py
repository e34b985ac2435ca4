"""
Structure reconciler: projects cached structure records onto local Structures.

Runs in two explicit passes. ``refresh_structure`` creates or updates every
node; ``refresh_parent_structures`` links edges afterwards, since a parent
may only be materialized later in the same walk.
"""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from callout_app.models import Structure, UpstreamRecord, UpstreamRecordType, db
from callout_app.models.upstream import timestamps_match
from callout_app.upstream.events import structure_updated
from callout_app.upstream.metrics import record_hierarchy_cycle, record_reconciled
from callout_app.upstream.pipeline.curator import UpstreamCacheCurator
from callout_app.upstream.pipeline.outcomes import ReconcileCounters, ReconcileOutcome
from callout_app.utils.upstream import UpstreamSettings, get_upstream_settings

logger = logging.getLogger(__name__)
alert_logger = logging.getLogger("callout.alerts")

RECORD_TYPE = UpstreamRecordType.STRUCTURE


class StructureReconciler:
    """Create-or-update of local Structures plus hierarchy linking."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        curator: UpstreamCacheCurator | None = None,
        settings: UpstreamSettings | None = None,
    ):
        self.session = session or db.session
        self.curator = curator or UpstreamCacheCurator(self.session)
        self.settings = settings or get_upstream_settings()

    def find_structure(self, external_id: str) -> Structure | None:
        stmt = select(Structure).where(
            Structure.platform == self.settings.platform,
            Structure.external_id == str(external_id),
        )
        return self.session.scalars(stmt).first()

    def refresh_structures(self, force: bool = False) -> tuple[ReconcileCounters, ReconcileCounters]:
        """
        Full structure pass: bulk sync, node pass, then parent-link pass.

        Returns:
            tuple: (node counters, link counters)
        """
        self.synchronize_with_upstream()

        nodes = ReconcileCounters()

        def _visit(record: UpstreamRecord) -> None:
            logger.debug("Walking through a structure", extra={"upstream_identifier": record.identifier})
            nodes.add(self.refresh_structure(record, force))

        walk = self.curator.walk(RECORD_TYPE, _visit)
        nodes.failed_records = walk.failed

        links = self.refresh_parent_structures()
        return nodes, links

    def refresh_structure(self, record: UpstreamRecord, force: bool = False) -> ReconcileOutcome:
        payload = record.structure_payload
        if payload is None:
            return self._finish(record, ReconcileOutcome.INVALID)

        structure = self.find_structure(record.identifier)
        if structure is not None and structure.locked:
            return self._finish(record, ReconcileOutcome.LOCKED)

        created = structure is None
        if created:
            structure = Structure(platform=self.settings.platform, external_id=record.identifier)
        elif not force and timestamps_match(structure.last_upstream_update, record.fetched_at):
            return self._finish(record, ReconcileOutcome.UNCHANGED)

        logger.debug(
            "Updating a structure",
            extra={
                "upstream_type": record.type.value,
                "upstream_identifier": record.identifier,
                "upstream_parent_identifier": payload.parent_id,
            },
        )
        structure.last_upstream_update = record.fetched_at
        structure.enabled = True
        structure.name = payload.name
        structure.president = payload.president
        self.session.add(structure)
        self.session.commit()
        structure_updated.send(structure)
        return self._finish(record, ReconcileOutcome.CREATED if created else ReconcileOutcome.UPDATED)

    def refresh_parent_structures(self) -> ReconcileCounters:
        """Second pass: resolve parent links once every node exists."""
        counters = ReconcileCounters()
        walk = self.curator.walk(RECORD_TYPE, lambda record: counters.add(self.link_parent(record)))
        counters.failed_records = walk.failed
        return counters

    def link_parent(self, record: UpstreamRecord) -> ReconcileOutcome:
        """
        Point the local structure at the parent named upstream.

        A link that would close a loop is rejected and reported on the alert
        channel; the existing link is left untouched.
        """
        payload = record.structure_payload
        if payload is None:
            return ReconcileOutcome.INVALID
        if payload.parent_id is None:
            return ReconcileOutcome.UNCHANGED

        structure = self.find_structure(record.identifier)
        if structure is None:
            return ReconcileOutcome.INVALID
        if structure.locked:
            return ReconcileOutcome.LOCKED

        current = structure.parent_structure
        if current is not None and current.external_id == payload.parent_id:
            return ReconcileOutcome.UNCHANGED

        logger.debug(
            "Updating parent structures for a structure",
            extra={"upstream_identifier": record.identifier, "upstream_parent_identifier": payload.parent_id},
        )
        parent = self.find_structure(payload.parent_id)
        if parent is None:
            return ReconcileOutcome.MISSING_PARENT

        if structure.would_create_cycle(parent):
            record_hierarchy_cycle()
            alert_logger.error(
                "Hierarchy loop: structure %s has parent %s which itself has %s as ancestor!",
                structure.display_name,
                parent.display_name,
                structure.display_name,
                extra={"structure_external_id": structure.external_id, "parent_external_id": parent.external_id},
            )
            return ReconcileOutcome.CYCLE

        structure.parent_structure = parent
        self.session.commit()
        structure_updated.send(structure)
        return ReconcileOutcome.LINKED

    def synchronize_with_upstream(self) -> int:
        """
        Disable unlocked local structures whose cached record is no longer enabled.

        Does nothing against an empty cache.
        """
        enabled_identifiers = self.curator.enabled_identifiers(RECORD_TYPE)
        if not enabled_identifiers:
            logger.warning("Upstream cache holds no enabled structure; skipping structure sync")
            return 0

        stmt = select(Structure).where(
            Structure.platform == self.settings.platform,
            Structure.enabled.is_(True),
            Structure.locked.is_(False),
        )
        disabled = 0
        for structure in self.session.scalars(stmt).all():
            if structure.external_id in enabled_identifiers:
                continue
            structure.enabled = False
            disabled += 1
            logger.info("Disabling structure missing upstream", extra={"structure_external_id": structure.external_id})
        if disabled:
            self.session.commit()
        return disabled

    def _finish(self, record: UpstreamRecord, outcome: ReconcileOutcome) -> ReconcileOutcome:
        record_reconciled(RECORD_TYPE.value, outcome.value)
        return outcome

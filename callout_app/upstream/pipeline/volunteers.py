"""
Volunteer reconciler: projects cached volunteer records onto local Volunteers.

Each record goes through an ordered state machine; the first terminal branch
that matches wins and is recorded in ``Volunteer.report``:

    invalid -> membership recompute -> update_locked -> disabled
            -> unchanged -> failed -> minor | created/updated

Admin-role derivation runs after every branch except ``invalid``.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime, timezone
from typing import Callable

from sqlalchemy import select
from sqlalchemy.orm import Session

from callout_app.models import Structure, UpstreamRecord, UpstreamRecordType, User, Volunteer, db
from callout_app.models.upstream import timestamps_match
from callout_app.upstream.events import volunteer_updated
from callout_app.upstream.metrics import record_reconciled
from callout_app.upstream.payloads import VolunteerPayload
from callout_app.upstream.pipeline.badges import BadgeResolver
from callout_app.upstream.pipeline.contact import PhoneResolver, select_email
from callout_app.upstream.pipeline.curator import UpstreamCacheCurator
from callout_app.upstream.pipeline.outcomes import REPORTED_OUTCOMES, ReconcileCounters, ReconcileOutcome
from callout_app.utils.upstream import UpstreamSettings, get_upstream_settings

logger = logging.getLogger(__name__)

RECORD_TYPE = UpstreamRecordType.VOLUNTEER

_BIRTHDAY_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Outcomes after which subscribers are told the volunteer changed
_NOTIFIED_OUTCOMES = frozenset(
    {
        ReconcileOutcome.CREATED,
        ReconcileOutcome.UPDATED,
        ReconcileOutcome.DISABLED,
        ReconcileOutcome.MINOR,
    }
)


def local_external_id(identifier: str) -> str:
    """Upstream pads volunteer ids with zeros; local ids carry none."""
    return str(identifier).strip().lstrip("0") or "0"


def normalize_name(value: str | None) -> str | None:
    """``jean-PIERRE`` -> ``Jean-pierre``"""
    if not value:
        return None
    value = value.strip()
    return value[:1].upper() + value[1:].lower()


def parse_birthday(value: str | None, *, today: date | None = None) -> date | None:
    """Read the date part of an upstream birthday; anything unexpected is ignored."""
    if not value:
        return None
    token = value[:10]
    if not _BIRTHDAY_REGEX.match(token):
        return None
    try:
        parsed = date.fromisoformat(token)
    except ValueError:
        return None
    if parsed > (today or date.today()):
        return None
    return parsed


class VolunteerReconciler:
    """Create-or-update of local Volunteers, their contacts, badges and linked User."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        curator: UpstreamCacheCurator | None = None,
        settings: UpstreamSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.session = session or db.session
        self.curator = curator or UpstreamCacheCurator(self.session)
        self.settings = settings or get_upstream_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.phones = PhoneResolver(self.session, region=self.settings.phone_locale)
        self.badges = BadgeResolver(
            self.session,
            platform=self.settings.platform,
            training_validity_months=self.settings.training_validity_months,
        )

    # Lookups

    def find_volunteer(self, external_id: str) -> Volunteer | None:
        stmt = select(Volunteer).where(
            Volunteer.platform == self.settings.platform,
            Volunteer.external_id == local_external_id(external_id),
        )
        return self.session.scalars(stmt).first()

    def find_structures(self, external_ids) -> list[Structure]:
        """Local structures for ``external_ids``, in the given order; unknown ids are dropped."""
        wanted = list(dict.fromkeys(external_ids))
        if not wanted:
            return []
        stmt = select(Structure).where(
            Structure.platform == self.settings.platform,
            Structure.external_id.in_(wanted),
        )
        by_id = {structure.external_id: structure for structure in self.session.scalars(stmt)}
        return [by_id[external_id] for external_id in wanted if external_id in by_id]

    # Passes

    def refresh_volunteers(self, force: bool = False) -> ReconcileCounters:
        self.synchronize_with_upstream()

        counters = ReconcileCounters()

        def _visit(record: UpstreamRecord) -> None:
            logger.debug("Walking through a volunteer", extra={"upstream_identifier": record.identifier})
            payload = record.volunteer_payload
            if payload is None or payload.user_id is None:
                counters.add(self._finish(record, ReconcileOutcome.INVALID))
                return
            counters.add(self.refresh_volunteer(record, force))

        walk = self.curator.walk(RECORD_TYPE, _visit)
        counters.failed_records = walk.failed
        return counters

    def refresh_volunteer(self, record: UpstreamRecord, force: bool = False) -> ReconcileOutcome:
        payload = record.volunteer_payload
        if payload is None:
            return self._finish(record, ReconcileOutcome.INVALID)

        volunteer = self.find_volunteer(record.identifier)
        created = volunteer is None
        if created:
            volunteer = Volunteer(
                platform=self.settings.platform,
                external_id=local_external_id(record.identifier),
                enabled=True,
                report=[],
            )
            self.session.add(volunteer)

        self.update_memberships(volunteer, record, payload)

        if volunteer.locked:
            self.sync_user(volunteer)
            return self._terminate(record, volunteer, ReconcileOutcome.UPDATE_LOCKED)

        if not payload.active:
            volunteer.enabled = False
            return self._terminate(record, volunteer, ReconcileOutcome.DISABLED)

        if not force and timestamps_match(volunteer.last_upstream_update, record.fetched_at):
            return self._terminate(record, volunteer, ReconcileOutcome.UNCHANGED)

        if payload.user_id is None:
            return self._terminate(record, volunteer, ReconcileOutcome.FAILED)

        logger.debug(
            "Updating a volunteer",
            extra={"upstream_identifier": record.identifier, "upstream_parent_identifier": record.parent_identifier},
        )
        self.apply_payload(volunteer, payload)
        volunteer.last_upstream_update = record.fetched_at

        if volunteer.is_minor(self.settings.minor_age, today=self._clock().date()):
            volunteer.enabled = False
            return self._terminate(record, volunteer, ReconcileOutcome.MINOR)

        self.sync_user(volunteer)
        return self._terminate(record, volunteer, ReconcileOutcome.CREATED if created else ReconcileOutcome.UPDATED)

    # Steps

    def update_memberships(self, volunteer: Volunteer, record: UpstreamRecord, payload: VolunteerPayload) -> None:
        """Memberships = structures on the cache trail plus structures named by the volunteer's actions."""
        structures = self.find_structures([*record.parent_identifiers, *payload.structure_ids])
        added, removed = volunteer.sync_structures(structures)
        if added or removed:
            logger.debug(
                "Updated volunteer memberships",
                extra={
                    "volunteer_external_id": volunteer.external_id,
                    "memberships_added": added,
                    "memberships_removed": removed,
                },
            )

    def apply_payload(self, volunteer: Volunteer, payload: VolunteerPayload) -> None:
        volunteer.enabled = True
        volunteer.first_name = normalize_name(payload.first_name)
        volunteer.last_name = normalize_name(payload.last_name)

        birthday = parse_birthday(payload.birthday, today=self._clock().date())
        if birthday is not None:
            volunteer.birthday = birthday

        if not volunteer.phone_locked:
            self.phones.resolve(volunteer, payload.contacts)

        if not volunteer.email_locked:
            email = select_email(
                payload.contacts,
                favorite_number=payload.favorite_contact_number,
                organizational_domains=self.settings.organizational_email_domains,
            )
            if email:
                volunteer.email = email

        volunteer.set_badges(self.badges.fetch_badges(payload, now=self._clock()))

    def sync_user(self, volunteer: Volunteer) -> None:
        """A linked user sees the volunteer's structures and everything below them."""
        user = volunteer.user
        if user is None:
            return
        wanted: list[Structure] = []
        for structure in volunteer.structures:
            for candidate in (structure, *structure.get_descendants()):
                if candidate not in wanted:
                    wanted.append(candidate)
        if set(user.structures) != set(wanted):
            user.structures = wanted

    def check_admin_role(self, volunteer: Volunteer) -> None:
        """
        Derive the linked user's flags from the volunteer.

        A disabled volunteer loses trust and nothing else is evaluated. The
        admin badge grants admin, creating the user when needed. Losing the
        badge does not revoke admin.
        """
        user = volunteer.user
        if not volunteer.enabled:
            if user is not None and user.is_trusted:
                user.is_trusted = False
                self.session.commit()
                logger.info("Distrusting user of a disabled volunteer", extra={"volunteer_external_id": volunteer.external_id})
            return

        if not volunteer.has_badge(self.settings.admin_badge):
            return

        if user is None:
            user = self.session.scalars(
                select(User).where(User.platform == volunteer.platform, User.external_id == volunteer.external_id)
            ).first()
            if user is None:
                user = User(platform=volunteer.platform, external_id=volunteer.external_id)
                self.session.add(user)
            user.volunteer = volunteer
        if not user.is_admin:
            user.is_admin = True
            logger.info("Granting admin to volunteer user", extra={"volunteer_external_id": volunteer.external_id})
        self.session.commit()

    def synchronize_with_upstream(self) -> int:
        """
        Disable unlocked local volunteers whose cached record is no longer enabled.

        Does nothing against an empty cache.
        """
        enabled_identifiers = {
            local_external_id(identifier) for identifier in self.curator.enabled_identifiers(RECORD_TYPE)
        }
        if not enabled_identifiers:
            logger.warning("Upstream cache holds no enabled volunteer; skipping volunteer sync")
            return 0

        stmt = select(Volunteer).where(
            Volunteer.platform == self.settings.platform,
            Volunteer.enabled.is_(True),
            Volunteer.locked.is_(False),
        )
        disabled = []
        for volunteer in self.session.scalars(stmt).all():
            if volunteer.external_id in enabled_identifiers:
                continue
            volunteer.enabled = False
            disabled.append(volunteer)
            logger.info("Disabling volunteer missing upstream", extra={"volunteer_external_id": volunteer.external_id})
        if disabled:
            self.session.commit()
            for volunteer in disabled:
                self.check_admin_role(volunteer)
        return len(disabled)

    # Internals

    def _terminate(self, record: UpstreamRecord, volunteer: Volunteer, outcome: ReconcileOutcome) -> ReconcileOutcome:
        # An unchanged record keeps the outcome of the pass that last evaluated it
        if outcome is not ReconcileOutcome.UNCHANGED:
            volunteer.set_report([outcome.value] if outcome in REPORTED_OUTCOMES else [])
        self.session.add(volunteer)
        self.session.commit()
        if outcome in _NOTIFIED_OUTCOMES:
            volunteer_updated.send(volunteer)
        self.check_admin_role(volunteer)
        return self._finish(record, outcome)

    def _finish(self, record: UpstreamRecord, outcome: ReconcileOutcome) -> ReconcileOutcome:
        logger.debug(
            "Volunteer reconciled",
            extra={"upstream_identifier": record.identifier, "upstream_outcome": outcome.value},
        )
        record_reconciled(RECORD_TYPE.value, outcome.value)
        return outcome

"""
Badge derivation from the four upstream categories.

Each entry maps to a namespaced external id (``action-12``,
``groupeAction-3``, ``skill-7``, ``training-4``, ``nomination-9``).
Badges are shared: an external id seen for the first time creates the
Badge, later sightings reuse it.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from callout_app.models import Badge, db
from callout_app.models.badge import DESCRIPTION_MAX_LENGTH, NAME_MAX_LENGTH
from callout_app.upstream.payloads import VolunteerPayload

logger = logging.getLogger(__name__)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


class BadgeResolver:
    """Computes a volunteer's full badge list from a decoded payload."""

    def __init__(self, session: Session | None = None, *, platform: str = "fr", training_validity_months: int = 6):
        self.session = session or db.session
        self.platform = platform
        self.training_validity_months = training_validity_months

    def find_badge(self, external_id: str) -> Badge | None:
        stmt = select(Badge).where(Badge.platform == self.platform, Badge.external_id == external_id)
        return self.session.scalars(stmt).first()

    def find_or_create(self, external_id: str, name: str | None, description: str | None = None) -> Badge:
        badge = self.find_badge(external_id)
        if badge is not None:
            return badge

        name = name or external_id
        badge = Badge(
            platform=self.platform,
            external_id=external_id,
            name=name[:NAME_MAX_LENGTH],
            description=(description or name)[:DESCRIPTION_MAX_LENGTH],
        )
        self.session.add(badge)
        self.session.flush()
        logger.debug("Created badge", extra={"badge_external_id": external_id, "badge_name": badge.name})
        return badge

    def fetch_badges(self, payload: VolunteerPayload, *, now: datetime | None = None) -> list[Badge]:
        """Merge action, skill, training and nomination badges, in that order."""
        return [
            *self.fetch_action_badges(payload),
            *self.fetch_skill_badges(payload),
            *self.fetch_training_badges(payload, now=now),
            *self.fetch_nomination_badges(payload),
        ]

    def fetch_action_badges(self, payload: VolunteerPayload) -> list[Badge]:
        badges = []
        for action in payload.actions:
            if action.action_id is not None:
                badges.append(self.find_or_create(f"action-{action.action_id}", action.action_label))
        for action in payload.actions:
            if action.group_id is not None:
                badges.append(self.find_or_create(f"groupeAction-{action.group_id}", action.group_label))
        return badges

    def fetch_skill_badges(self, payload: VolunteerPayload) -> list[Badge]:
        return [self.find_or_create(f"skill-{skill.id}", skill.label) for skill in payload.skills]

    def fetch_training_badges(self, payload: VolunteerPayload, *, now: datetime | None = None) -> list[Badge]:
        now = now or datetime.now(timezone.utc)
        badges = []
        for training in payload.trainings:
            if self.is_training_expired(training.refresh_due, now=now):
                continue
            badges.append(self.find_or_create(f"training-{training.id}", training.code, training.label))
        return badges

    def fetch_nomination_badges(self, payload: VolunteerPayload) -> list[Badge]:
        return [
            self.find_or_create(f"nomination-{nomination.id}", nomination.short_label, nomination.long_label)
            for nomination in payload.nominations
        ]

    def is_training_expired(self, refresh_due: datetime | None, *, now: datetime) -> bool:
        """A training is expired once its refresh date is older than the validity window."""
        if refresh_due is None:
            return False
        return now > add_months(refresh_due, self.training_validity_months)

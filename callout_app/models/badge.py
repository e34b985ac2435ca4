# callout_app/models/badge.py
"""
Badges derived from upstream actions, skills, trainings and nominations.
"""

from sqlalchemy import UniqueConstraint

from .associations import volunteer_badges
from .base import BaseModel, db

NAME_MAX_LENGTH = 64
DESCRIPTION_MAX_LENGTH = 255


class Badge(BaseModel):
    """A deduplicated tag, unique per namespaced external id."""

    __tablename__ = "badges"

    id = db.Column(db.Integer, primary_key=True)
    platform = db.Column(db.String(5), nullable=False, default="fr")
    external_id = db.Column(db.String(64), nullable=False, index=True)  # e.g. skill-12, training-7
    name = db.Column(db.String(NAME_MAX_LENGTH), nullable=False)
    description = db.Column(db.String(DESCRIPTION_MAX_LENGTH), nullable=True)

    volunteers = db.relationship("Volunteer", secondary=volunteer_badges, back_populates="badges")

    __table_args__ = (UniqueConstraint("platform", "external_id", name="uq_badges_platform_external_id"),)

    def __repr__(self):
        return f"<Badge {self.external_id} {self.name}>"

# callout_app/models/user.py
"""
Application user accounts, optionally bound to a volunteer.
"""

from sqlalchemy import UniqueConstraint

from .associations import user_structures
from .base import BaseModel, db


class User(BaseModel):
    """Account whose permissions derive from the linked volunteer's structures."""

    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    platform = db.Column(db.String(5), nullable=False, default="fr")
    external_id = db.Column(db.String(64), nullable=False, index=True)
    volunteer_id = db.Column(db.Integer, db.ForeignKey("volunteers.id"), nullable=True, unique=True)
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    is_trusted = db.Column(db.Boolean, default=True, nullable=False)

    volunteer = db.relationship("Volunteer", back_populates="user")
    structures = db.relationship("Structure", secondary=user_structures, back_populates="users")

    __table_args__ = (UniqueConstraint("platform", "external_id", name="uq_users_platform_external_id"),)

    def __repr__(self):
        return f"<User {self.external_id} admin={self.is_admin}>"

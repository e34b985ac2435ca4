# callout_app/models/associations.py
"""
Many-to-many association tables.
"""

from .base import db

volunteer_structures = db.Table(
    "volunteer_structures",
    db.Column("volunteer_id", db.Integer, db.ForeignKey("volunteers.id", ondelete="CASCADE"), primary_key=True),
    db.Column("structure_id", db.Integer, db.ForeignKey("structures.id", ondelete="CASCADE"), primary_key=True),
)

volunteer_badges = db.Table(
    "volunteer_badges",
    db.Column("volunteer_id", db.Integer, db.ForeignKey("volunteers.id", ondelete="CASCADE"), primary_key=True),
    db.Column("badge_id", db.Integer, db.ForeignKey("badges.id", ondelete="CASCADE"), primary_key=True),
)

user_structures = db.Table(
    "user_structures",
    db.Column("user_id", db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
    db.Column("structure_id", db.Integer, db.ForeignKey("structures.id", ondelete="CASCADE"), primary_key=True),
)

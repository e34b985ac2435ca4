# callout_app/models/__init__.py
"""
Database models package
"""

from .associations import user_structures, volunteer_badges, volunteer_structures
from .badge import Badge
from .base import BaseModel, db
from .structure import Structure
from .upstream import EXPIRED_AT, UpstreamRecord, UpstreamRecordType
from .user import User
from .volunteer import Phone, Volunteer

__all__ = [
    "db",
    "BaseModel",
    "Badge",
    "EXPIRED_AT",
    "Phone",
    "Structure",
    "UpstreamRecord",
    "UpstreamRecordType",
    "User",
    "Volunteer",
    "user_structures",
    "volunteer_badges",
    "volunteer_structures",
]

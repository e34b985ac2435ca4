# callout_app/models/volunteer.py
"""
Volunteer model and its phone numbers.
"""

from datetime import date

from sqlalchemy import Index, UniqueConstraint
from sqlalchemy.orm import validates

from .associations import volunteer_badges, volunteer_structures
from .base import BaseModel, db

DEFAULT_MINOR_AGE = 18


class Volunteer(BaseModel):
    """A person reachable by alerts, reconciled from the upstream feed."""

    __tablename__ = "volunteers"

    id = db.Column(db.Integer, primary_key=True)
    platform = db.Column(db.String(5), nullable=False, default="fr")
    external_id = db.Column(db.String(64), nullable=False)

    first_name = db.Column(db.String(80), nullable=True)
    last_name = db.Column(db.String(80), nullable=True, index=True)
    birthday = db.Column(db.Date, nullable=True)

    email = db.Column(db.String(255), nullable=True)
    email_locked = db.Column(db.Boolean, default=False, nullable=False)
    phone_locked = db.Column(db.Boolean, default=False, nullable=False)

    enabled = db.Column(db.Boolean, default=True, nullable=False)
    locked = db.Column(db.Boolean, default=False, nullable=False)
    last_upstream_update = db.Column(db.DateTime(timezone=True), nullable=True)

    # Outcomes of the latest reconciliation, reset each time it runs
    report = db.Column(db.JSON, nullable=False, default=list)

    # Relationships
    phones = db.relationship(
        "Phone",
        back_populates="volunteer",
        cascade="all, delete-orphan",
        order_by="Phone.id",
    )
    structures = db.relationship("Structure", secondary=volunteer_structures, back_populates="volunteers")
    badges = db.relationship("Badge", secondary=volunteer_badges, back_populates="volunteers")
    user = db.relationship("User", back_populates="volunteer", uselist=False)

    __table_args__ = (
        UniqueConstraint("platform", "external_id", name="uq_volunteers_platform_external_id"),
        Index("idx_volunteer_name", "last_name", "first_name"),
    )

    def __repr__(self):
        return f"<Volunteer {self.external_id} {self.get_full_name()}>"

    @validates("birthday")
    def validate_birthday(self, key, value):
        """Validate birthday is not in the future"""
        if value and value > date.today():
            raise ValueError("Birthday cannot be in the future")
        return value

    def get_full_name(self):
        parts = [part for part in (self.first_name, self.last_name) if part]
        return " ".join(parts) if parts else "Unknown"

    def calculate_age(self, today=None):
        """Compute age from birthday"""
        if not self.birthday:
            return None
        today = today or date.today()
        return (
            today.year
            - self.birthday.year
            - ((today.month, today.day) < (self.birthday.month, self.birthday.day))
        )

    def is_minor(self, threshold=DEFAULT_MINOR_AGE, today=None):
        age = self.calculate_age(today=today)
        return age is not None and age < threshold

    # Report helpers
    def set_report(self, entries):
        """Replace the report, leaving an equal one untouched so no UPDATE is issued."""
        entries = list(entries)
        if (self.report or []) != entries:
            # Reassign so the JSON column is flagged dirty
            self.report = entries
            return True
        return False

    # Phone helpers
    def has_phone_number(self, e164):
        return any(phone.e164 == e164 for phone in self.phones)

    def get_preferred_phone(self):
        return next((phone for phone in self.phones if phone.preferred), None)

    def add_phone(self, e164):
        """Attach a number; it is preferred only when it is the first one."""
        phone = Phone(e164=e164, preferred=not self.phones)
        self.phones.append(phone)
        return phone

    def remove_phone(self, phone):
        self.phones.remove(phone)
        self.ensure_single_preferred_phone()

    def ensure_single_preferred_phone(self):
        """Keep exactly one preferred phone when any phone remains."""
        preferred = [phone for phone in self.phones if phone.preferred]
        for extra in preferred[1:]:
            extra.preferred = False
        if not preferred and self.phones:
            self.phones[0].preferred = True

    # Badge / structure helpers
    def has_badge(self, name):
        return any(badge.name == name for badge in self.badges)

    def sync_structures(self, structures):
        """
        Replace memberships with ``structures``.

        Returns:
            tuple[int, int]: (added, removed)
        """
        wanted = list(dict.fromkeys(structures))
        wanted_ids = {id(structure) for structure in wanted}
        removed = [structure for structure in self.structures if id(structure) not in wanted_ids]
        for structure in removed:
            self.structures.remove(structure)
        added = 0
        for structure in wanted:
            if structure not in self.structures:
                self.structures.append(structure)
                added += 1
        return added, len(removed)

    def set_badges(self, badges):
        """Full replacement of the badge set, deduplicated."""
        unique = list(dict.fromkeys(badges))
        if list(self.badges) != unique:
            self.badges = unique


class Phone(BaseModel):
    """Canonical E.164 phone number owned by exactly one volunteer."""

    __tablename__ = "phones"

    id = db.Column(db.Integer, primary_key=True)
    volunteer_id = db.Column(db.Integer, db.ForeignKey("volunteers.id"), nullable=False, index=True)
    e164 = db.Column(db.String(20), nullable=False, unique=True)
    preferred = db.Column(db.Boolean, default=False, nullable=False)

    volunteer = db.relationship("Volunteer", back_populates="phones")

    def __repr__(self):
        return f"<Phone {self.e164}{' *' if self.preferred else ''}>"

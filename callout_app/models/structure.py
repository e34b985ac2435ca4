# callout_app/models/structure.py
"""
Local organizational structures, arranged as a forest through ``parent_structure``.
"""

from sqlalchemy import Index, UniqueConstraint

from .associations import user_structures, volunteer_structures
from .base import BaseModel, db


class Structure(BaseModel):
    """An organizational unit mirrored from the upstream feed."""

    __tablename__ = "structures"

    id = db.Column(db.Integer, primary_key=True)
    platform = db.Column(db.String(5), nullable=False, default="fr")
    external_id = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=True)
    president = db.Column(db.String(64), nullable=True)  # responsible person, leading zeros stripped
    parent_structure_id = db.Column(db.Integer, db.ForeignKey("structures.id"), nullable=True)
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    locked = db.Column(db.Boolean, default=False, nullable=False)  # blocks upstream overwrites
    last_upstream_update = db.Column(db.DateTime(timezone=True), nullable=True)

    # Relationships
    parent_structure = db.relationship(
        "Structure",
        remote_side=[id],
        back_populates="child_structures",
    )
    child_structures = db.relationship("Structure", back_populates="parent_structure")
    volunteers = db.relationship("Volunteer", secondary=volunteer_structures, back_populates="structures")
    users = db.relationship("User", secondary=user_structures, back_populates="structures")

    __table_args__ = (
        UniqueConstraint("platform", "external_id", name="uq_structures_platform_external_id"),
        Index("idx_structures_enabled", "enabled"),
    )

    def __repr__(self):
        return f"<Structure {self.display_name}>"

    @property
    def display_name(self):
        if self.name:
            return f"{self.name} ({self.external_id})"
        return str(self.external_id)

    def get_ancestors(self):
        """
        Return the transitive closure of ``parent_structure``, nearest first.

        Stops at the first repeated node so an inconsistent store can never
        loop forever.
        """
        ancestors = []
        seen = {id(self)}
        current = self.parent_structure
        while current is not None and id(current) not in seen:
            ancestors.append(current)
            seen.add(id(current))
            current = current.parent_structure
        return ancestors

    def get_descendants(self):
        """Return every structure below this one, breadth first."""
        descendants = []
        seen = {id(self)}
        queue = list(self.child_structures)
        while queue:
            child = queue.pop(0)
            if id(child) in seen:
                continue
            seen.add(id(child))
            descendants.append(child)
            queue.extend(child.child_structures)
        return descendants

    def would_create_cycle(self, candidate_parent):
        """True when linking ``candidate_parent`` as parent closes a loop."""
        if candidate_parent is None:
            return False
        return candidate_parent is self or self in candidate_parent.get_ancestors()

"""
Reconciliation outcomes and the counters summarizing a pass.
"""

from __future__ import annotations

import enum
from collections import Counter
from dataclasses import dataclass, field


class ReconcileOutcome(str, enum.Enum):
    """Terminal state of one record's reconciliation."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    INVALID = "invalid"
    LOCKED = "locked"
    UPDATE_LOCKED = "update_locked"
    DISABLED = "disabled"
    FAILED = "failed"
    MINOR = "minor"
    # parent-link pass
    LINKED = "linked"
    CYCLE = "cycle"
    MISSING_PARENT = "missing_parent"


# Outcomes written to Volunteer.report
REPORTED_OUTCOMES = frozenset(
    {
        ReconcileOutcome.UPDATE_LOCKED,
        ReconcileOutcome.DISABLED,
        ReconcileOutcome.FAILED,
        ReconcileOutcome.MINOR,
    }
)


@dataclass
class ReconcileCounters:
    """Outcome tallies for one walk, plus walk-level failures."""

    outcomes: Counter = field(default_factory=Counter)
    failed_records: int = 0

    def add(self, outcome: ReconcileOutcome) -> ReconcileOutcome:
        self.outcomes[outcome.value] += 1
        return outcome

    def count(self, outcome: ReconcileOutcome) -> int:
        return self.outcomes.get(outcome.value, 0)

    def to_dict(self) -> dict[str, int]:
        payload = {key: self.outcomes[key] for key in sorted(self.outcomes)}
        payload["failed_records"] = self.failed_records
        return payload

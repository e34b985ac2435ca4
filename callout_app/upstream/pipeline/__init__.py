"""
Reconciliation pipeline: cache curation, structure and volunteer reconcilers.
"""

from .badges import BadgeResolver, add_months
from .contact import PhoneNumberParseError, PhoneResolver, normalize_phone, phone_candidates, select_email
from .curator import (
    ListingSummary,
    UnknownUpstreamType,
    UpstreamCacheCurator,
    UpstreamRecordNotFound,
    WalkFailure,
    WalkSummary,
    coerce_record_type,
    normalize_identifier,
)
from .outcomes import ReconcileCounters, ReconcileOutcome
from .refresh import FINALISATION_UNITS, RefreshSummary, UpstreamRefreshService
from .structures import StructureReconciler
from .volunteers import VolunteerReconciler

__all__ = [
    "BadgeResolver",
    "FINALISATION_UNITS",
    "ListingSummary",
    "PhoneNumberParseError",
    "PhoneResolver",
    "ReconcileCounters",
    "ReconcileOutcome",
    "RefreshSummary",
    "StructureReconciler",
    "UnknownUpstreamType",
    "UpstreamCacheCurator",
    "UpstreamRecordNotFound",
    "UpstreamRefreshService",
    "VolunteerReconciler",
    "WalkFailure",
    "WalkSummary",
    "add_months",
    "coerce_record_type",
    "normalize_identifier",
    "normalize_phone",
    "phone_candidates",
    "select_email",
]

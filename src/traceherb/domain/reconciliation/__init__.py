"""Reconciliation of per-source batch records into canonical batches.

Pipeline per record: identity resolution -> status arbitration -> field
merge -> timeline synthesis -> change notification. Every stage except the
identity registry is a pure function of the records linked to an identity.
"""

from __future__ import annotations

from .arbiter import arbitrate_status
from .contracts import (
    AmbiguousIdentityResolution,
    IdentityLink,
    IdentityResolution,
    NewIdentityResolution,
    ResolutionStatus,
    ResolvedIdentityResolution,
    StatusDecision,
)
from .engine import IngestOutcome, IngestSummary, ReconciliationEngine, view_signature
from .history import merge_status_history
from .identity import IdentityResolver
from .merge import field_category, merge_fields, trust_rank
from .timeline import STAGES, synthesize_timeline

__all__ = [
    "STAGES",
    "AmbiguousIdentityResolution",
    "IdentityLink",
    "IdentityResolution",
    "IdentityResolver",
    "IngestOutcome",
    "IngestSummary",
    "NewIdentityResolution",
    "ReconciliationEngine",
    "ResolutionStatus",
    "ResolvedIdentityResolution",
    "StatusDecision",
    "arbitrate_status",
    "field_category",
    "merge_fields",
    "merge_status_history",
    "synthesize_timeline",
    "trust_rank",
    "view_signature",
]

"""Public interface for the participant portal adapter."""

from __future__ import annotations

from .client import PortalRecordSource
from .schema import PortalBatchPayload, PortalEnvelope, PortalStatusChange
from .translator import (
    PORTAL_COLLECTIONS,
    parse_batch_record,
    parse_batch_records,
    parse_status,
    records_from_export,
)

__all__ = [
    "PORTAL_COLLECTIONS",
    "PortalBatchPayload",
    "PortalEnvelope",
    "PortalRecordSource",
    "PortalStatusChange",
    "parse_batch_record",
    "parse_batch_records",
    "parse_status",
    "records_from_export",
]

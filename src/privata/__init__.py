"""Privata - GDPR/HIPAA compliance enforcement for data access."""

__version__ = "0.1.0"

from privata.access import AccessContext, DataAccessEngine, Query
from privata.compliance import (
    AuditSink,
    ComplianceGate,
    ConsentLedger,
    FieldClassifier,
    ModelRegistry,
    RegionRouter,
    RestrictionRegistry,
)
from privata.config import Settings, get_settings
from privata.rights import RightsWorkflowEngine

__all__ = [
    "AccessContext",
    "AuditSink",
    "ComplianceGate",
    "ConsentLedger",
    "DataAccessEngine",
    "FieldClassifier",
    "ModelRegistry",
    "Query",
    "RegionRouter",
    "RestrictionRegistry",
    "RightsWorkflowEngine",
    "Settings",
    "get_settings",
]

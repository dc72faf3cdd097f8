"""Compliance components: classification, consent, audit, residency and policy."""

from privata.compliance.audit import AuditSink, ComplianceReporter
from privata.compliance.classifier import FieldClassifier, ModelRegistry
from privata.compliance.consent import ConsentLedger
from privata.compliance.encryption import AesGcmEncryptor, Encryptor, FieldEncryptor
from privata.compliance.events import ComplianceEventBus
from privata.compliance.gate import ComplianceGate
from privata.compliance.pseudonym import Pseudonymizer
from privata.compliance.region import GeoLocator, HttpGeoLocator, RegionRouter
from privata.compliance.restriction import RestrictionRegistry

__all__ = [
    # Audit
    "AuditSink",
    "ComplianceReporter",
    "ComplianceEventBus",
    # Classification
    "FieldClassifier",
    "ModelRegistry",
    # Consent
    "ConsentLedger",
    # Policy
    "ComplianceGate",
    "RestrictionRegistry",
    # Residency
    "GeoLocator",
    "HttpGeoLocator",
    "RegionRouter",
    # Erasure
    "Pseudonymizer",
    # Encryption
    "AesGcmEncryptor",
    "Encryptor",
    "FieldEncryptor",
]

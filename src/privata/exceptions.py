"""Error taxonomy for the compliance engine.

Evaluation errors (the system could not decide) and policy denials (the system
decided "no") are kept apart: ``ComplianceDenied`` carries the structured
decision, everything else means the operation must not proceed.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from privata.models.decision import ComplianceDecision


class PrivataError(Exception):
    """Base class for all engine errors."""


class UnknownModel(PrivataError):
    """A model was used before its schema was registered."""

    def __init__(self, model: str):
        self.model = model
        super().__init__(f"Model not registered: {model}")


class ConsentCheckFailed(PrivataError):
    """The consent ledger could not answer (unreachable or malformed record)."""

    def __init__(self, subject_id: str | None, purpose: str, cause: Exception | None = None):
        self.subject_id = subject_id
        self.purpose = purpose
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Consent check failed for purpose '{purpose}'{detail}")


class RegionUndetermined(PrivataError):
    """Data residency could not be established from the available signals."""

    def __init__(self, message: str = "Region could not be determined", signals: list[str] | None = None):
        self.signals = signals or []
        super().__init__(message)


class ResidencyViolation(PrivataError):
    """An operation would move or split a subject's data across regions."""

    def __init__(self, subject_id: str, current: str, requested: str):
        self.subject_id = subject_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Subject {subject_id} is resident in {current}; refusing to use {requested}"
        )


class ComplianceDenied(PrivataError):
    """Explicit policy denial. Carries the full decision."""

    def __init__(self, decision: "ComplianceDecision"):
        self.decision = decision
        super().__init__(f"Operation denied: {decision.reason}")

    @property
    def denied_fields(self) -> frozenset[str]:
        return self.decision.denied_fields

    @property
    def reason(self) -> str:
        return self.decision.reason


class OperationTimedOut(PrivataError):
    """A gate evaluation or data operation exceeded its timeout (fail closed)."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:.2f}s")


class AuditWriteFailed(PrivataError):
    """The audit sink could not durably record an event."""

    def __init__(self, action: str, cause: Exception | None = None):
        self.action = action
        self.cause = cause
        super().__init__(f"Audit write failed for {action}: {cause}")


class StoreUnavailable(PrivataError):
    """Transient storage failure. Safe to retry."""


class DecryptionFailed(PrivataError):
    """A sealed field value could not be decrypted (wrong key or tampered)."""

    def __init__(self, field: str, reason: str):
        self.field = field
        super().__init__(f"Could not decrypt {field or 'value'}: {reason}")


class RightsStepFailed(PrivataError):
    """A rights workflow step exhausted its retries."""

    def __init__(self, request_id: str, step: str, cause: Exception | None = None):
        self.request_id = request_id
        self.step = step
        self.cause = cause
        super().__init__(f"Step '{step}' of request {request_id} failed: {cause}")


class RightsRequestNotFound(PrivataError):
    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Rights request not found: {request_id}")


class InvalidRightsRequest(PrivataError):
    """The payload of a rights request cannot be executed."""

    def __init__(self, message: str, errors: list[str] | None = None, details: dict[str, Any] | None = None):
        self.errors = errors or []
        self.details = details or {}
        super().__init__(message)

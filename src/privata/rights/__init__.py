"""Data subject rights workflows."""

from privata.rights.steps import StepExecutor, plan_steps, validate_payload
from privata.rights.workflow import (
    DeclaredMethodVerifier,
    IdentityVerifier,
    RightsWorkflowEngine,
)

__all__ = [
    "DeclaredMethodVerifier",
    "IdentityVerifier",
    "RightsWorkflowEngine",
    "StepExecutor",
    "plan_steps",
    "validate_payload",
]

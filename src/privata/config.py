"""Configuration management using pydantic-settings."""

import base64
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ComplianceMode = Literal["strict", "relaxed", "disabled"]


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PRIVATA_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Policy
    # =========================================================================
    compliance_mode: ComplianceMode = Field(
        default="strict",
        description="Default compliance mode: strict blocks, relaxed logs, disabled skips",
    )
    default_framework: Literal["GDPR", "HIPAA", "CCPA"] = Field(
        default="GDPR",
        description="Framework attached to audit events that touch no PHI",
    )
    phi_consent_exempt_purposes: list[str] = Field(
        default_factory=lambda: ["treatment", "payment", "healthcare-operations"],
        description="HIPAA purposes for which PHI access does not require consent",
    )
    rights_purpose: str = Field(
        default="data-subject-rights",
        description="Purpose used by rights workflows; consent exempt and never restricted",
    )

    # =========================================================================
    # Consent
    # =========================================================================
    consent_ttl_days: int = Field(
        default=365,
        ge=1,
        le=3650,
        description="Default lifetime of a consent grant",
    )

    # =========================================================================
    # Audit
    # =========================================================================
    audit_retention_days: int = Field(
        default=2555,
        ge=1,
        description="Fallback audit retention (7 years) for unknown frameworks",
    )
    retention_policy: dict[str, int] = Field(
        default_factory=lambda: {"GDPR": 2555, "HIPAA": 2555, "CCPA": 2555},
        description="Audit retention in days keyed by compliance framework",
    )
    audit_export_page_size: int = Field(
        default=1000,
        ge=1,
        le=1000,
        description="Events fetched per page while exporting or streaming audit logs",
    )

    # =========================================================================
    # Rights workflows
    # =========================================================================
    rights_max_retries: int = Field(default=3, ge=0, le=10)
    rights_retry_initial_delay: float = Field(default=0.5, ge=0.0)
    rights_retry_max_delay: float = Field(default=10.0, ge=0.0)
    rights_deadline_days: int = Field(
        default=30,
        ge=1,
        description="GDPR response deadline attached to each rights request",
    )

    # =========================================================================
    # Timeouts and caching
    # =========================================================================
    operation_timeout_seconds: float | None = Field(
        default=30.0,
        description="Default timeout for gate evaluations and data operations (None disables)",
    )
    record_cache_ttl_seconds: int = Field(default=300, ge=1)
    region_cache_ttl_seconds: int = Field(default=3600, ge=1)

    # =========================================================================
    # Region routing
    # =========================================================================
    geoip_url: str | None = Field(
        default=None,
        description="GeoIP lookup URL with an {ip} placeholder returning JSON with a country code",
    )
    geoip_timeout_seconds: float = Field(default=2.0, gt=0.0)
    geoip_memo_size: int = Field(default=10_000, ge=1, description="Resolved IP addresses kept in memory")

    # =========================================================================
    # Pseudonymization
    # =========================================================================
    pseudonym_secret: str = Field(
        default="change-me-in-production",
        min_length=8,
        description="HMAC key used to pseudonymize erased subject links",
    )

    # =========================================================================
    # Field encryption
    # =========================================================================
    field_encryption_key: str | None = Field(
        default=None,
        description="URL-safe base64 AES-256 key; PII/PHI values are stored encrypted when set",
    )

    # =========================================================================
    # Logging
    # =========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
    )
    log_format: Literal["json", "console"] = Field(
        default="json",
    )

    # =========================================================================
    # Validators
    # =========================================================================
    @field_validator("retention_policy")
    @classmethod
    def normalize_frameworks(cls, v: dict[str, int]) -> dict[str, int]:
        """Framework keys are matched case-insensitively."""
        normalized = {}
        for framework, days in v.items():
            if days < 1:
                raise ValueError(f"retention for {framework} must be at least one day")
            normalized[framework.upper()] = days
        return normalized

    @field_validator("field_encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            key = base64.urlsafe_b64decode(v.encode("ascii"))
        except ValueError as e:
            raise ValueError("field_encryption_key must be URL-safe base64") from e
        if len(key) != 32:
            raise ValueError("field_encryption_key must decode to 32 bytes")
        return v

    def retention_days_for(self, framework: str | None) -> int:
        """Retention period for audit events of a compliance framework."""
        if framework is None:
            return self.audit_retention_days
        return self.retention_policy.get(framework.upper(), self.audit_retention_days)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

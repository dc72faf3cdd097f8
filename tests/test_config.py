"""Tests for settings."""

import pytest
from pydantic import ValidationError

from privata.config import Settings
from privata.logging import setup_logging


class TestSettings:
    """Tests for environment-driven settings."""

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.compliance_mode == "strict"
        assert settings.consent_ttl_days == 365
        assert settings.audit_export_page_size == 1000
        assert settings.rights_deadline_days == 30
        assert "treatment" in settings.phi_consent_exempt_purposes

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("PRIVATA_COMPLIANCE_MODE", "relaxed")
        monkeypatch.setenv("PRIVATA_CONSENT_TTL_DAYS", "90")

        settings = Settings(_env_file=None)

        assert settings.compliance_mode == "relaxed"
        assert settings.consent_ttl_days == 90

    def test_invalid_mode(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, compliance_mode="lenient")

    def test_retention_lookup(self):
        settings = Settings(_env_file=None, retention_policy={"hipaa": 2190}, audit_retention_days=400)

        assert settings.retention_days_for("HIPAA") == 2190
        assert settings.retention_days_for("gdpr") == 400
        assert settings.retention_days_for(None) == 400

    def test_retention_must_be_positive(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, retention_policy={"GDPR": 0})


class TestLogging:
    """Tests for logging setup."""

    @pytest.mark.parametrize("log_format", ["json", "console"])
    def test_setup_returns_logger(self, log_format):
        settings = Settings(_env_file=None, log_level="DEBUG", log_format=log_format)

        logger = setup_logging(settings=settings)

        assert logger is not None
        logger.info("Logging configured", format=log_format)

"""Consent records."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from privata.models.base import new_id, utc_now


class ConsentRecord(BaseModel):
    """Consent of one subject for one purpose.

    A record is *active* when granted, not withdrawn and not expired. Records
    are updated in place on re-grant and withdrawal, never deleted.
    """

    id: str = Field(default_factory=lambda: new_id("consent"))
    subject_id: str = Field(min_length=1)
    purpose: str = Field(min_length=1)
    granted: bool = False
    granted_at: datetime | None = None
    expires_at: datetime | None = None
    withdrawn_at: datetime | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def is_active(self, now: datetime | None = None) -> bool:
        """Check if consent is currently valid."""
        now = now or utc_now()
        if not self.granted or self.withdrawn_at is not None:
            return False
        if self.expires_at is None:
            return False
        return now < self.expires_at

    def to_record(self) -> dict[str, Any]:
        """Storage representation."""
        return self.model_dump()

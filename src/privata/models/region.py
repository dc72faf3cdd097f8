"""Residency regions and request context."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Region(str, Enum):
    """Supported data residency regions."""

    US = "US"
    EU = "EU"
    APAC = "APAC"


class RequestContext(BaseModel):
    """Metadata of the inbound request an operation is executed for."""

    ip_address: str | None = None
    user_agent: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    user_id: str | None = None
    session_id: str | None = None
    timestamp: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    def header(self, name: str) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

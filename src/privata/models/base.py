"""Shared helpers for engine models."""

import secrets
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def new_id(prefix: str = "") -> str:
    """Random identifier, optionally prefixed (``audit-3f9a...``)."""
    token = secrets.token_hex(8)
    return f"{prefix}-{token}" if prefix else token

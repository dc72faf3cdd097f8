"""Keyed pseudonyms for erased subject links."""

import hashlib
import hmac

from privata.config import Settings, get_settings


class Pseudonymizer:
    """Replace subject identifiers with stable HMAC-SHA256 pseudonyms.

    The same identifier always yields the same pseudonym under one key, so
    erased records stay groupable without revealing who they belonged to.
    Audit events keep the original identifier.
    """

    PREFIX = "pseudo-"

    def __init__(self, secret: str | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        key = secret if secret is not None else self.settings.pseudonym_secret
        self._key = key.encode("utf-8")

    def pseudonymize(self, identifier: str) -> str:
        if self.is_pseudonym(identifier):
            return identifier
        digest = hmac.new(self._key, identifier.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{self.PREFIX}{digest[:32]}"

    def is_pseudonym(self, value: str) -> bool:
        return isinstance(value, str) and value.startswith(self.PREFIX)

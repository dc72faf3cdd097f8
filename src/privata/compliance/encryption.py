"""Field-level encryption of PII and PHI values at rest.

Values are JSON-encoded before encryption so numbers, lists and nested
objects survive a round trip. Ciphertexts carry a version prefix, which lets
readers tell sealed values from plaintext written before encryption was
enabled.
"""

import base64
import json
import secrets
from typing import Any, Protocol

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from privata.config import Settings, get_settings
from privata.exceptions import DecryptionFailed
from privata.models.schema import ModelSchema

logger = structlog.get_logger(__name__)


class Encryptor(Protocol):
    """Symmetric string encryption."""

    def encrypt(self, plaintext: str, context: str = "") -> str: ...

    def decrypt(self, token: str, context: str = "") -> str: ...

    def is_encrypted(self, value: Any) -> bool: ...


class AesGcmEncryptor:
    """AES-256-GCM with a random 96-bit nonce per value.

    ``context`` is bound as associated data, so a ciphertext copied into
    another model or field fails to decrypt.
    """

    PREFIX = "enc:v1:"
    NONCE_SIZE = 12

    def __init__(self, key: bytes | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        if key is None:
            if not self.settings.field_encryption_key:
                raise ValueError("An encryption key is required")
            key = base64.urlsafe_b64decode(self.settings.field_encryption_key.encode("ascii"))
        if len(key) != 32:
            raise ValueError("AES-256 requires a 32-byte key")
        self._cipher = AESGCM(key)

    @staticmethod
    def generate_key() -> str:
        """New random key in the format ``field_encryption_key`` expects."""
        return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")

    def encrypt(self, plaintext: str, context: str = "") -> str:
        nonce = secrets.token_bytes(self.NONCE_SIZE)
        sealed = self._cipher.encrypt(nonce, plaintext.encode("utf-8"), context.encode("utf-8"))
        return self.PREFIX + base64.urlsafe_b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str, context: str = "") -> str:
        if not self.is_encrypted(token):
            raise DecryptionFailed(context, "value is not an encrypted token")
        try:
            raw = base64.urlsafe_b64decode(token[len(self.PREFIX):].encode("ascii"))
            nonce, sealed = raw[: self.NONCE_SIZE], raw[self.NONCE_SIZE:]
            return self._cipher.decrypt(nonce, sealed, context.encode("utf-8")).decode("utf-8")
        except (InvalidTag, ValueError) as e:
            logger.warning("Field decryption failed", context=context, error=type(e).__name__)
            raise DecryptionFailed(context, type(e).__name__) from e

    def is_encrypted(self, value: Any) -> bool:
        return isinstance(value, str) and value.startswith(self.PREFIX)


class FieldEncryptor:
    """Seal and open the sensitive fields of records of a model."""

    def __init__(self, encryptor: Encryptor):
        self.encryptor = encryptor

    @staticmethod
    def _context(schema: ModelSchema, field: str) -> str:
        return f"{schema.name}.{field}"

    def seal(self, schema: ModelSchema, record: dict[str, Any]) -> dict[str, Any]:
        """Copy of ``record`` with non-null PII/PHI values encrypted."""
        sealed = dict(record)
        for field in schema.sensitive_fields:
            value = sealed.get(field)
            if value is None or self.encryptor.is_encrypted(value):
                continue
            sealed[field] = self.encryptor.encrypt(
                json.dumps(value, default=str), self._context(schema, field)
            )
        return sealed

    def open(self, schema: ModelSchema, record: dict[str, Any]) -> dict[str, Any]:
        """Copy of ``record`` with sealed values decrypted.

        Raises:
            DecryptionFailed: If a sealed value was tampered with or the key is wrong
        """
        opened = dict(record)
        for field in schema.sensitive_fields:
            value = opened.get(field)
            if self.encryptor.is_encrypted(value):
                opened[field] = json.loads(self.encryptor.decrypt(value, self._context(schema, field)))
        return opened

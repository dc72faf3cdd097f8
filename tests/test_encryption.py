"""Tests for field-level encryption."""

import base64

import pytest
from pydantic import ValidationError

from privata.access import AccessContext, Query
from privata.compliance import AesGcmEncryptor, FieldEncryptor
from privata.config import Settings
from privata.exceptions import DecryptionFailed
from privata.models import Region

from conftest import PATIENT, build_stack

KEY = base64.urlsafe_b64encode(bytes(range(32))).decode("ascii")

PATIENT_RECORD = {
    "id": "rec-1",
    "subject_id": "user-1",
    "name": "Anna Schmidt",
    "email": "anna@example.de",
    "diagnosis": {"code": "I10", "severity": 2},
    "status": "active",
}


@pytest.fixture
def encryptor(settings):
    return AesGcmEncryptor(base64.urlsafe_b64decode(KEY), settings=settings)


class TestAesGcmEncryptor:
    """Tests for the AES-GCM encryptor."""

    def test_round_trip_with_fresh_nonce(self, encryptor):
        first = encryptor.encrypt("Anna Schmidt", "patient.name")
        second = encryptor.encrypt("Anna Schmidt", "patient.name")

        assert first != second
        assert encryptor.is_encrypted(first)
        assert encryptor.decrypt(first, "patient.name") == "Anna Schmidt"

    def test_context_is_bound(self, encryptor):
        token = encryptor.encrypt("Anna Schmidt", "patient.name")

        with pytest.raises(DecryptionFailed):
            encryptor.decrypt(token, "patient.email")

    def test_tampered_token_rejected(self, encryptor):
        token = encryptor.encrypt("hypertension", "patient.diagnosis")
        tampered = token[:-4] + ("AAAA" if not token.endswith("AAAA") else "BBBB")

        with pytest.raises(DecryptionFailed):
            encryptor.decrypt(tampered, "patient.diagnosis")

    def test_key_from_settings(self):
        settings = Settings(_env_file=None, field_encryption_key=AesGcmEncryptor.generate_key())

        encryptor = AesGcmEncryptor(settings=settings)

        assert encryptor.decrypt(encryptor.encrypt("x")) == "x"

    def test_missing_key(self, settings):
        with pytest.raises(ValueError):
            AesGcmEncryptor(settings=settings)

    @pytest.mark.parametrize("key", ["not base64!", base64.urlsafe_b64encode(b"short").decode()])
    def test_invalid_key_setting(self, key):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, field_encryption_key=key)


class TestFieldEncryptor:
    """Tests for sealing records."""

    def test_seal_only_sensitive_fields(self, encryptor):
        fields = FieldEncryptor(encryptor)

        sealed = fields.seal(PATIENT, {**PATIENT_RECORD, "phone": None})

        assert encryptor.is_encrypted(sealed["name"])
        assert encryptor.is_encrypted(sealed["diagnosis"])
        assert sealed["phone"] is None
        assert sealed["status"] == "active"
        assert sealed["subject_id"] == "user-1"

    def test_open_restores_types(self, encryptor):
        fields = FieldEncryptor(encryptor)

        opened = fields.open(PATIENT, fields.seal(PATIENT, PATIENT_RECORD))

        assert opened == PATIENT_RECORD

    def test_sealing_is_idempotent(self, encryptor):
        fields = FieldEncryptor(encryptor)
        sealed = fields.seal(PATIENT, PATIENT_RECORD)

        assert fields.seal(PATIENT, sealed) == sealed

    def test_plaintext_values_pass_through_open(self, encryptor):
        assert FieldEncryptor(encryptor).open(PATIENT, PATIENT_RECORD) == PATIENT_RECORD


class TestEncryptedEngine:
    """Tests for the engine with encryption at rest."""

    @pytest.mark.asyncio
    async def test_store_holds_ciphertext(self, settings, encryptor):
        stack = build_stack(settings, encryptor=encryptor)
        await stack.consent.grant("user-1", "care")
        ctx = AccessContext(purpose="care", subject_id="user-1", region=Region.EU)

        created = await stack.engine.create("patient", {"name": "Anna Schmidt", "status": "active"}, ctx)
        stored = stack.stored("patient")[created.data["id"]]
        cached = await stack.engine.cache.get(f"record:patient:EU:{created.data['id']}")
        read = await stack.engine.find_by_id("patient", created.data["id"], ctx)

        assert created.data["name"] == "Anna Schmidt"
        assert encryptor.is_encrypted(stored["name"])
        assert stored["status"] == "active"
        assert encryptor.is_encrypted(cached["name"])
        assert read.data["name"] == "Anna Schmidt"

    @pytest.mark.asyncio
    async def test_update_and_query_open_values(self, settings, encryptor):
        stack = build_stack(settings, encryptor=encryptor)
        await stack.consent.grant("user-1", "care")
        ctx = AccessContext(purpose="care", subject_id="user-1", region=Region.EU)
        created = await stack.engine.create("patient", {"name": "Anna", "status": "active"}, ctx)

        updated = await stack.engine.update("patient", created.data["id"], {"email": "a@b.de"}, ctx)
        result = await stack.engine.query(Query("patient").where("status", "active"), ctx)

        assert updated.data["email"] == "a@b.de"
        assert encryptor.is_encrypted(stack.stored("patient")[created.data["id"]]["email"])
        assert result.data[0]["name"] == "Anna"
        assert result.data[0]["email"] == "a@b.de"

    @pytest.mark.asyncio
    async def test_filter_on_sealed_field_rejected(self, settings, encryptor):
        stack = build_stack(settings, encryptor=encryptor)
        ctx = AccessContext(purpose="care", subject_id="user-1", region=Region.EU)

        with pytest.raises(ValueError):
            await stack.engine.query(Query("patient").where("email", "a@b.de"), ctx)

    @pytest.mark.asyncio
    async def test_erasure_clears_sealed_values(self, settings, encryptor):
        stack = build_stack(settings, encryptor=encryptor)
        await stack.consent.grant("user-1", "care")
        ctx = AccessContext(purpose="care", subject_id="user-1", region=Region.EU)
        created = await stack.engine.create("patient", {"name": "Anna", "status": "active"}, ctx)

        await stack.engine.erase_subject_fields("patient", "user-1")

        assert stack.stored("patient")[created.data["id"]]["name"] is None

"""Consent ledger.

One record per (subject, purpose), updated in place on re-grant and
withdrawal. ``check`` only ever looks at the most recent record by
``granted_at`` so an older, superseded grant can never resurrect consent.
Store failures propagate unchanged.
"""

from datetime import timedelta
from typing import Any

import structlog

from privata.compliance.audit import AuditSink
from privata.config import Settings, get_settings
from privata.db.base import Consistency, StorageAdapter, StoreOptions, StoreQuery
from privata.db.filters import equals
from privata.models.audit import AuditAction
from privata.models.base import utc_now
from privata.models.consent import ConsentRecord

logger = structlog.get_logger(__name__)


class ConsentLedger:
    """Grant, check and withdraw consent per (subject, purpose)."""

    MODEL = "consent"
    ENTITY_TYPE = "consent"

    def __init__(
        self,
        store: StorageAdapter,
        audit: AuditSink,
        settings: Settings | None = None,
    ):
        self.store = store
        self.audit = audit
        self.settings = settings or get_settings()

    def _opts(self, consistency: Consistency = "strong") -> StoreOptions:
        return StoreOptions(model=self.MODEL, consistency=consistency)

    async def latest(
        self,
        subject_id: str,
        purpose: str,
        consistency: Consistency = "strong",
    ) -> ConsentRecord | None:
        """Most recent record for (subject, purpose) by ``granted_at``."""
        rows = await self.store.find_many(
            StoreQuery(
                where=equals(subject_id=subject_id, purpose=purpose),
                sort=(("granted_at", "desc"), ("updated_at", "desc")),
                limit=1,
            ),
            self._opts(consistency),
        )
        if not rows:
            return None
        return ConsentRecord.model_validate(rows[0])

    async def grant(
        self,
        subject_id: str,
        purpose: str,
        details: dict[str, Any] | None = None,
        ttl: timedelta | None = None,
        actor_id: str | None = None,
    ) -> ConsentRecord:
        """Grant consent, re-granting the existing record when there is one.

        Args:
            subject_id: Data subject
            purpose: Processing purpose
            details: Free-form context (channel, document version)
            ttl: Lifetime of the grant, ``consent_ttl_days`` by default
            actor_id: Who recorded the grant

        Returns:
            The active record
        """
        ttl = ttl if ttl is not None else timedelta(days=self.settings.consent_ttl_days)
        if ttl <= timedelta(0):
            raise ValueError("Consent ttl must be positive")

        now = utc_now()
        existing = await self.latest(subject_id, purpose)
        if existing is not None:
            record = existing.model_copy(
                update={
                    "granted": True,
                    "granted_at": now,
                    "expires_at": now + ttl,
                    "withdrawn_at": None,
                    "details": {**existing.details, **(details or {})},
                    "updated_at": now,
                }
            )
        else:
            record = ConsentRecord(
                subject_id=subject_id,
                purpose=purpose,
                granted=True,
                granted_at=now,
                expires_at=now + ttl,
                details=details or {},
                created_at=now,
                updated_at=now,
            )

        await self._persist(
            record,
            insert=existing is None,
            action=AuditAction.CONSENT_GRANTED,
            actor_id=actor_id,
            details={
                "purpose": purpose,
                "expires_at": record.expires_at.isoformat(),
                "regranted": existing is not None,
            },
        )
        logger.info(
            "Consent granted",
            subject_id=subject_id,
            purpose=purpose,
            consent_id=record.id,
            ttl_days=ttl.days,
        )
        return record

    async def check(
        self,
        subject_id: str,
        purpose: str,
        consistency: Consistency = "strong",
    ) -> bool:
        """True iff the latest record for (subject, purpose) is active."""
        record = await self.latest(subject_id, purpose, consistency)
        return record is not None and record.is_active()

    async def withdraw(
        self,
        subject_id: str,
        purpose: str,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> ConsentRecord | None:
        """Withdraw the latest active consent.

        Without an active record nothing changes, but the attempt is still
        recorded as ``CONSENT_WITHDRAWAL_ATTEMPTED``.
        """
        now = utc_now()
        existing = await self.latest(subject_id, purpose)

        if existing is None or not existing.is_active(now):
            await self.audit.record(
                AuditAction.CONSENT_WITHDRAWAL_ATTEMPTED,
                entity_type=self.ENTITY_TYPE,
                entity_id=existing.id if existing else f"{subject_id}:{purpose}",
                subject_id=subject_id,
                actor_id=actor_id,
                details={
                    "purpose": purpose,
                    "reason": reason,
                    "record_found": existing is not None,
                },
            )
            logger.info(
                "Consent withdrawal attempted without active consent",
                subject_id=subject_id,
                purpose=purpose,
            )
            return None

        record = existing.model_copy(
            update={"granted": False, "withdrawn_at": now, "updated_at": now}
        )
        await self._persist(
            record,
            insert=False,
            action=AuditAction.CONSENT_WITHDRAWN,
            actor_id=actor_id,
            details={"purpose": purpose, "reason": reason},
        )
        logger.info("Consent withdrawn", subject_id=subject_id, purpose=purpose, consent_id=record.id)
        return record

    async def withdraw_all(
        self,
        subject_id: str,
        purposes: list[str] | None = None,
        actor_id: str | None = None,
        reason: str | None = None,
    ) -> list[str]:
        """Withdraw several purposes at once, every active one by default.

        Returns:
            Purposes whose consent was actually withdrawn
        """
        targets = purposes if purposes is not None else await self.active_purposes(subject_id)
        withdrawn = []
        for purpose in targets:
            if await self.withdraw(subject_id, purpose, actor_id=actor_id, reason=reason):
                withdrawn.append(purpose)
        return withdrawn

    async def history(self, subject_id: str) -> list[ConsentRecord]:
        """All records of a subject, newest first."""
        rows = await self.store.find_many(
            StoreQuery(
                where=equals(subject_id=subject_id),
                sort=(("granted_at", "desc"), ("updated_at", "desc")),
            ),
            self._opts(),
        )
        return [ConsentRecord.model_validate(row) for row in rows]

    async def active_purposes(self, subject_id: str) -> list[str]:
        now = utc_now()
        latest: dict[str, ConsentRecord] = {}
        for record in await self.history(subject_id):
            latest.setdefault(record.purpose, record)
        return sorted(p for p, r in latest.items() if r.is_active(now))

    async def _persist(
        self,
        record: ConsentRecord,
        insert: bool,
        action: AuditAction,
        actor_id: str | None,
        details: dict[str, Any],
    ) -> None:
        """Write the record and its audit event in one transaction."""
        opts = self._opts()
        tx = await self.store.begin(opts)
        tx_opts = opts.with_transaction(tx)
        try:
            if insert:
                await self.store.create(record.to_record(), tx_opts)
            else:
                await self.store.update(record.id, record.to_record(), tx_opts)
            await self.audit.record(
                action,
                entity_type=self.ENTITY_TYPE,
                entity_id=record.id,
                subject_id=record.subject_id,
                actor_id=actor_id,
                details=details,
            )
        except BaseException:
            await self.store.rollback(tx)
            raise
        await self.store.commit(tx)

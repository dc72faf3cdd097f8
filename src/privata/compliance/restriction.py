"""Persistence for processing restrictions and objections."""

import structlog

from privata.config import Settings, get_settings
from privata.db.base import StorageAdapter, StoreOptions, StoreQuery
from privata.db.filters import equals
from privata.models.base import utc_now
from privata.models.rights import RestrictionRecord

logger = structlog.get_logger(__name__)


class RestrictionRegistry:
    """Store of ``RestrictionRecord`` consulted by the compliance gate."""

    MODEL = "restriction"

    def __init__(
        self,
        store: StorageAdapter,
        settings: Settings | None = None,
    ):
        self.store = store
        self.settings = settings or get_settings()

    def _opts(self) -> StoreOptions:
        return StoreOptions(model=self.MODEL, consistency="strong")

    async def save(self, record: RestrictionRecord) -> RestrictionRecord:
        """Insert or overwrite a record. Safe to repeat with the same id."""
        opts = self._opts()
        if await self.store.find_by_id(record.id, opts) is None:
            await self.store.create(record.to_record(), opts)
        else:
            await self.store.update(record.id, record.to_record(), opts)
        logger.info(
            "Restriction saved",
            restriction_id=record.id,
            subject_id=record.subject_id,
            scope=record.scope.value,
            active=record.active,
        )
        return record

    async def get(self, restriction_id: str) -> RestrictionRecord | None:
        row = await self.store.find_by_id(restriction_id, self._opts())
        return RestrictionRecord.model_validate(row) if row else None

    async def lift(self, restriction_id: str) -> RestrictionRecord | None:
        """Deactivate a restriction. Returns None when it does not exist."""
        record = await self.get(restriction_id)
        if record is None:
            return None
        if not record.active:
            return record
        lifted = record.model_copy(update={"active": False, "lifted_at": utc_now()})
        await self.store.update(lifted.id, lifted.to_record(), self._opts())
        logger.info("Restriction lifted", restriction_id=record.id, subject_id=record.subject_id)
        return lifted

    async def active_for(self, subject_id: str) -> list[RestrictionRecord]:
        rows = await self.store.find_many(
            StoreQuery(where=equals(subject_id=subject_id, active=True), sort=(("created_at", "asc"),)),
            self._opts(),
        )
        return [RestrictionRecord.model_validate(row) for row in rows]

    async def for_subject(self, subject_id: str) -> list[RestrictionRecord]:
        rows = await self.store.find_many(
            StoreQuery(where=equals(subject_id=subject_id), sort=(("created_at", "asc"),)),
            self._opts(),
        )
        return [RestrictionRecord.model_validate(row) for row in rows]

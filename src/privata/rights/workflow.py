"""Data subject rights workflows.

A request moves ``pending -> verifying -> executing`` and ends ``completed``,
``failed`` or ``partially-completed``. Steps run one after another. Transient
failures are retried with backoff; once a step exhausts its retries, it is
marked failed, everything before it stays committed and the steps after it
stay pending. Calling ``process`` again resumes from the failed step.

Request state is persisted after every transition so a request is never lost
between steps.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Protocol

import structlog

from privata.access.engine import DataAccessEngine
from privata.compliance.audit import AuditSink
from privata.compliance.consent import ConsentLedger
from privata.compliance.restriction import RestrictionRegistry
from privata.config import Settings, get_settings
from privata.core.resilience import RetryConfig, RetryWithBackoff
from privata.db.base import StorageAdapter, StoreOptions, StoreQuery
from privata.db.filters import equals
from privata.exceptions import (
    InvalidRightsRequest,
    RightsRequestNotFound,
    RightsStepFailed,
)
from privata.models.audit import AuditAction
from privata.models.base import utc_now
from privata.models.rights import (
    RestrictionRecord,
    RightsKind,
    RightsRequest,
    RightsStatus,
    RightsStep,
    StepStatus,
    VerificationMethod,
)
from privata.rights.steps import StepExecutor, plan_steps, validate_payload

logger = structlog.get_logger(__name__)


class IdentityVerifier(Protocol):
    """Confirm the requester is the data subject."""

    async def verify(self, request: RightsRequest) -> bool: ...


class DeclaredMethodVerifier:
    """Accept any request that declares a verification method.

    Suitable when identity is checked upstream, before intake.
    """

    async def verify(self, request: RightsRequest) -> bool:
        return request.verification_method is not None


@dataclass
class _RequestLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class RightsWorkflowEngine:
    """Intake, execution and tracking of data subject requests."""

    MODEL = "rights_request"
    ENTITY_TYPE = "rights_request"

    def __init__(
        self,
        engine: DataAccessEngine,
        consent: ConsentLedger,
        restrictions: RestrictionRegistry,
        audit: AuditSink,
        store: StorageAdapter,
        verifier: IdentityVerifier | None = None,
        retry: RetryWithBackoff | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.engine = engine
        self.consent = consent
        self.restrictions = restrictions
        self.audit = audit
        self.store = store
        self.verifier = verifier or DeclaredMethodVerifier()
        self.retry = retry or RetryWithBackoff(
            RetryConfig(
                max_retries=self.settings.rights_max_retries,
                initial_delay=self.settings.rights_retry_initial_delay,
                max_delay=self.settings.rights_retry_max_delay,
            )
        )
        self.executor = StepExecutor(
            engine, consent, restrictions, audit, requests=store, settings=self.settings
        )
        self._locks: dict[str, _RequestLock] = {}

    def _opts(self) -> StoreOptions:
        return StoreOptions(model=self.MODEL, consistency="strong")

    async def _save(self, request: RightsRequest) -> None:
        request.updated_at = utc_now()
        await self.store.update(request.id, request.to_record(), self._opts())

    async def submit(
        self,
        subject_id: str,
        kind: RightsKind | str,
        *,
        verification_method: VerificationMethod | str | None = None,
        payload: dict[str, Any] | None = None,
        actor_id: str | None = None,
    ) -> RightsRequest:
        """Validate, plan and persist a new request.

        Args:
            subject_id: Data subject the request concerns
            kind: Right being exercised
            verification_method: How the requester's identity was verified
            payload: Right-specific parameters
            actor_id: Who filed the request

        Returns:
            The pending request with its planned steps

        Raises:
            InvalidRightsRequest: If the payload cannot be executed
        """
        kind = RightsKind(kind)
        normalized = validate_payload(kind, payload)
        steps = plan_steps(kind, normalized, self.engine)
        now = utc_now()
        request = RightsRequest(
            subject_id=subject_id,
            kind=kind,
            created_at=now,
            updated_at=now,
            due_date=now + timedelta(days=self.settings.rights_deadline_days),
            verification_method=VerificationMethod(verification_method) if verification_method else None,
            payload=normalized,
            steps=[RightsStep(name=name) for name in steps],
        )

        opts = self._opts()
        tx = await self.store.begin(opts)
        try:
            await self.store.create(request.to_record(), opts.with_transaction(tx))
            await self.audit.record(
                AuditAction.DATA_SUBJECT_REQUEST,
                entity_type=self.ENTITY_TYPE,
                entity_id=request.id,
                subject_id=subject_id,
                actor_id=actor_id,
                details={
                    "kind": kind.value,
                    "verification_method": request.verification_method.value
                    if request.verification_method
                    else None,
                    "steps": steps,
                    "due_date": request.due_date.isoformat(),
                },
            )
        except BaseException:
            await self.store.rollback(tx)
            raise
        await self.store.commit(tx)

        logger.info(
            "Rights request submitted",
            request_id=request.id,
            kind=kind.value,
            subject_id=subject_id,
            steps=len(steps),
        )
        return request

    async def process(self, request_id: str, actor_id: str | None = None) -> RightsRequest:
        """Verify and execute a request, resuming after earlier failures.

        Returns:
            The request in a terminal status

        Raises:
            RightsRequestNotFound: Unknown request id
        """
        entry = self._locks.get(request_id)
        if entry is None:
            entry = self._locks[request_id] = _RequestLock()
        entry.holders += 1
        try:
            async with entry.lock:
                return await self._process(request_id, actor_id)
        finally:
            entry.holders -= 1
            if entry.holders == 0:
                del self._locks[request_id]

    async def _process(self, request_id: str, actor_id: str | None) -> RightsRequest:
        request = await self.get_request(request_id)
        if request.status == RightsStatus.COMPLETED:
            return request

        if request.verified_at is None:
            if not await self._verify(request, actor_id):
                return request

        request.status = RightsStatus.EXECUTING
        await self._save(request)

        for step in request.steps:
            if step.status == StepStatus.COMPLETED:
                continue
            if not await self._execute_step(request, step, actor_id):
                return request

        request.status = RightsStatus.COMPLETED
        request.completed_at = utc_now()
        await self._save(request)
        logger.info("Rights request completed", request_id=request.id, kind=request.kind.value)
        return request

    async def _verify(self, request: RightsRequest, actor_id: str | None) -> bool:
        request.status = RightsStatus.VERIFYING
        await self._save(request)

        if await self.verifier.verify(request):
            request.verified_at = utc_now()
            return True

        request.status = RightsStatus.FAILED
        request.result = {"error": "identity verification failed"}
        await self._save(request)
        await self.audit.record(
            AuditAction.RIGHTS_VERIFICATION_FAILED,
            entity_type=self.ENTITY_TYPE,
            entity_id=request.id,
            subject_id=request.subject_id,
            actor_id=actor_id,
            success=False,
            error="identity verification failed",
            details={
                "kind": request.kind.value,
                "verification_method": request.verification_method.value
                if request.verification_method
                else None,
            },
        )
        logger.warning("Rights request verification failed", request_id=request.id)
        return False

    async def _execute_step(self, request: RightsRequest, step: RightsStep, actor_id: str | None) -> bool:
        def count_attempt(_: int) -> None:
            step.attempts += 1

        try:
            output = await self.retry.execute(
                self.executor.run, request, step.name, actor_id, on_attempt=count_attempt
            )
        except Exception as e:
            failure = RightsStepFailed(request.id, step.name, e)
            step.status = StepStatus.FAILED
            step.timestamp = utc_now()
            step.error = f"{type(e).__name__}: {e}"
            completed = any(s.status == StepStatus.COMPLETED for s in request.steps)
            request.status = RightsStatus.PARTIALLY_COMPLETED if completed else RightsStatus.FAILED
            await self._save(request)
            await self.audit.record(
                AuditAction.RIGHTS_STEP_FAILED,
                entity_type=self.ENTITY_TYPE,
                entity_id=request.id,
                subject_id=request.subject_id,
                actor_id=actor_id,
                success=False,
                error=str(failure),
                details={
                    "kind": request.kind.value,
                    "step": step.name,
                    "attempts": step.attempts,
                    "pending_steps": [s.name for s in request.steps if s.status == StepStatus.PENDING],
                },
            )
            logger.error(
                "Rights step failed",
                request_id=request.id,
                step=step.name,
                attempts=step.attempts,
                error=str(e),
                status=request.status.value,
            )
            return False

        step.status = StepStatus.COMPLETED
        step.timestamp = utc_now()
        step.error = None
        step.output = output
        await self._save(request)
        await self.audit.record(
            AuditAction.RIGHTS_STEP_COMPLETED,
            entity_type=self.ENTITY_TYPE,
            entity_id=request.id,
            subject_id=request.subject_id,
            actor_id=actor_id,
            details={"kind": request.kind.value, "step": step.name, "attempts": step.attempts},
        )
        logger.debug("Rights step completed", request_id=request.id, step=step.name)
        return True

    async def get_request(self, request_id: str) -> RightsRequest:
        row = await self.store.find_by_id(request_id, self._opts())
        if row is None:
            raise RightsRequestNotFound(request_id)
        return RightsRequest.model_validate(row)

    async def list_requests(
        self,
        subject_id: str | None = None,
        status: RightsStatus | None = None,
    ) -> list[RightsRequest]:
        criteria: dict[str, Any] = {}
        if subject_id is not None:
            criteria["subject_id"] = subject_id
        if status is not None:
            criteria["status"] = RightsStatus(status)
        rows = await self.store.find_many(
            StoreQuery(where=equals(**criteria), sort=(("created_at", "asc"),)),
            self._opts(),
        )
        return [RightsRequest.model_validate(row) for row in rows]

    async def overdue_requests(self) -> list[RightsRequest]:
        """Open requests past their response deadline."""
        now = utc_now()
        return [
            r for r in await self.list_requests()
            if not r.status.is_terminal and r.due_date is not None and r.due_date < now
        ]

    async def lift_restriction(
        self,
        subject_id: str,
        restriction_id: str,
        actor_id: str | None = None,
    ) -> RestrictionRecord:
        """Lift a restriction or objection of a subject.

        Raises:
            InvalidRightsRequest: If the restriction does not belong to the subject
        """
        record = await self.restrictions.get(restriction_id)
        if record is None or record.subject_id != subject_id:
            raise InvalidRightsRequest(
                f"Restriction {restriction_id} not found for subject",
                details={"restriction_id": restriction_id},
            )
        lifted = await self.restrictions.lift(restriction_id)
        await self.audit.record(
            AuditAction.RESTRICTION_LIFTED,
            entity_type="restriction",
            entity_id=restriction_id,
            subject_id=subject_id,
            actor_id=actor_id,
            details={"scope": record.scope.value, "purposes": record.purposes},
        )
        return lifted

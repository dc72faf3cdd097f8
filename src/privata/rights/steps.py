"""Step plans and step handlers for data subject rights.

Every right is a fixed, ordered list of named steps planned at submission.
Handlers are written to be re-run safely: erasure skips records already
erased, restrictions are saved under ids derived from the request, and
rectification re-applies the same values.
"""

import csv
import io
import json
from typing import Any, Literal

import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator

from privata.access.engine import DataAccessEngine
from privata.compliance.audit import AuditSink
from privata.compliance.consent import ConsentLedger
from privata.compliance.restriction import RestrictionRegistry
from privata.config import Settings, get_settings
from privata.db.base import StorageAdapter, StoreOptions, StoreQuery
from privata.db.filters import equals
from privata.exceptions import InvalidRightsRequest, UnknownModel
from privata.models.audit import AuditAction
from privata.models.base import utc_now
from privata.models.rights import (
    RestrictionException,
    RestrictionRecord,
    RestrictionScope,
    RightsKind,
    RightsRequest,
)

logger = structlog.get_logger(__name__)


# =============================================================================
# Payloads
# =============================================================================


class AccessPayload(BaseModel):
    models: list[str] | None = None


class PortabilityPayload(BaseModel):
    format: Literal["JSON", "CSV"] = "JSON"
    models: list[str] | None = None


class ErasurePayload(BaseModel):
    reason: str = ""
    evidence: str = ""
    scope: RestrictionScope = RestrictionScope.ALL_PERSONAL_DATA
    data_categories: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _categories_for_specific_scope(self) -> "ErasurePayload":
        if self.scope == RestrictionScope.SPECIFIC_CATEGORIES and not self.data_categories:
            raise ValueError("data_categories are required for specific-categories scope")
        return self


class Correction(BaseModel):
    model: str
    record_id: str
    changes: dict[str, Any] = Field(min_length=1)


class RectificationPayload(BaseModel):
    corrections: list[Correction] = Field(min_length=1)
    reason: str = ""
    evidence: str = ""


class RestrictionPayload(BaseModel):
    reason: str = ""
    evidence: str = ""
    scope: RestrictionScope = RestrictionScope.ALL_PERSONAL_DATA
    data_categories: list[str] = Field(default_factory=list)
    exceptions: list[RestrictionException] = Field(default_factory=list)

    @model_validator(mode="after")
    def _categories_for_specific_scope(self) -> "RestrictionPayload":
        if self.scope == RestrictionScope.SPECIFIC_CATEGORIES and not self.data_categories:
            raise ValueError("data_categories are required for specific-categories scope")
        return self


class ObjectionPayload(BaseModel):
    objection_type: str = "legitimate-interests"
    reason: str = ""
    processing_purposes: list[str] = Field(min_length=1)


PAYLOADS: dict[RightsKind, type[BaseModel]] = {
    RightsKind.ACCESS: AccessPayload,
    RightsKind.PORTABILITY: PortabilityPayload,
    RightsKind.ERASURE: ErasurePayload,
    RightsKind.RECTIFICATION: RectificationPayload,
    RightsKind.RESTRICTION: RestrictionPayload,
    RightsKind.OBJECTION: ObjectionPayload,
}


def validate_payload(kind: RightsKind, payload: dict[str, Any] | None) -> dict[str, Any]:
    """Validate and normalize a request payload.

    Raises:
        InvalidRightsRequest: With one message per validation error
    """
    try:
        parsed = PAYLOADS[kind].model_validate(payload or {})
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc']) or 'payload'}: {err['msg']}" for err in e.errors()]
        raise InvalidRightsRequest(f"Invalid {kind.value} request", errors=errors) from e
    return parsed.model_dump(mode="json")


# =============================================================================
# Plans
# =============================================================================


def _models(engine: DataAccessEngine, requested: list[str] | None) -> list[str]:
    models = requested if requested is not None else engine.registry.models
    for model in models:
        engine.registry.get(model)
    return list(models)


def plan_steps(kind: RightsKind, payload: dict[str, Any], engine: DataAccessEngine) -> list[str]:
    """Ordered step names for a request.

    Raises:
        InvalidRightsRequest: If the payload names unregistered models
    """
    try:
        if kind == RightsKind.ACCESS:
            return [f"collect:{m}" for m in _models(engine, payload.get("models"))] + ["compile-report"]
        if kind == RightsKind.PORTABILITY:
            return [f"collect:{m}" for m in _models(engine, payload.get("models"))] + ["serialize"]
    except UnknownModel as e:
        raise InvalidRightsRequest(str(e), errors=[str(e)]) from e

    if kind == RightsKind.ERASURE:
        categories = _erasure_categories(payload)
        steps = [
            f"erase:{schema.name}"
            for schema in engine.registry.schemas()
            if any(categories is None or schema.category_of(f) in categories for f in schema.sensitive_fields)
        ]
        if categories is None:
            steps.append("withdraw-consents")
        return steps + ["purge-reports", "record-erasure"]
    if kind == RightsKind.RECTIFICATION:
        return ["validate-changes", "apply-changes", "record-rectification"]
    if kind == RightsKind.RESTRICTION:
        return ["register-restriction", "record-restriction"]
    if kind == RightsKind.OBJECTION:
        return ["withdraw-consents", "register-objection", "record-objection"]
    raise InvalidRightsRequest(f"Unsupported right: {kind}")


def _erasure_categories(payload: dict[str, Any]) -> list[str] | None:
    if payload.get("scope") == RestrictionScope.SPECIFIC_CATEGORIES.value:
        return list(payload.get("data_categories") or [])
    return None


# =============================================================================
# Execution
# =============================================================================


class StepExecutor:
    """Run one named step of a request and return its output."""

    def __init__(
        self,
        engine: DataAccessEngine,
        consent: ConsentLedger,
        restrictions: RestrictionRegistry,
        audit: AuditSink,
        requests: StorageAdapter | None = None,
        settings: Settings | None = None,
    ):
        self.engine = engine
        self.consent = consent
        self.restrictions = restrictions
        self.audit = audit
        self.requests = requests
        self.settings = settings or get_settings()

    async def run(self, request: RightsRequest, step: str, actor_id: str | None = None) -> dict[str, Any]:
        name, _, target = step.partition(":")
        handler = getattr(self, f"_{name.replace('-', '_')}", None)
        if handler is None:
            raise InvalidRightsRequest(f"Unknown step: {step}")
        if target:
            return await handler(request, target, actor_id)
        return await handler(request, actor_id)

    async def _collected(self, request: RightsRequest, actor_id: str | None) -> dict[str, list[dict[str, Any]]]:
        """Current records of every collected model.

        Step outputs only hold record ids, so the records are read again when
        the report is built and never stored with the request's progress.
        """
        data = {}
        for step in request.steps:
            if not step.name.startswith("collect:"):
                continue
            model = step.name.partition(":")[2]
            records = await self.engine.collect_subject_records(model, request.subject_id, actor_id=actor_id)
            data[model] = [_jsonable(r) for r in records]
        return data

    # Access and portability

    async def _collect(self, request: RightsRequest, model: str, actor_id: str | None) -> dict[str, Any]:
        records = await self.engine.collect_subject_records(model, request.subject_id, actor_id=actor_id)
        return {"record_ids": [r["id"] for r in records], "count": len(records)}

    async def _compile_report(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        data = await self._collected(request, actor_id)
        consents = await self.consent.history(request.subject_id)
        restrictions = await self.restrictions.for_subject(request.subject_id)
        request.result = {
            "subject_id": request.subject_id,
            "generated_at": utc_now().isoformat(),
            "data": data,
            "consents": [c.model_dump(mode="json") for c in consents],
            "restrictions": [r.model_dump(mode="json") for r in restrictions],
        }
        await self.audit.record(
            AuditAction.DATA_ACCESS_COMPLETED,
            entity_type="rights_request",
            entity_id=request.id,
            subject_id=request.subject_id,
            actor_id=actor_id,
            details={"records": {m: len(rows) for m, rows in data.items()}},
        )
        return {"models": sorted(data), "records": sum(len(rows) for rows in data.values())}

    async def _serialize(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        data = await self._collected(request, actor_id)
        export_format = request.payload.get("format", "JSON")
        if export_format == "CSV":
            content: Any = {model: _to_csv(rows) for model, rows in data.items()}
        else:
            content = json.dumps(data, sort_keys=True, indent=2)
        request.result = {
            "subject_id": request.subject_id,
            "format": export_format,
            "content": content,
            "generated_at": utc_now().isoformat(),
        }
        await self.audit.record(
            AuditAction.DATA_PORTABILITY_COMPLETED,
            entity_type="rights_request",
            entity_id=request.id,
            subject_id=request.subject_id,
            actor_id=actor_id,
            details={"format": export_format, "records": {m: len(rows) for m, rows in data.items()}},
        )
        return {"format": export_format}

    # Erasure

    async def _erase(self, request: RightsRequest, model: str, actor_id: str | None) -> dict[str, Any]:
        count = await self.engine.erase_subject_fields(
            model,
            request.subject_id,
            categories=_erasure_categories(request.payload),
            actor_id=actor_id,
        )
        return {"records_erased": count}

    async def _withdraw_consents(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        purposes = request.payload.get("processing_purposes")
        withdrawn = await self.consent.withdraw_all(
            request.subject_id,
            purposes=purposes,
            actor_id=actor_id,
            reason=f"{request.kind.value} request {request.id}",
        )
        return {"withdrawn": withdrawn}

    async def _purge_reports(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        """Drop delivered data from the subject's earlier access and portability requests."""
        if self.requests is None:
            return {"purged": []}

        opts = StoreOptions(model="rights_request", consistency="strong")
        rows = await self.requests.find_many(StoreQuery(where=equals(subject_id=request.subject_id)), opts)
        purged = []
        for row in rows:
            earlier = RightsRequest.model_validate(row)
            if earlier.id == request.id or earlier.kind not in (RightsKind.ACCESS, RightsKind.PORTABILITY):
                continue
            if not {"data", "content"} & set(earlier.result):
                continue
            result = {k: v for k, v in earlier.result.items() if k not in ("data", "content")}
            result["purged_at"] = utc_now().isoformat()
            result["purged_by"] = request.id
            for step in earlier.steps:
                step.output.pop("records", None)
            await self.requests.update(
                earlier.id,
                {"result": result, "steps": [s.model_dump() for s in earlier.steps]},
                opts,
            )
            purged.append(earlier.id)

        if purged:
            logger.info("Delivered reports purged", subject_id=request.subject_id, requests=purged)
        return {"purged": purged}

    async def _record_erasure(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        erased = {
            s.name.partition(":")[2]: s.output.get("records_erased", 0)
            for s in request.steps
            if s.name.startswith("erase:")
        }
        categories = _erasure_categories(request.payload)
        purge = request.step("purge-reports")
        request.result = {
            "records_erased": erased,
            "categories": categories or "all-personal-data",
            "reports_purged": purge.output.get("purged", []) if purge else [],
        }
        event = await self.audit.record(
            AuditAction.ERASURE,
            entity_type="rights_request",
            entity_id=request.id,
            subject_id=request.subject_id,
            actor_id=actor_id,
            details={
                "records_erased": erased,
                "categories": categories,
                "reason": request.payload.get("reason"),
            },
        )
        return {"audit_event_id": event.id}

    # Rectification

    async def _validate_changes(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        errors = []
        for index, correction in enumerate(request.payload.get("corrections", [])):
            model = correction["model"]
            try:
                schema = self.engine.registry.get(model)
            except UnknownModel:
                errors.append(f"corrections.{index}: unknown model {model}")
                continue
            forbidden = {"id", schema.subject_field} & set(correction["changes"])
            if forbidden:
                errors.append(f"corrections.{index}: cannot change {sorted(forbidden)}")
                continue
            owned = await self.engine.collect_subject_records(model, request.subject_id, actor_id=actor_id)
            if correction["record_id"] not in {r["id"] for r in owned}:
                errors.append(f"corrections.{index}: record {correction['record_id']} not found for subject")
        if errors:
            raise InvalidRightsRequest("Rectification cannot be applied", errors=errors)
        return {"validated": len(request.payload.get("corrections", []))}

    async def _apply_changes(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        rectified = []
        for correction in request.payload.get("corrections", []):
            updated = await self.engine.rectify(
                correction["model"],
                correction["record_id"],
                correction["changes"],
                subject_id=request.subject_id,
                actor_id=actor_id,
            )
            if updated is None:
                raise InvalidRightsRequest(f"Record {correction['record_id']} disappeared during rectification")
            rectified.append({
                "model": correction["model"],
                "record_id": correction["record_id"],
                "fields": sorted(correction["changes"]),
            })
        return {"rectified": rectified}

    async def _record_rectification(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        applied = request.step("apply-changes")
        rectified = applied.output.get("rectified", []) if applied else []
        request.result = {"rectified": rectified}
        event = await self.audit.record(
            AuditAction.DATA_RECTIFICATION_COMPLETED,
            entity_type="rights_request",
            entity_id=request.id,
            subject_id=request.subject_id,
            actor_id=actor_id,
            details={"rectified": rectified, "reason": request.payload.get("reason")},
        )
        return {"audit_event_id": event.id}

    # Restriction and objection

    async def _register_restriction(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        record = await self.restrictions.save(
            RestrictionRecord(
                id=f"restriction-{request.id}",
                subject_id=request.subject_id,
                scope=request.payload.get("scope", RestrictionScope.ALL_PERSONAL_DATA),
                data_categories=request.payload.get("data_categories", []),
                exceptions_applied=request.payload.get("exceptions", []),
                reason=request.payload.get("reason", ""),
            )
        )
        return {"restriction_id": record.id}

    async def _record_restriction(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        registered = request.step("register-restriction")
        restriction_id = registered.output.get("restriction_id") if registered else None
        request.result = {"restriction_id": restriction_id, "scope": request.payload.get("scope")}
        event = await self.audit.record(
            AuditAction.DATA_RESTRICTION,
            entity_type="restriction",
            entity_id=restriction_id or request.id,
            subject_id=request.subject_id,
            actor_id=actor_id,
            details={
                "request_id": request.id,
                "scope": request.payload.get("scope"),
                "data_categories": request.payload.get("data_categories", []),
                "exceptions": request.payload.get("exceptions", []),
            },
        )
        return {"audit_event_id": event.id}

    async def _register_objection(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        record = await self.restrictions.save(
            RestrictionRecord(
                id=f"objection-{request.id}",
                subject_id=request.subject_id,
                scope=RestrictionScope.ALL_PERSONAL_DATA,
                purposes=request.payload.get("processing_purposes", []),
                reason=request.payload.get("reason") or request.payload.get("objection_type", ""),
            )
        )
        return {"restriction_id": record.id}

    async def _record_objection(self, request: RightsRequest, actor_id: str | None) -> dict[str, Any]:
        registered = request.step("register-objection")
        withdrawn = request.step("withdraw-consents")
        request.result = {
            "restriction_id": registered.output.get("restriction_id") if registered else None,
            "purposes": request.payload.get("processing_purposes", []),
            "consents_withdrawn": withdrawn.output.get("withdrawn", []) if withdrawn else [],
        }
        event = await self.audit.record(
            AuditAction.DATA_OBJECTION,
            entity_type="restriction",
            entity_id=request.result["restriction_id"] or request.id,
            subject_id=request.subject_id,
            actor_id=actor_id,
            details={
                "request_id": request.id,
                "objection_type": request.payload.get("objection_type"),
                "purposes": request.payload.get("processing_purposes", []),
            },
        )
        return {"audit_event_id": event.id}


def _jsonable(record: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(record, default=str))


def _to_csv(rows: list[dict[str, Any]]) -> str:
    if not rows:
        return ""
    columns = list(dict.fromkeys(k for row in rows for k in row))
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=columns, lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({k: "" if row.get(k) is None else row.get(k) for k in columns})
    return buffer.getvalue()

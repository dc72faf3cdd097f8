"""Audit sink, export formatters and compliance reporting.

Every compliance-relevant action goes through ``AuditSink.record``. Writes are
durable before the caller continues; a failing adapter raises
``AuditWriteFailed`` and never degrades to a log line.

Reads and exports page through the adapter with a keyset cursor so no more
than one page of events is held at a time.
"""

import csv
import io
import json
from collections import Counter
from datetime import datetime, timedelta
from typing import Any, AsyncIterator
from xml.sax.saxutils import escape

import structlog

from privata.compliance.events import ComplianceEventBus
from privata.config import Settings, get_settings
from privata.db.base import AuditAdapter
from privata.exceptions import AuditWriteFailed
from privata.models.audit import (
    AuditAction,
    AuditCursor,
    AuditEvent,
    AuditFilter,
    AuditQueryOptions,
    ComplianceFramework,
    ExportFormat,
)
from privata.models.base import utc_now

logger = structlog.get_logger(__name__)

CSV_COLUMNS = [
    "id",
    "timestamp",
    "action",
    "entity_type",
    "entity_id",
    "subject_id",
    "actor_id",
    "region",
    "compliance_framework",
    "retention_date",
    "success",
    "error",
    "details",
]


class AuditSink:
    """Append-only audit trail on top of an ``AuditAdapter``.

    Recorded events are published to ``events`` subscribers after they are
    durably stored.
    """

    def __init__(
        self,
        adapter: AuditAdapter,
        settings: Settings | None = None,
        events: ComplianceEventBus | None = None,
    ):
        self.adapter = adapter
        self.settings = settings or get_settings()
        self.events = events if events is not None else ComplianceEventBus()

    @property
    def page_size(self) -> int:
        return self.settings.audit_export_page_size

    def build_event(
        self,
        action: AuditAction,
        *,
        entity_type: str,
        entity_id: str,
        subject_id: str | None = None,
        actor_id: str | None = None,
        details: dict[str, Any] | None = None,
        region: str | None = None,
        framework: ComplianceFramework | str | None = None,
        success: bool = True,
        error: str | None = None,
        retention_days: int | None = None,
    ) -> AuditEvent:
        """Build an event with its retention date fixed at creation time."""
        framework = ComplianceFramework(framework or self.settings.default_framework)
        days = retention_days or self.settings.retention_days_for(framework.value)
        now = utc_now()
        return AuditEvent(
            timestamp=now,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            subject_id=subject_id,
            actor_id=actor_id,
            details=details or {},
            region=region,
            compliance_framework=framework,
            retention_date=now + timedelta(days=days),
            success=success,
            error=error,
        )

    async def record(self, action: AuditAction, **kwargs: Any) -> AuditEvent:
        """Build and durably append one event.

        Accepts the keyword arguments of ``build_event``.

        Raises:
            AuditWriteFailed: If the adapter could not store the event
        """
        event = self.build_event(action, **kwargs)
        await self.append(event)
        return event

    async def append(self, event: AuditEvent) -> AuditEvent:
        opts = AuditQueryOptions(
            retention_days=(event.retention_date - event.timestamp).days,
            region=event.region,
        )
        try:
            await self.adapter.log(event, opts)
        except Exception as e:
            logger.error(
                "Audit write failed",
                action=event.action.value,
                entity_type=event.entity_type,
                error=str(e),
            )
            raise AuditWriteFailed(event.action.value, e) from e

        logger.debug(
            "Audit event recorded",
            event_id=event.id,
            action=event.action.value,
            entity_type=event.entity_type,
            subject_id=event.subject_id,
        )
        if self.events.has_subscribers:
            await self.events.publish(event)
        return event

    async def record_batch(self, events: list[AuditEvent]) -> None:
        if not events:
            return
        try:
            await self.adapter.log_batch(events)
        except Exception as e:
            logger.error("Audit batch write failed", count=len(events), error=str(e))
            raise AuditWriteFailed(events[0].action.value, e) from e
        if self.events.has_subscribers:
            for event in events:
                await self.events.publish(event)

    async def iter_events(
        self, audit_filter: AuditFilter | None = None
    ) -> AsyncIterator[AuditEvent]:
        """Stream matching events in (timestamp, id) order, one page at a time."""
        audit_filter = audit_filter or AuditFilter()
        cursor: AuditCursor | None = None
        while True:
            page = await self.adapter.query(
                audit_filter, AuditQueryOptions(limit=self.page_size, after=cursor)
            )
            for event in page:
                yield event
            if len(page) < self.page_size:
                return
            cursor = AuditCursor.after(page[-1])

    async def query(
        self, audit_filter: AuditFilter | None = None, limit: int = 1000
    ) -> list[AuditEvent]:
        """Matching events, oldest first, up to ``limit``."""
        events: list[AuditEvent] = []
        if limit <= 0:
            return events
        async for event in self.iter_events(audit_filter):
            events.append(event)
            if len(events) >= limit:
                break
        return events

    async def export_stream(
        self,
        audit_filter: AuditFilter | None = None,
        export_format: ExportFormat | str = ExportFormat.JSON,
    ) -> AsyncIterator[str]:
        """Serialize matching events chunk by chunk."""
        if not isinstance(export_format, ExportFormat):
            export_format = ExportFormat(export_format.upper())
        formatter = _FORMATTERS[export_format]()
        yield formatter.header(audit_filter)
        count = 0
        async for event in self.iter_events(audit_filter):
            yield formatter.event(event, count)
            count += 1
        yield formatter.footer(count)
        logger.info("Audit log exported", format=export_format.value, events=count)

    async def export(
        self,
        audit_filter: AuditFilter | None = None,
        export_format: ExportFormat | str = ExportFormat.JSON,
    ) -> str:
        """Export matching events as one serialized document.

        Args:
            audit_filter: Events to include (all when omitted)
            export_format: JSON, CSV, XML or PDF (a plain-text report)

        Returns:
            Serialized export
        """
        chunks = [chunk async for chunk in self.export_stream(audit_filter, export_format)]
        return "".join(chunks)


class _JsonFormatter:
    def header(self, audit_filter: AuditFilter | None) -> str:
        return "["

    def event(self, event: AuditEvent, index: int) -> str:
        prefix = "," if index else ""
        return prefix + json.dumps(event.to_dict(), sort_keys=True)

    def footer(self, count: int) -> str:
        return "]"


class _CsvFormatter:
    def _row(self, values: list[Any]) -> str:
        buffer = io.StringIO()
        csv.writer(buffer, lineterminator="\n").writerow(values)
        return buffer.getvalue()

    def header(self, audit_filter: AuditFilter | None) -> str:
        return self._row(CSV_COLUMNS)

    def event(self, event: AuditEvent, index: int) -> str:
        data = event.to_dict()
        data["details"] = json.dumps(data["details"], sort_keys=True)
        return self._row(["" if data[c] is None else data[c] for c in CSV_COLUMNS])

    def footer(self, count: int) -> str:
        return ""


class _XmlFormatter:
    def header(self, audit_filter: AuditFilter | None) -> str:
        return '<?xml version="1.0" encoding="UTF-8"?>\n<auditEvents>\n'

    def event(self, event: AuditEvent, index: int) -> str:
        data = event.to_dict()
        data["details"] = json.dumps(data["details"], sort_keys=True)
        parts = ["  <event>\n"]
        for column in CSV_COLUMNS:
            value = data[column]
            if value is None:
                continue
            if isinstance(value, bool):
                value = str(value).lower()
            parts.append(f"    <{column}>{escape(str(value))}</{column}>\n")
        parts.append("  </event>\n")
        return "".join(parts)

    def footer(self, count: int) -> str:
        return "</auditEvents>\n"


class _ReportFormatter:
    """Printable plain-text report used for the PDF export format."""

    def header(self, audit_filter: AuditFilter | None) -> str:
        lines = [
            "AUDIT LOG REPORT",
            "================",
            f"Generated: {utc_now().isoformat()}",
        ]
        if audit_filter is not None:
            criteria = audit_filter.model_dump(mode="json", exclude_none=True)
            if criteria:
                lines.append(f"Filter: {json.dumps(criteria, sort_keys=True)}")
        return "\n".join(lines) + "\n\n"

    def event(self, event: AuditEvent, index: int) -> str:
        status = "OK" if event.success else f"FAILED ({event.error})"
        return (
            f"{index + 1}. {event.timestamp.isoformat()} {event.action.value} "
            f"{event.entity_type}/{event.entity_id} "
            f"subject={event.subject_id or '-'} actor={event.actor_id or '-'} "
            f"region={event.region or '-'} {event.compliance_framework.value} {status}\n"
        )

    def footer(self, count: int) -> str:
        return f"\nTotal events: {count}\n"


_FORMATTERS = {
    ExportFormat.JSON: _JsonFormatter,
    ExportFormat.CSV: _CsvFormatter,
    ExportFormat.XML: _XmlFormatter,
    ExportFormat.PDF: _ReportFormatter,
}


class ComplianceReporter:
    """Generate GDPR/HIPAA summaries from the audit trail.

    Counts are accumulated while streaming so arbitrarily long periods never
    load the whole range.
    """

    def __init__(
        self,
        sink: AuditSink,
        settings: Settings | None = None,
    ):
        self.sink = sink
        self.settings = settings or get_settings()

    async def generate_report(
        self,
        start_date: datetime,
        end_date: datetime,
        framework: ComplianceFramework | None = None,
    ) -> dict[str, Any]:
        """Summarize decisions, consent changes, rights requests and erasures."""
        by_action: Counter[str] = Counter()
        by_framework: Counter[str] = Counter()
        decisions: Counter[str] = Counter()
        rights_requests: Counter[str] = Counter()
        erased_subjects: set[str] = set()
        failures = 0
        total = 0

        audit_filter = AuditFilter(start_date=start_date, end_date=end_date, framework=framework)
        async for event in self.sink.iter_events(audit_filter):
            total += 1
            by_action[event.action.value] += 1
            by_framework[event.compliance_framework.value] += 1
            if not event.success:
                failures += 1
            if event.action == AuditAction.COMPLIANCE_DECISION:
                decisions[event.details.get("outcome", "unknown")] += 1
            elif event.action == AuditAction.DATA_SUBJECT_REQUEST:
                rights_requests[event.details.get("kind", "unknown")] += 1
            elif event.action == AuditAction.ERASURE and event.subject_id:
                erased_subjects.add(event.subject_id)

        report = {
            "report_type": f"{framework.value if framework else 'GDPR/HIPAA'} Compliance",
            "period": {
                "start": start_date.isoformat(),
                "end": end_date.isoformat(),
            },
            "generated_at": utc_now().isoformat(),
            "total_events": total,
            "failed_events": failures,
            "by_framework": dict(by_framework),
            "sections": {
                "decisions": {
                    "total": sum(decisions.values()),
                    "by_outcome": dict(decisions),
                },
                "consent": {
                    "granted": by_action[AuditAction.CONSENT_GRANTED.value],
                    "withdrawn": by_action[AuditAction.CONSENT_WITHDRAWN.value],
                    "withdrawal_attempts": by_action[AuditAction.CONSENT_WITHDRAWAL_ATTEMPTED.value],
                },
                "data_subject_requests": {
                    "total": sum(rights_requests.values()),
                    "by_kind": dict(rights_requests),
                    "failed_steps": by_action[AuditAction.RIGHTS_STEP_FAILED.value],
                },
                "data_erasure": {
                    "total": by_action[AuditAction.ERASURE.value],
                    "subjects_affected": len(erased_subjects),
                },
                "data_access": {
                    "reads": by_action[AuditAction.READ.value],
                    "writes": sum(
                        by_action[a.value]
                        for a in (AuditAction.CREATE, AuditAction.UPDATE, AuditAction.DELETE)
                    ),
                },
            },
        }
        logger.info("Compliance report generated", events=total, framework=report["report_type"])
        return report

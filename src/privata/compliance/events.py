"""Subscriptions to compliance events.

Subscribers are notified of every audit event once it is durably recorded,
optionally filtered by action. Handlers may be plain functions or
coroutines. A failing handler is logged and never undoes or blocks the
audited operation; the audit trail stays the record of truth.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import structlog

from privata.models.audit import AuditAction, AuditEvent
from privata.models.base import new_id

logger = structlog.get_logger(__name__)

EventHandler = Callable[[AuditEvent], Awaitable[Any] | Any]


@dataclass
class Subscription:
    id: str
    handler: EventHandler
    actions: frozenset[AuditAction] | None = None
    subject_id: str | None = None
    delivered: int = 0
    failed: int = 0

    def wants(self, event: AuditEvent) -> bool:
        if self.actions is not None and event.action not in self.actions:
            return False
        return self.subject_id is None or event.subject_id == self.subject_id


@dataclass
class ComplianceEventBus:
    """In-process fan-out of recorded audit events."""

    subscriptions: dict[str, Subscription] = field(default_factory=dict)

    def subscribe(
        self,
        handler: EventHandler,
        actions: set[AuditAction] | list[AuditAction] | None = None,
        subject_id: str | None = None,
    ) -> str:
        """Register a handler.

        Args:
            handler: Called with each matching ``AuditEvent``
            actions: Only deliver these actions (all when None)
            subject_id: Only deliver events about this subject

        Returns:
            Subscription id for ``unsubscribe``
        """
        subscription = Subscription(
            id=new_id("sub"),
            handler=handler,
            actions=frozenset(AuditAction(a) for a in actions) if actions is not None else None,
            subject_id=subject_id,
        )
        self.subscriptions[subscription.id] = subscription
        logger.debug("Compliance subscription added", subscription_id=subscription.id)
        return subscription.id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self.subscriptions.pop(subscription_id, None) is not None

    @property
    def has_subscribers(self) -> bool:
        return bool(self.subscriptions)

    async def publish(self, event: AuditEvent) -> int:
        """Deliver one event. Returns the number of handlers that ran cleanly."""
        delivered = 0
        for subscription in list(self.subscriptions.values()):
            if not subscription.wants(event):
                continue
            try:
                result = subscription.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                subscription.failed += 1
                logger.warning(
                    "Compliance subscriber failed",
                    subscription_id=subscription.id,
                    action=event.action.value,
                    error=str(e),
                )
                continue
            subscription.delivered += 1
            delivered += 1
        return delivered

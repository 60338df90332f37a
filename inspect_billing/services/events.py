"""
Ledger Event Broker - In-process "ledger changed" notifications per organization.

Replaces timer-driven cache invalidation: writers publish after commit, and
subscribers (balance views over SSE) re-read the balance when notified. Events
carry no balances and are not durable; a missed event costs freshness, never
correctness.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID, uuid4

from structlog import get_logger

from inspect_billing.config import settings
from inspect_billing.observability import metrics

logger = get_logger(__name__)


@dataclass(frozen=True)
class LedgerChanged:
    """An organization's ledger gained entries."""

    organization_id: UUID
    reason: str  # checkout, renewal, usage, adjustment, expiry
    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: UUID = field(default_factory=uuid4)


class LedgerEventBroker:
    """
    Fan-out of ledger events to per-organization subscriber queues.

    publish() never blocks: when a subscriber's queue is full its oldest event is
    dropped to make room.
    """

    def __init__(self, queue_size: int = 100) -> None:
        """Initialize broker with per-subscriber queue bound."""
        self.queue_size = queue_size
        self._subscribers: dict[UUID, set[asyncio.Queue[LedgerChanged]]] = {}

    @asynccontextmanager
    async def subscribe(self, organization_id: UUID) -> AsyncIterator[asyncio.Queue[LedgerChanged]]:
        """
        Receive events for one organization while the context is open.

        Usage:
            async with broker.subscribe(org_id) as queue:
                event = await queue.get()
        """
        queue: asyncio.Queue[LedgerChanged] = asyncio.Queue(maxsize=self.queue_size)
        self._subscribers.setdefault(organization_id, set()).add(queue)
        metrics.event_subscribers.inc()
        logger.debug("ledger_event_subscriber_added", organization_id=str(organization_id))
        try:
            yield queue
        finally:
            subscribers = self._subscribers.get(organization_id)
            if subscribers is not None:
                subscribers.discard(queue)
                if not subscribers:
                    del self._subscribers[organization_id]
            metrics.event_subscribers.dec()
            logger.debug("ledger_event_subscriber_removed", organization_id=str(organization_id))

    def publish(self, event: LedgerChanged) -> int:
        """Deliver to every subscriber of the event's organization. Returns deliveries."""
        delivered = 0
        for queue in list(self._subscribers.get(event.organization_id, ())):
            if queue.full():
                queue.get_nowait()
                metrics.events_dropped_total.inc()
            queue.put_nowait(event)
            delivered += 1

        logger.debug(
            "ledger_event_published",
            organization_id=str(event.organization_id),
            reason=event.reason,
            delivered=delivered,
        )
        return delivered

    def subscriber_count(self, organization_id: UUID | None = None) -> int:
        """Open subscriptions, for one organization or overall."""
        if organization_id is not None:
            return len(self._subscribers.get(organization_id, ()))
        return sum(len(queues) for queues in self._subscribers.values())


# Global broker instance
ledger_events = LedgerEventBroker(queue_size=settings.event_queue_size)

"""
Message Bus - Workflow events as pub/sub messages.

The agent invoker publishes every outbound step here:
- AGENT_INVOCATIONS: an agent worker was reached
- INVOCATION_FAILURES: a fire-and-forget invocation exhausted its retries;
  the coordinator subscribes and handles it like an agent callback
- BATCH_NOTIFICATIONS: a parent rebalance batch was notified

Messages carry the analysis id as correlation_id. Handlers are awaited in
publish() outside the lock, so a handler may publish in turn.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class MessageTopic(Enum):
    """Coordinator message topics."""
    AGENT_INVOCATIONS = "agent_invocations"
    INVOCATION_FAILURES = "invocation_failures"
    BATCH_NOTIFICATIONS = "batch_notifications"


@dataclass
class Message:
    """One workflow event."""
    topic: MessageTopic
    source: str
    payload: dict = field(default_factory=dict)
    correlation_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "topic": self.topic.value,
            "source": self.source,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
        }


Handler = Callable[[Message], Awaitable[None]]


class MessageBus:
    """In-process pub/sub bus for coordinator events."""

    def __init__(self):
        self._subscriptions: dict[MessageTopic, dict[str, Handler]] = {}
        self._lock = asyncio.Lock()
        self._running = False

        self._total_published = 0
        self._total_delivered = 0
        self._delivery_errors = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        logger.info("MessageBus started")

    async def stop(self) -> None:
        self._running = False
        logger.info("MessageBus stopped")

    async def publish(self, message: Message) -> int:
        """
        Deliver a message to every subscriber of its topic.

        A failing handler is logged and counted; the others still run.

        Returns:
            Number of subscribers whose handler completed
        """
        async with self._lock:
            self._total_published += 1
            handlers = list(self._subscriptions.get(message.topic, {}).items())

        delivered = 0
        for subscriber_id, handler in handlers:
            try:
                await handler(message)
                delivered += 1
                self._total_delivered += 1
            except Exception as e:
                self._delivery_errors += 1
                logger.error(
                    f"Error delivering {message.topic.value} message to {subscriber_id}: {e}",
                    exc_info=True
                )

        logger.debug(
            f"Published {message.topic.value} from {message.source} "
            f"({message.correlation_id}): {delivered} subscribers notified"
        )
        return delivered

    async def subscribe(self, subscriber_id: str, topic: MessageTopic, handler: Handler) -> None:
        """Register handler for topic, replacing any earlier one from subscriber_id."""
        async with self._lock:
            self._subscriptions.setdefault(topic, {})[subscriber_id] = handler
        logger.debug(f"Subscriber {subscriber_id} subscribed to {topic.value}")

    async def unsubscribe(self, subscriber_id: str, topic: Optional[MessageTopic] = None) -> int:
        """Remove subscriber_id from one topic, or from all when topic is None."""
        removed = 0
        async with self._lock:
            topics = [topic] if topic else list(self._subscriptions)
            for t in topics:
                if self._subscriptions.get(t, {}).pop(subscriber_id, None) is not None:
                    removed += 1
        return removed

    def get_stats(self) -> dict:
        return {
            "running": self._running,
            "total_published": self._total_published,
            "total_delivered": self._total_delivered,
            "delivery_errors": self._delivery_errors,
            "subscriber_count": sum(len(s) for s in self._subscriptions.values()),
        }


def create_message(
    topic: MessageTopic,
    source: str,
    payload: dict,
    analysis_id: Optional[str] = None,
) -> Message:
    """Create a message correlated with an analysis run."""
    return Message(topic=topic, source=source, payload=payload, correlation_id=analysis_id)

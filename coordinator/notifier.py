"""
Lifecycle event publishing. Events are handed to the sink only after the
transition committed; a sink failure is logged and never reaches the caller.
"""
import asyncio
import json
import logging
import uuid
from datetime import datetime
from typing import Protocol

import redis.asyncio as redis
from pydantic import BaseModel, Field

from coordinator import sqs_client
from coordinator.aggregate import utcnow
from coordinator.metrics import lifecycle_events_failed_total, lifecycle_events_published_total

logger = logging.getLogger(__name__)


class LifecycleEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_id: str
    machine: str
    from_state: str | None
    to_state: str
    version: int
    actor_type: str | None = None
    actor_id: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)


class EventSink(Protocol):
    async def publish(self, event: LifecycleEvent) -> None: ...


class MemoryEventSink:
    def __init__(self) -> None:
        self.events: list[LifecycleEvent] = []

    async def publish(self, event: LifecycleEvent) -> None:
        self.events.append(event)


class RedisEventSink:
    """LPUSH onto a list; consumers BRPOP so the list reads oldest-first."""

    def __init__(self, client: redis.Redis, key: str):
        self._redis = client
        self.key = key

    async def publish(self, event: LifecycleEvent) -> None:
        await self._redis.lpush(self.key, event.model_dump_json())


class SqsEventSink:
    def __init__(self, queue_url: str):
        self.queue_url = queue_url

    async def publish(self, event: LifecycleEvent) -> None:
        await sqs_client.send_message(
            self.queue_url,
            json.loads(event.model_dump_json()),
            group_id=event.order_id,
        )


class EventNotifier:
    """Fire-and-forget: notify() schedules the publish and returns immediately."""

    def __init__(self, sink: EventSink):
        self.sink = sink
        self._tasks: set[asyncio.Task] = set()

    def notify(self, events: list[LifecycleEvent]) -> None:
        if not events:
            return
        t = asyncio.create_task(self._publish_all(events))
        self._tasks.add(t)
        t.add_done_callback(self._tasks.discard)

    async def _publish_all(self, events: list[LifecycleEvent]) -> None:
        # Sequential so events of one commit reach the sink in order
        for event in events:
            try:
                await self.sink.publish(event)
                lifecycle_events_published_total.labels(machine=event.machine).inc()
            except Exception as e:
                lifecycle_events_failed_total.inc()
                logger.exception(
                    "Failed to publish %s %s->%s for order_id=%s: %s",
                    event.machine,
                    event.from_state,
                    event.to_state,
                    event.order_id,
                    e,
                )

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight publishes (shutdown, tests)."""
        if not self._tasks:
            return
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        for t in pending:
            t.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

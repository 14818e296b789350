"""
Wiring: build the transition engine with the backends chosen in settings.
"""
import logging

from coordinator.config import Settings
from coordinator.engine import TransitionEngine
from coordinator.guard import LocalLockGuard, RedisLockGuard
from coordinator.notifier import EventNotifier, MemoryEventSink, RedisEventSink, SqsEventSink
from coordinator.redis_client import close_redis, get_redis
from coordinator.store import MemoryAggregateStore, PgAggregateStore, create_pool, init_schema

logger = logging.getLogger(__name__)

SHUTDOWN_DRAIN_SEC = 5


async def build_engine(settings: Settings) -> TransitionEngine:
    if settings.store_backend == "postgres":
        pool = await create_pool(settings.database_url)
        await init_schema(pool)
        store = PgAggregateStore(pool)
    elif settings.store_backend == "memory":
        store = MemoryAggregateStore()
    else:
        raise ValueError(f"unknown store_backend {settings.store_backend!r}")

    if settings.lock_backend == "redis":
        guard = RedisLockGuard(await get_redis(), settings.lock_timeout_seconds, settings.lock_lease_seconds)
    elif settings.lock_backend == "local":
        guard = LocalLockGuard(settings.lock_timeout_seconds)
    else:
        raise ValueError(f"unknown lock_backend {settings.lock_backend!r}")

    if settings.event_sink == "sqs":
        if not settings.sqs_event_queue_url:
            raise ValueError("event_sink=sqs requires sqs_event_queue_url")
        sink = SqsEventSink(settings.sqs_event_queue_url)
    elif settings.event_sink == "redis":
        sink = RedisEventSink(await get_redis(), settings.event_queue_key)
    elif settings.event_sink == "memory":
        sink = MemoryEventSink()
    else:
        raise ValueError(f"unknown event_sink {settings.event_sink!r}")

    logger.info(
        "Engine ready: store=%s lock=%s events=%s lock_timeout=%.1fs",
        settings.store_backend,
        settings.lock_backend,
        settings.event_sink,
        settings.lock_timeout_seconds,
    )
    return TransitionEngine(store, guard, EventNotifier(sink), settings)


async def close_engine(engine: TransitionEngine) -> None:
    await engine.notifier.drain(timeout=SHUTDOWN_DRAIN_SEC)
    await engine.store.close()
    await close_redis()

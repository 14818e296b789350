"""
Worker: pull transition commands from Redis and apply them through the engine.
- Retryable errors (LockTimeout, VersionConflict on unversioned commands): exponential backoff + re-queue, DLQ after max retries.
- Terminal errors (IllegalTransition, ConsistencyViolation, NotFound, VersionConflict against the
  command's own expected_version): logged, counted, dropped.
- Prometheus /metrics on port 9090 (worker metrics).
- Graceful shutdown on SIGTERM.
Run: python -m coordinator.worker
"""
import asyncio
import json
import logging
import signal
import sys
import threading
import time

import redis.asyncio as redis
from pydantic import ValidationError

from coordinator.config import Settings, get_settings
from coordinator.engine import TransitionEngine
from coordinator.errors import TransitionError, VersionConflict
from coordinator.metrics import (
    commands_dlq_total,
    commands_processed_total,
    commands_retried_total,
)
from coordinator.queue import TransitionCommand, parse_command, push_command
from coordinator.service import build_engine, close_engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)

BRPOP_TIMEOUT = 5
GRACEFUL_SHUTDOWN_WAIT_SEC = 30
WORKER_METRICS_PORT = 9090


def _start_metrics_server() -> None:
    from prometheus_client import start_http_server
    start_http_server(WORKER_METRICS_PORT)


async def handle_command(
    engine: TransitionEngine,
    r: redis.Redis,
    settings: Settings,
    command: TransitionCommand,
) -> str:
    """
    Apply one command. Returns "applied" | "rejected" | "retried" | "dlq".
    Never raises for TransitionError; the queue is the retry mechanism.
    """
    try:
        await engine.apply_transition(
            command.order_id,
            command.machine,
            command.target_state,
            actor=command.actor,
            expected_version=command.expected_version,
        )
    except TransitionError as e:
        # A versioned command whose version went stale must be re-decided by its sender
        stale = isinstance(e, VersionConflict) and command.expected_version is not None
        if stale or not e.retryable:
            commands_processed_total.labels(outcome="rejected").inc()
            logger.warning("Rejected command_id=%s for order_id=%s: %s", command.command_id, command.order_id, e.message)
            return "rejected"

        next_attempts = command.attempts + 1
        if next_attempts >= settings.worker_max_retries:
            dlq_message = json.loads(command.model_dump_json())
            dlq_message.update({"attempts": next_attempts, "last_error": e.code, "failed_at": time.time()})
            await r.lpush(settings.command_dlq_key, json.dumps(dlq_message))
            commands_dlq_total.inc()
            logger.warning("Moved command_id=%s to DLQ after %d attempts", command.command_id, next_attempts)
            return "dlq"

        backoff_sec = 2 ** command.attempts
        logger.info(
            "Re-queuing command_id=%s in %ds after %s (attempt %d/%d)",
            command.command_id,
            backoff_sec,
            e.code,
            next_attempts,
            settings.worker_max_retries,
        )
        await asyncio.sleep(backoff_sec)
        retry = command.model_copy(update={"attempts": next_attempts})
        await push_command(r, settings.command_queue_key, retry)
        commands_retried_total.inc()
        return "retried"

    commands_processed_total.labels(outcome="applied").inc()
    logger.info("Applied command_id=%s %s->%s for order_id=%s", command.command_id, command.machine.value, command.target_state, command.order_id)
    return "applied"


async def process_one(
    engine: TransitionEngine,
    r: redis.Redis,
    settings: Settings,
    raw: str,
    sem: asyncio.Semaphore,
) -> None:
    try:
        command = parse_command(raw)
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Invalid command from queue: %s", e)
        return

    async with sem:
        try:
            await handle_command(engine, r, settings, command)
        except Exception as e:
            commands_processed_total.labels(outcome="failed").inc()
            logger.exception("Failed to process command_id=%s: %s", command.command_id, e)


async def run_worker(shutdown_event: asyncio.Event) -> None:
    settings = get_settings()
    engine = await build_engine(settings)
    sem = asyncio.Semaphore(settings.worker_concurrency)
    logger.info(
        "Listening on %s (concurrency=%d, max_retries=%d) ...",
        settings.command_queue_key,
        settings.worker_concurrency,
        settings.worker_max_retries,
    )
    r = redis.from_url(settings.redis_url, decode_responses=True)
    tasks: set[asyncio.Task] = set()
    try:
        while not shutdown_event.is_set():
            result = await r.brpop(settings.command_queue_key, timeout=BRPOP_TIMEOUT)
            if result is None:
                continue
            _key, raw = result
            t = asyncio.create_task(process_one(engine, r, settings, raw, sem))
            tasks.add(t)
            t.add_done_callback(tasks.discard)
    finally:
        if tasks:
            logger.info("Graceful shutdown: waiting for %d in-flight task(s) (max %ds) ...", len(tasks), GRACEFUL_SHUTDOWN_WAIT_SEC)
            _, pending = await asyncio.wait(tasks, timeout=GRACEFUL_SHUTDOWN_WAIT_SEC, return_when=asyncio.ALL_COMPLETED)
            for t in pending:
                t.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
        await r.aclose()
        await close_engine(engine)
        logger.info("Worker stopped.")


def main() -> None:
    threading.Thread(target=_start_metrics_server, daemon=True).start()
    logger.info("Metrics server listening on port %s", WORKER_METRICS_PORT)

    shutdown_event = asyncio.Event()

    def on_signal():
        shutdown_event.set()

    loop = asyncio.new_event_loop()
    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        signal.signal(signal.SIGTERM, lambda *a: shutdown_event.set())
        signal.signal(signal.SIGINT, lambda *a: shutdown_event.set())

    asyncio.set_event_loop(loop)
    try:
        loop.run_until_complete(run_worker(shutdown_event))
    finally:
        loop.close()


if __name__ == "__main__":
    main()

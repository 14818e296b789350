"""
Transition command queue: callers that cannot wait on the API (payment
webhooks, delivery tracking, pickup counter) push commands here for the worker.
"""
import json

import redis.asyncio as redis
from pydantic import BaseModel, Field

from coordinator.engine import ActorContext
from coordinator.status import Machine


class TransitionCommand(BaseModel):
    command_id: str = Field(..., description="Caller-chosen id, used in logs and DLQ entries")
    order_id: str
    machine: Machine
    target_state: str
    expected_version: int | None = None
    actor: ActorContext = Field(default_factory=ActorContext)
    attempts: int = 0


async def push_command(r: redis.Redis, key: str, command: TransitionCommand) -> None:
    await r.lpush(key, command.model_dump_json())


def parse_command(raw: str) -> TransitionCommand:
    return TransitionCommand.model_validate(json.loads(raw))


async def replay_dlq(r: redis.Redis, dlq_key: str, queue_key: str, limit: int = 100) -> int:
    """
    Move commands from the DLQ back to the main queue with attempts reset.
    Unparseable entries are dropped. Returns number of entries taken off the DLQ.
    """
    replayed = 0
    while replayed < limit:
        raw = await r.rpop(dlq_key)
        if raw is None:
            break
        replayed += 1
        try:
            data = json.loads(raw)
            data.pop("last_error", None)
            data.pop("failed_at", None)
            command = TransitionCommand.model_validate(data)
        except ValueError:
            continue
        command.attempts = 0
        await push_command(r, queue_key, command)
    return replayed

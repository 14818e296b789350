from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from coordinator.config import get_settings
from coordinator.queue import replay_dlq
from coordinator.redis_client import get_redis

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/dlq/replay")
async def dlq_replay(limit: int = Query(default=100, ge=1, le=1000)) -> JSONResponse:
    """
    Replay transition commands from the Redis DLQ to the command queue.
    Each command is re-queued with attempts reset. Returns number of commands taken off the DLQ.
    """
    settings = get_settings()
    r = await get_redis()
    replayed = await replay_dlq(r, settings.command_dlq_key, settings.command_queue_key, limit=limit)
    return JSONResponse(
        status_code=200,
        content={"status": "ok", "replayed": replayed},
    )

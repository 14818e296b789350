"""
AWS SQS helpers for the lifecycle event sink. Used when event_sink=sqs.
"""
import asyncio
import json
from typing import Any

import boto3

from coordinator.config import get_settings

_sqs_client: Any = None


def _get_client():
    global _sqs_client
    if _sqs_client is None:
        _sqs_client = boto3.client("sqs", region_name=get_settings().aws_region)
    return _sqs_client


async def send_message(queue_url: str, body: dict, group_id: str | None = None) -> None:
    """Send message to queue (run boto3 in thread to not block)."""
    client = _get_client()
    kwargs = {"QueueUrl": queue_url, "MessageBody": json.dumps(body)}
    if group_id is not None and queue_url.endswith(".fifo"):
        # FIFO queues keep per-order ordering when grouped by order_id
        kwargs["MessageGroupId"] = group_id
        kwargs["MessageDeduplicationId"] = body["event_id"]
    await asyncio.to_thread(client.send_message, **kwargs)

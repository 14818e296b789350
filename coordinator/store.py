"""
Aggregate persistence: one row per order keyed by order_id, carrying the JSON
snapshot and a monotonic version used for the optimistic commit check.
"""
import json
from typing import Protocol

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from coordinator.aggregate import OrderAggregate
from coordinator.errors import NotFound, OrderAlreadyExists, VersionConflict


class AggregateStore(Protocol):
    async def load(self, order_id: str) -> OrderAggregate: ...

    async def insert(self, order: OrderAggregate) -> None: ...

    async def commit(self, order_id: str, expected_version: int, order: OrderAggregate) -> None: ...

    async def close(self) -> None: ...


class MemoryAggregateStore:
    """Keeps serialized snapshots so every load hands out a fresh copy."""

    def __init__(self) -> None:
        self._rows: dict[str, dict] = {}

    async def load(self, order_id: str) -> OrderAggregate:
        row = self._rows.get(order_id)
        if row is None:
            raise NotFound(order_id)
        return OrderAggregate.from_snapshot(row)

    async def insert(self, order: OrderAggregate) -> None:
        if order.order_id in self._rows:
            raise OrderAlreadyExists(order.order_id)
        self._rows[order.order_id] = order.snapshot()

    async def commit(self, order_id: str, expected_version: int, order: OrderAggregate) -> None:
        row = self._rows.get(order_id)
        if row is None:
            raise NotFound(order_id)
        if row["version"] != expected_version:
            raise VersionConflict(order_id, expected_version, row["version"])
        self._rows[order_id] = order.snapshot()

    async def version_of(self, order_id: str) -> int:
        row = self._rows.get(order_id)
        if row is None:
            raise NotFound(order_id)
        return row["version"]

    async def close(self) -> None:
        return None


async def create_pool(database_url: str) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        database_url,
        min_size=1,
        max_size=5,
        command_timeout=60,
    )


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS order_aggregates (
                order_id VARCHAR(255) PRIMARY KEY,
                order_type VARCHAR(20) NOT NULL,
                status VARCHAR(50) NOT NULL,
                version INT NOT NULL,
                snapshot JSONB NOT NULL,
                created_at TIMESTAMP DEFAULT NOW(),
                updated_at TIMESTAMP DEFAULT NOW()
            );
        """)
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_order_aggregates_status
            ON order_aggregates(status);
        """)


class PgAggregateStore:
    """
    Postgres store. commit() is a single conditional UPDATE on (order_id, version),
    so readers never observe a partially written aggregate.
    """

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    async def load(self, order_id: str) -> OrderAggregate:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT snapshot FROM order_aggregates WHERE order_id = $1;",
                order_id,
            )
        if row is None:
            raise NotFound(order_id)
        return OrderAggregate.from_snapshot(json.loads(row["snapshot"]))

    async def insert(self, order: OrderAggregate) -> None:
        async with self._pool.acquire() as conn:
            try:
                await conn.execute(
                    """
                    INSERT INTO order_aggregates (order_id, order_type, status, version, snapshot, updated_at)
                    VALUES ($1, $2, $3, $4, $5::jsonb, NOW());
                    """,
                    order.order_id,
                    order.order_type.value,
                    order.status.value,
                    order.version,
                    json.dumps(order.snapshot()),
                )
            except UniqueViolationError:
                raise OrderAlreadyExists(order.order_id)

    async def commit(self, order_id: str, expected_version: int, order: OrderAggregate) -> None:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE order_aggregates
                SET version = $3, status = $4, snapshot = $5::jsonb, updated_at = NOW()
                WHERE order_id = $1 AND version = $2;
                """,
                order_id,
                expected_version,
                order.version,
                order.status.value,
                json.dumps(order.snapshot()),
            )
            if result.endswith(" 1"):
                return
            current = await conn.fetchval(
                "SELECT version FROM order_aggregates WHERE order_id = $1;",
                order_id,
            )
        if current is None:
            raise NotFound(order_id)
        raise VersionConflict(order_id, expected_version, current)

    async def close(self) -> None:
        await self._pool.close()

"""Redis-backed state: snapshots, audit cursor and run lock."""

from __future__ import annotations

import json
import logging
import secrets
from typing import Any

import redis.asyncio as redis

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "inventory:snapshot:{product_id}"
CURSOR_KEY = "inventory:audit:cursor"
LOCK_KEY = "inventory:audit:lock"

# Same compare-and-delete redis-py's own Lock uses for release.
COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def create_redis_from_url(url: str) -> redis.Redis:
    return redis.Redis.from_url(url, decode_responses=True)


class KeyValueStore:
    """JSON values with TTLs on top of a Redis client."""

    def __init__(self, client: redis.Redis) -> None:
        self.client = client
        self._compare_and_delete = client.register_script(COMPARE_AND_DELETE)

    async def close(self) -> None:
        await self.client.aclose()

    async def get_json(self, key: str) -> Any:
        raw = await self.client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError):
            logger.warning("Discarding non-JSON value under %s", key)
            return None

    async def set_json(self, key: str, value: Any, *, ttl: int | None = None) -> None:
        await self.client.set(key, json.dumps(value), ex=ttl)

    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    async def set_if_absent(self, key: str, value: str, *, ttl: int) -> bool:
        return bool(await self.client.set(key, value, ex=ttl, nx=True))

    async def delete_if_equals(self, key: str, value: str) -> bool:
        """Atomically delete ``key`` only while it still holds ``value``."""
        return bool(await self._compare_and_delete(keys=[key], args=[value]))


class AuditState:
    def __init__(self, store: KeyValueStore, *, snapshot_ttl: int, cursor_ttl: int, lock_ttl: int) -> None:
        self.store = store
        self.snapshot_ttl = snapshot_ttl
        self.cursor_ttl = cursor_ttl
        self.lock_ttl = lock_ttl

    async def previous_total(self, product_id: int) -> int:
        value = await self.store.get_json(SNAPSHOT_KEY.format(product_id=product_id))
        try:
            return int(value) if value is not None else 0
        except (TypeError, ValueError):
            return 0

    async def record_total(self, product_id: int, total: int) -> None:
        await self.store.set_json(SNAPSHOT_KEY.format(product_id=product_id), int(total), ttl=self.snapshot_ttl)

    async def cursor(self) -> int:
        value = await self.store.get_json(CURSOR_KEY)
        try:
            return max(0, int(value or 0))
        except (TypeError, ValueError):
            return 0

    async def save_cursor(self, since_id: int) -> None:
        await self.store.set_json(CURSOR_KEY, int(since_id), ttl=self.cursor_ttl)

    async def clear_cursor(self) -> None:
        await self.store.delete(CURSOR_KEY)

    async def acquire_lock(self) -> str | None:
        token = secrets.token_hex(8)
        if await self.store.set_if_absent(LOCK_KEY, token, ttl=self.lock_ttl):
            return token
        return None

    async def release_lock(self, token: str) -> None:
        if not await self.store.delete_if_equals(LOCK_KEY, token):
            logger.warning("Lock %s expired or taken by another run; leaving it", LOCK_KEY)

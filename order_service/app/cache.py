import logging
import time
from typing import Dict, Optional, Protocol, Tuple

from pydantic import ValidationError as SnapshotDecodeError
from redis.asyncio import Redis
from redis.exceptions import RedisError

from .errors import CacheError
from .schemas import Order

logger= logging.getLogger(__name__)


class OrderCache(Protocol):
    """Key-value store of serialized order snapshots with a time-to-live.

    Never the system of record: implementations raise CacheError on failure
    and the caller decides to ignore it.
    """

    async def get(self, key: str) -> Optional[Order]: ...

    async def set(self, key: str, order: Order, ttl: int) -> None: ...

    async def delete(self, key: str) -> None: ...


def encode(order: Order) -> str:
    return order.model_dump_json()


def decode(key: str, raw) -> Optional[Order]:
    # an empty value is an invalidated entry, read it as a miss
    if not raw:
        return None
    try:
        return Order.model_validate_json(raw)
    except SnapshotDecodeError as e:
        raise CacheError(f"undecodable snapshot under {key}") from e


class RedisOrderCache:
    """OrderCache over redis-py's asyncio client, snapshots stored as JSON."""

    def __init__(self, client: Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str) -> "RedisOrderCache":
        return cls(Redis.from_url(url))

    async def get(self, key: str) -> Optional[Order]:
        try:
            raw = await self._client.get(key)
        except RedisError as e:
            raise CacheError(f"get {key}: {e}") from e
        return decode(key, raw)

    async def set(self, key: str, order: Order, ttl: int) -> None:
        try:
            await self._client.set(key, encode(order), ex=ttl)
        except RedisError as e:
            raise CacheError(f"set {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.delete(key)
        except RedisError as e:
            raise CacheError(f"delete {key}: {e}") from e

    async def close(self):
        await self._client.aclose()


class InMemoryOrderCache:
    """Process-local OrderCache for tests and single-process deployments.

    Stores the same JSON snapshots the Redis cache does, so a snapshot is
    never shared by reference with a caller. Expired entries are swept on
    every write and at most ``max_entries`` are kept, the oldest written
    entry is evicted first.
    """

    def __init__(self, clock=time.monotonic, max_entries: int = 10000):
        self._clock = clock
        self.max_entries = max_entries
        self._entries: Dict[str, Tuple[str, float]] = {}

    async def get(self, key: str) -> Optional[Order]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        raw, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return decode(key, raw)

    async def set(self, key: str, order: Order, ttl: int) -> None:
        now = self._clock()
        # re-inserting moves the key to the end of the eviction order
        self._entries.pop(key, None)
        self._sweep(now)
        while len(self._entries) >= self.max_entries:
            del self._entries[next(iter(self._entries))]
        self._entries[key] = (encode(order), now + ttl)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def _sweep(self, now: float):
        expired = [key for key, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    async def close(self):
        self._entries.clear()


class NullOrderCache:
    """OrderCache that never holds anything. Every read goes to the store."""

    async def get(self, key: str) -> Optional[Order]:
        return None

    async def set(self, key: str, order: Order, ttl: int) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def close(self):
        return None

import logging
from typing import Awaitable, Callable

from .cache import OrderCache
from .config import ORDER_CACHE_TTL_SECONDS
from .errors import CacheError, ValidationError
from .schemas import Order, compute_total
from .store import OrderStore

logger= logging.getLogger(__name__)


def order_key(order_id: int) -> str:
    return f"order:{order_id}"


def user_order_key(user_id: int) -> str:
    return f"order:user:{user_id}"


def validate_order(order: Order):
    if order is None:
        raise ValidationError("order must not be None")
    if not order.items:
        raise ValidationError("order must have at least one item")
    for item in order.items:
        if not item.name:
            raise ValidationError("item name must not be empty")
        if item.quantity is None or item.quantity <= 0:
            raise ValidationError(f"item {item.name!r}: quantity must be positive")
        if item.price is None or item.price < 0:
            raise ValidationError(f"item {item.name!r}: price must not be negative")


class OrderService:
    """Read/write API over an OrderStore, using an OrderCache cache-aside.

    The store is always the source of truth. Every cache failure (miss, error,
    stale entry) only costs latency: reads fall through to the store and
    cache writes after a successful store write are best-effort. A cache
    mutation is only ever issued after the matching store commit.
    """

    def __init__(self, store: OrderStore, cache: OrderCache, ttl: int = ORDER_CACHE_TTL_SECONDS):
        self.store = store
        self.cache = cache
        self.ttl = ttl

    async def create_order(self, order: Order) -> Order:
        """Validate, price and persist a new order.

        The cache is not populated here, the first read does it.

        :raises ValidationError: None order, no items or a malformed item
        """
        validate_order(order)
        if order.user_id is None:
            raise ValidationError("order must belong to a user")
        # server-computed, whatever total the client sent is discarded
        order = order.model_copy(update={"total": compute_total(order.items)})
        created = await self.store.create_order(order)
        # the new order is now the user's most recent one
        await self._cache_delete(user_order_key(created.user_id))
        return created

    async def get_order_by_id(self, order_id: int) -> Order:
        return await self._read_through(order_key(order_id), lambda: self.store.get_order_by_id(order_id))

    async def get_order_by_user_id(self, user_id: int) -> Order:
        return await self._read_through(
            user_order_key(user_id), lambda: self.store.get_order_by_user_id(user_id)
        )

    async def update_order(self, order: Order) -> Order:
        """Refresh the order in the store, then write the stored snapshot
        through to the cache.

        The store prices the order from the items it holds, the items sent
        here are only validated.
        """
        validate_order(order)
        if order.id is None:
            raise ValidationError("order id is required for an update")
        updated = await self.store.update_order(order)
        await self._cache_set(order_key(updated.id), updated)
        await self._cache_delete(user_order_key(updated.user_id))
        return updated

    async def delete_order(self, order_id: int):
        # a failed delete raises here and leaves the cache as it was
        user_id = await self.store.delete_order_by_id(order_id)
        await self._cache_delete(order_key(order_id))
        if user_id is not None:
            await self._cache_delete(user_order_key(user_id))

    async def _read_through(self, key: str, load: Callable[[], Awaitable[Order]]) -> Order:
        try:
            cached = await self.cache.get(key)
        except CacheError as e:
            logger.warning(f"Cache read failed for {key}, reading from store: {e}")
            cached = None
        if cached is not None:
            return cached
        # NotFoundError propagates as is, nothing gets cached for a missing order
        order = await load()
        await self._cache_set(key, order)
        return order

    async def _cache_set(self, key: str, order: Order):
        try:
            await self.cache.set(key, order, self.ttl)
        except CacheError as e:
            logger.warning(f"Cache write failed for {key}: {e}")

    async def _cache_delete(self, key: str):
        try:
            await self.cache.delete(key)
        except CacheError as e:
            logger.warning(f"Cache invalidation failed for {key}: {e}")

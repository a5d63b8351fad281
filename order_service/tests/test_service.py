from datetime import datetime
from unittest.mock import ANY, AsyncMock

import pytest

from app.cache import InMemoryOrderCache
from app.errors import CacheError, NotFoundError, StoreError, ValidationError
from app.schemas import LineItem, Order
from app.service import OrderService, compute_total, order_key, user_order_key


def make_mocks():
    store = AsyncMock()
    cache = AsyncMock()
    return store, cache, OrderService(store, cache, ttl=900)


def stored(order_id=1, total=500, user_id=3):
    return Order(
        id=order_id,
        user_id=user_id,
        total=total,
        items=[LineItem(id=10, order_id=order_id, name="coffee", quantity=5, price=100)],
        created_at=datetime(2026, 1, 1, 12, 0, 0),
        updated_at=datetime(2026, 1, 1, 12, 0, 0),
    )


def test_compute_total():
    items = [LineItem(name="a", quantity=2, price=100), LineItem(name="b", quantity=3, price=50)]
    assert compute_total(items) == 350
    assert compute_total([]) == 0


def test_cache_keys():
    assert order_key(1) == "order:1"
    assert user_order_key(1) == "order:user:1"


@pytest.mark.asyncio
async def test_create_order_calculates_total_and_ignores_client_total():
    store, cache, service = make_mocks()
    order = Order(
        user_id=3,
        total=1,
        items=[LineItem(name="a", quantity=2, price=100), LineItem(name="b", quantity=3, price=50)],
    )
    store.create_order.side_effect = lambda o: o.model_copy(update={"id": 1})

    res = await service.create_order(order)

    assert res.total == 350
    assert store.create_order.await_args.args[0].total == 350
    cache.set.assert_not_called()

@pytest.mark.asyncio
async def test_create_order_invalidates_users_latest_order():
    store, cache, service = make_mocks()
    store.create_order.return_value = stored()

    await service.create_order(stored().model_copy(update={"id": None}))

    cache.delete.assert_awaited_once_with("order:user:3")

@pytest.mark.asyncio
@pytest.mark.parametrize("order", [None, Order(user_id=3, items=[])])
async def test_create_order_rejects_missing_or_empty_order_without_io(order):
    store, cache, service = make_mocks()

    with pytest.raises(ValidationError):
        await service.create_order(order)

    assert store.mock_calls == []
    assert cache.mock_calls == []

@pytest.mark.asyncio
async def test_create_order_requires_a_user():
    store, cache, service = make_mocks()

    with pytest.raises(ValidationError):
        await service.create_order(Order(items=[LineItem(name="a", quantity=1, price=100)]))
    assert store.mock_calls == []

@pytest.mark.asyncio
async def test_create_order_rejects_malformed_item():
    store, _, service = make_mocks()
    bad = Order.model_construct(user_id=3, items=[LineItem.model_construct(name="x", quantity=0, price=1)])

    with pytest.raises(ValidationError):
        await service.create_order(bad)
    store.create_order.assert_not_called()

@pytest.mark.asyncio
async def test_create_order_propagates_store_error():
    store, cache, service = make_mocks()
    store.create_order.side_effect = StoreError("create_order: OperationalError")

    with pytest.raises(StoreError):
        await service.create_order(stored().model_copy(update={"id": None}))
    cache.delete.assert_not_called()

@pytest.mark.asyncio
async def test_cache_hit_does_not_call_store():
    store, cache, service = make_mocks()
    expected = stored()
    cache.get.return_value = expected

    res = await service.get_order_by_id(1)

    assert res == expected
    cache.get.assert_awaited_once_with("order:1")
    store.get_order_by_id.assert_not_called()

@pytest.mark.asyncio
async def test_cache_miss_calls_store_and_sets_cache():
    store, cache, service = make_mocks()
    expected = stored()
    cache.get.return_value = None
    store.get_order_by_id.return_value = expected

    res = await service.get_order_by_id(1)

    assert res == expected
    store.get_order_by_id.assert_awaited_once_with(1)
    cache.set.assert_awaited_once_with("order:1", expected, 900)

@pytest.mark.asyncio
async def test_cache_errors_never_fail_a_read():
    store, cache, service = make_mocks()
    expected = stored()
    cache.get.side_effect = CacheError("get order:1: connection refused")
    cache.set.side_effect = CacheError("set order:1: connection refused")
    store.get_order_by_id.return_value = expected

    assert await service.get_order_by_id(1) == expected

@pytest.mark.asyncio
async def test_not_found_is_propagated_and_not_cached():
    store, cache, service = make_mocks()
    cache.get.return_value = None
    store.get_order_by_id.side_effect = NotFoundError("order 404 not found")

    with pytest.raises(NotFoundError):
        await service.get_order_by_id(404)
    cache.set.assert_not_called()

@pytest.mark.asyncio
async def test_get_order_by_user_id_uses_user_key():
    store, cache, service = make_mocks()
    cache.get.return_value = None
    store.get_order_by_user_id.return_value = stored()

    await service.get_order_by_user_id(3)

    cache.get.assert_awaited_once_with("order:user:3")
    cache.set.assert_awaited_once_with("order:user:3", ANY, 900)

@pytest.mark.asyncio
async def test_update_order_writes_through_to_cache():
    store, cache, service = make_mocks()
    store.update_order.return_value = stored(total=500)
    order = stored().model_copy(update={"total": 0})

    res = await service.update_order(order)

    assert res == stored(total=500)
    store.update_order.assert_awaited_once_with(order)
    cache.set.assert_awaited_once_with("order:1", res, 900)
    cache.delete.assert_awaited_once_with("order:user:3")

@pytest.mark.asyncio
async def test_update_order_store_failure_leaves_cache_untouched():
    store, cache, service = make_mocks()
    store.update_order.side_effect = NotFoundError("order 1 not found")

    with pytest.raises(NotFoundError):
        await service.update_order(stored())
    assert cache.mock_calls == []

@pytest.mark.asyncio
async def test_update_order_requires_id():
    store, _, service = make_mocks()
    with pytest.raises(ValidationError):
        await service.update_order(stored().model_copy(update={"id": None}))
    store.update_order.assert_not_called()

@pytest.mark.asyncio
async def test_delete_order_invalidates_after_store_delete():
    store, cache, service = make_mocks()
    store.delete_order_by_id.return_value = 3

    await service.delete_order(1)

    store.delete_order_by_id.assert_awaited_once_with(1)
    assert [c.args[0] for c in cache.delete.await_args_list] == ["order:1", "order:user:3"]

@pytest.mark.asyncio
async def test_failed_delete_keeps_cache_entry():
    store = AsyncMock()
    store.delete_order_by_id.side_effect = NotFoundError("order 1 not found")
    cache = InMemoryOrderCache()
    await cache.set("order:1", stored(), 900)
    service = OrderService(store, cache, ttl=900)

    with pytest.raises(NotFoundError):
        await service.delete_order(1)
    assert await cache.get("order:1") == stored()


@pytest.mark.asyncio
async def test_cache_miss_populates_cache_end_to_end(service, cache, new_order):
    created = await service.create_order(new_order)
    assert order_key(created.id) not in cache

    fetched = await service.get_order_by_id(created.id)

    assert fetched == created
    assert await cache.get(order_key(created.id)) == created

@pytest.mark.asyncio
async def test_update_keeps_total_equal_to_stored_items_in_cache(service, store, cache, new_order):
    created = await service.create_order(new_order)
    await service.get_order_by_id(created.id)

    await service.update_order(created.model_copy(update={"items": [LineItem(name="gold", quantity=5, price=1000)]}))

    persisted = await store.get_order_by_id(created.id)
    cached = await cache.get(order_key(created.id))
    for order in (persisted, cached):
        assert order.total == sum(i.price * i.quantity for i in order.items) == 350
    assert cached == persisted
    assert (await service.get_order_by_id(created.id)).total == 350
    assert (await service.get_order_by_id(created.id)).total == 200

@pytest.mark.asyncio
async def test_delete_then_both_store_and_cache_miss(service, store, cache, new_order):
    created = await service.create_order(new_order)
    await service.get_order_by_id(created.id)
    await service.get_order_by_user_id(created.user_id)

    await service.delete_order(created.id)

    assert await cache.get(order_key(created.id)) is None
    assert await cache.get(user_order_key(created.user_id)) is None
    with pytest.raises(NotFoundError):
        await service.get_order_by_id(created.id)

@pytest.mark.asyncio
async def test_new_order_replaces_cached_latest_user_order(service, new_order):
    first = await service.create_order(new_order)
    assert (await service.get_order_by_user_id(3)).id == first.id

    second = await service.create_order(new_order)

    assert (await service.get_order_by_user_id(3)).id == second.id

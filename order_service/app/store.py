from contextlib import contextmanager
import logging
from typing import Protocol

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .errors import ConflictError, NotFoundError, StoreError, ValidationError
from .models import OrderItemRow, OrderRow
from .schemas import LineItem, Order, compute_total

logger= logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


class OrderStore(Protocol):
    """Durable store of order aggregates. The system of record."""

    async def create_order(self, order: Order) -> Order: ...

    async def get_order_by_id(self, order_id: int) -> Order: ...

    async def get_order_by_user_id(self, user_id: int) -> Order: ...

    async def update_order(self, order: Order) -> Order: ...

    async def delete_order_by_id(self, order_id: int) -> int: ...


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    # asyncpg exposes sqlstate, psycopg pgcode
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code == UNIQUE_VIOLATION:
        return True
    return "UNIQUE constraint failed" in str(orig)


@contextmanager
def translate_errors(operation: str):
    """Re-raise SQLAlchemy failures as the store's own error kinds.

    NotFoundError and the other OrderServiceErrors pass through untouched.
    """
    try:
        yield
    except IntegrityError as e:
        if is_unique_violation(e):
            raise ConflictError(f"{operation}: duplicate value") from e
        logger.error(f"{operation} violated a constraint: {e.orig}")
        raise StoreError(f"{operation}: constraint violation") from e
    except SQLAlchemyError as e:
        logger.exception(f"{operation} failed")
        raise StoreError(f"{operation}: {e.__class__.__name__}") from e


class SqlAlchemyOrderStore:
    """OrderStore over a SQLAlchemy async engine (PostgreSQL or SQLite).

    Every multi-statement operation runs inside ``session.begin()``: it commits
    when the block exits normally and rolls back on any exception, including
    ``asyncio.CancelledError`` raised while awaiting the database.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create_order(self, order: Order) -> Order:
        if order is None or not order.items:
            raise ValidationError("order must have at least one item")
        with translate_errors("create_order"):
            async with self._session_factory() as session:
                async with session.begin():
                    header = OrderRow(user_id=order.user_id, total=order.total)
                    session.add(header)
                    # flush the header first so the items can reference its id
                    await session.flush()
                    item_rows = [
                        OrderItemRow(order_id=header.id, name=item.name, quantity=item.quantity, price=item.price)
                        for item in order.items
                    ]
                    session.add_all(item_rows)
                    await session.flush()
                logger.info(f"Created order: {header.to_dict()} with {len(item_rows)} item(s)")
                return _compose(header, item_rows)

    async def get_order_by_id(self, order_id: int) -> Order:
        with translate_errors("get_order_by_id"):
            async with self._session_factory() as session:
                header = await session.get(OrderRow, order_id)
                if header is None:
                    raise NotFoundError(f"order {order_id} not found")
                return _compose(header, await _load_items(session, header.id))

    async def get_order_by_user_id(self, user_id: int) -> Order:
        """Most recently created order of the user, not the user's history."""
        with translate_errors("get_order_by_user_id"):
            async with self._session_factory() as session:
                result = await session.execute(
                    select(OrderRow)
                    .where(OrderRow.user_id == user_id)
                    .order_by(OrderRow.created_at.desc(), OrderRow.id.desc())
                    .limit(1)
                )
                header = result.scalars().first()
                if header is None:
                    raise NotFoundError(f"no order found for user {user_id}")
                return _compose(header, await _load_items(session, header.id))

    async def update_order(self, order: Order) -> Order:
        """Refresh total and updated_at, then return the stored aggregate.

        Line items are owned by the order's creation and are left as stored,
        so the total is priced from the stored items, not from ``order.items``.
        """
        if order is None or order.id is None:
            raise ValidationError("order id is required for an update")
        with translate_errors("update_order"):
            async with self._session_factory() as session:
                async with session.begin():
                    items = await _load_items(session, order.id)
                    result = await session.execute(
                        update(OrderRow)
                        .where(OrderRow.id == order.id)
                        .values(total=compute_total(items), updated_at=func.now())
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        raise NotFoundError(f"order {order.id} not found")
                    header = (
                        await session.execute(select(OrderRow).where(OrderRow.id == order.id))
                    ).scalar_one()
                logger.info(f"Updated order {order.id}: total={header.total}")
                return _compose(header, items)

    async def delete_order_by_id(self, order_id: int) -> int:
        """Delete an order and its items; returns the owning user id."""
        with translate_errors("delete_order_by_id"):
            async with self._session_factory() as session:
                async with session.begin():
                    user_id = (
                        await session.execute(select(OrderRow.user_id).where(OrderRow.id == order_id))
                    ).scalar_one_or_none()
                    await session.execute(delete(OrderItemRow).where(OrderItemRow.order_id == order_id))
                    result = await session.execute(delete(OrderRow).where(OrderRow.id == order_id))
                    if user_id is None or result.rowcount == 0:
                        raise NotFoundError(f"order {order_id} not found")
                logger.info(f"Deleted order {order_id}")
                return user_id


async def _load_items(session: AsyncSession, order_id: int) -> list:
    result = await session.execute(
        select(OrderItemRow).where(OrderItemRow.order_id == order_id).order_by(OrderItemRow.id)
    )
    return list(result.scalars().all())


def _compose(header: OrderRow, item_rows) -> Order:
    return Order(
        id=header.id,
        user_id=header.user_id,
        total=header.total,
        created_at=header.created_at,
        updated_at=header.updated_at,
        items=[LineItem.model_validate(row) for row in item_rows],
    )

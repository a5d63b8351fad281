from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, NonNegativeInt, PositiveInt


class LineItem(BaseModel):
    """A line of an order. ``price`` is the unit price in minor units.
    """
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    order_id: Optional[int] = None
    name: str
    quantity: PositiveInt
    price: NonNegativeInt


class Order(BaseModel):
    """An order aggregate: the header plus its line items, in display order.

    Store-assigned fields (``id``, timestamps) stay ``None`` until the order
    has been persisted. This is also the snapshot format kept in the cache.
    """
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    user_id: Optional[int] = None
    items: List[LineItem] = []
    total: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class LineItemIn(BaseModel):
    name: str
    quantity: PositiveInt
    price: NonNegativeInt


class OrderCreate(BaseModel):
    """Schema for the order create request. A client supplied total is accepted
    but never trusted, the service recomputes it.
    """
    user_id: int
    items: List[LineItemIn]
    total: Optional[int] = None

    def to_order(self) -> Order:
        return Order(user_id=self.user_id, items=[LineItem(**i.model_dump()) for i in self.items])


class OrderUpdate(BaseModel):
    """Schema for the order update request, the id comes from the path.
    The owner of an order never changes, so there is no user id here.
    """
    items: List[LineItemIn]
    total: Optional[int] = None

    def to_order(self, order_id: int) -> Order:
        return Order(
            id=order_id,
            items=[LineItem(**i.model_dump()) for i in self.items],
        )


def compute_total(items) -> int:
    """Order total in minor units: sum of unit price times quantity."""
    return sum(item.price * item.quantity for item in items)

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool

from app.cache import InMemoryOrderCache
from app.db import build_engine, build_sessionmaker, init_db
from app.kafka_producer import OrderEventProducer
from app.main import app, get_event_producer, get_order_service
from app.schemas import LineItem, Order
from app.service import OrderService
from app.store import SqlAlchemyOrderStore


@pytest_asyncio.fixture
async def engine():
    # one shared in-memory database per test
    engine= build_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()

@pytest.fixture
def session_factory(engine):
    return build_sessionmaker(engine)

@pytest.fixture
def store(session_factory):
    return SqlAlchemyOrderStore(session_factory)

@pytest.fixture
def cache():
    return InMemoryOrderCache()

@pytest.fixture
def service(store, cache):
    return OrderService(store, cache, ttl=900)

@pytest.fixture
def new_order():
    return Order(
        user_id=3,
        items=[
            LineItem(name="coffee", quantity=2, price=100),
            LineItem(name="milk", quantity=3, price=50),
        ],
    )

@pytest.fixture
def mock_service():
    return AsyncMock(spec=OrderService)

@pytest.fixture
def mock_producer():
    producer= MagicMock(spec=OrderEventProducer)
    producer.publish= AsyncMock()
    return producer

@pytest.fixture
def client(mock_service, mock_producer):
    app.dependency_overrides[get_order_service]= lambda: mock_service
    app.dependency_overrides[get_event_producer]= lambda: mock_producer
    yield TestClient(app)
    app.dependency_overrides.clear()

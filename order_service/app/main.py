import asyncio
from contextlib import asynccontextmanager
import logging
import os

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from . import config
from .cache import InMemoryOrderCache, RedisOrderCache
from .db import build_engine, build_sessionmaker, init_db
from .errors import ErrorKind, OrderServiceError
from .kafka_producer import ORDER_CREATED, ORDER_DELETED, ORDER_UPDATED, OrderEventProducer
from .schemas import Order, OrderCreate, OrderUpdate
from .service import OrderService
from .store import SqlAlchemyOrderStore

if config.LOG_PATH:
    os.makedirs(config.LOG_PATH, exist_ok=True)
    logging.basicConfig(
        filename=f'{config.LOG_PATH}/order_service.log',
        level=logging.INFO,
        filemode='a',
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
else:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger= logging.getLogger(__name__)

STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.STORE: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine= build_engine(config.DATABASE_URL)
    await init_db(engine)
    if config.REDIS_URL:
        cache= RedisOrderCache.from_url(config.REDIS_URL)
    else:
        logger.info("REDIS_URL not set, using the in-process order cache")
        cache= InMemoryOrderCache(max_entries=config.ORDER_CACHE_MAX_ENTRIES)
    store= SqlAlchemyOrderStore(build_sessionmaker(engine))
    app.state.order_service= OrderService(store, cache, ttl=config.ORDER_CACHE_TTL_SECONDS)
    app.state.event_producer= OrderEventProducer(config.KAFKA_BOOTSTRAP_SERVERS)
    await app.state.event_producer.start()
    yield
    await app.state.event_producer.stop()
    await cache.close()
    await engine.dispose()

app= FastAPI(lifespan=lifespan,title="Order Service")


def get_order_service(request: Request) -> OrderService:
    return request.app.state.order_service

def get_event_producer(request: Request) -> OrderEventProducer:
    return request.app.state.event_producer


@app.exception_handler(OrderServiceError)
async def order_error_handler(request: Request, exc: OrderServiceError):
    return JSONResponse(status_code=STATUS_BY_KIND[exc.kind], content={"detail": exc.message, "kind": exc.kind.value})

@app.exception_handler(asyncio.TimeoutError)
async def timeout_handler(request: Request, exc: asyncio.TimeoutError):
    logger.warning(f"{request.method} {request.url.path} timed out after {config.REQUEST_TIMEOUT_SECONDS}s")
    return JSONResponse(status_code=504, content={"detail": "Request timed out"})


async def bounded(coro):
    """Run a service call under the request timeout. On expiry the call is
    cancelled, which rolls back any transaction it had not yet committed.
    """
    return await asyncio.wait_for(coro, timeout=config.REQUEST_TIMEOUT_SECONDS)


@app.post("/orders", response_model= Order, status_code=201)
async def create_order(
    payload: OrderCreate,
    background_tasks: BackgroundTasks,
    service: OrderService = Depends(get_order_service),
    producer: OrderEventProducer = Depends(get_event_producer),
):
    """Create a new order. The total is computed from the items.

    :param payload: user id and line items of the new order
    :type payload: OrderCreate
    :param background_tasks: BackgroundTasks for scheduling the order_created event
    :type background_tasks: BackgroundTasks
    :raises ValidationError: answered with 400 when the order has no items
    :return: the stored order with its id, timestamps and total
    :rtype: Order
    """
    order= await bounded(service.create_order(payload.to_order()))
    logger.info(f"Created new order {order.id} for user {order.user_id}, total {order.total}")
    background_tasks.add_task(producer.publish, ORDER_CREATED, order.model_dump(mode="json"))
    return order

@app.get("/orders/{order_id}", response_model= Order)
async def get_order(order_id: int, service: OrderService = Depends(get_order_service)):
    return await bounded(service.get_order_by_id(order_id))

@app.get("/orders/user/{user_id}", response_model= Order)
async def get_user_order(user_id: int, service: OrderService = Depends(get_order_service)):
    """Most recent order of a user."""
    return await bounded(service.get_order_by_user_id(user_id))

@app.put("/orders/{order_id}", response_model= Order)
async def update_order(
    order_id: int,
    payload: OrderUpdate,
    background_tasks: BackgroundTasks,
    service: OrderService = Depends(get_order_service),
    producer: OrderEventProducer = Depends(get_event_producer),
):
    order= await bounded(service.update_order(payload.to_order(order_id)))
    background_tasks.add_task(producer.publish, ORDER_UPDATED, order.model_dump(mode="json"))
    return order

@app.delete("/orders/{order_id}", status_code=204)
async def delete_order(
    order_id: int,
    background_tasks: BackgroundTasks,
    service: OrderService = Depends(get_order_service),
    producer: OrderEventProducer = Depends(get_event_producer),
):
    await bounded(service.delete_order(order_id))
    background_tasks.add_task(producer.publish, ORDER_DELETED, {"id": order_id})

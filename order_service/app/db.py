from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base= declarative_base()


def build_engine(url: str, **kwargs) -> AsyncEngine:
    engine= create_async_engine(url, pool_pre_ping=True, **kwargs)
    if engine.dialect.name == "sqlite":
        # SQLite only enforces foreign keys when asked to, per connection
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor= dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
    return engine


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    # expire_on_commit=False so rows stay readable after the transaction block closes
    return async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class ToDictMixIn:
    def to_dict(self):
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gateflow.core.config import settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN until the first write; take the write lock up front instead so that
    # read-then-insert sequences cannot interleave across connections.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, _):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(database_url: str, **kw) -> AsyncEngine:
    connect_args = {"check_same_thread": False, "timeout": 30} if _is_sqlite(database_url) else {}
    engine = create_async_engine(database_url, future=True, echo=False, connect_args=connect_args, **kw)
    if _is_sqlite(database_url):
        _serialize_sqlite_writers(engine)
    return engine


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False, class_=AsyncSession)


engine = make_engine(settings.database_url)
SessionLocal = make_sessionmaker(engine)


async def get_session() -> AsyncSession:
    """FastAPI dependency to provide a database session."""
    async with SessionLocal() as session:
        yield session

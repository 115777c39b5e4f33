import asyncio
import os
from collections.abc import Callable, Generator
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
os.environ["COUPON_RESERVATION_SWEEP_ENABLED"] = "0"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from gateflow.core import metrics  # noqa: E402
from gateflow.core.config import settings  # noqa: E402
from gateflow.db.session import get_session, make_engine, make_sessionmaker  # noqa: E402
from gateflow.main import app  # noqa: E402
from gateflow.models import Base, Coupon, DiscountType  # noqa: E402


def sqlite_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    # Counters are process-global and would leak across tests.
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def session_factory(tmp_path: Path) -> Generator[async_sessionmaker, None, None]:
    """File-backed SQLite so concurrent sessions really contend for the write lock."""
    engine = make_engine(sqlite_url(tmp_path / "gateflow.db"), poolclass=NullPool)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield make_sessionmaker(engine)
    asyncio.run(engine.dispose())


@pytest.fixture
def client(session_factory: async_sessionmaker) -> Generator[TestClient, None, None]:
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": settings.admin_api_token}


@pytest.fixture
def make_coupon(session_factory: async_sessionmaker) -> Callable[..., Coupon]:
    def _make(code: str = "SAVE10", **fields: Any) -> Coupon:
        values: dict[str, Any] = {
            "code": code,
            "discount_type": DiscountType.percentage,
            "discount_value": Decimal("10.00"),
            "usage_limit_global": None,
            "usage_limit_per_user": 1,
            "current_usage_count": 0,
            "is_active": True,
            "allowed_product_ids": [],
            "allowed_emails": [],
            "exclude_order_bumps": False,
            "created_at": datetime.now(timezone.utc),
        }
        values.update(fields)

        async def _create() -> Coupon:
            async with session_factory() as session:
                coupon = Coupon(**values)
                session.add(coupon)
                await session.commit()
                return coupon

        return asyncio.run(_create())

    return _make

"""测试配置和 fixtures."""

from collections.abc import AsyncGenerator
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from picqsync.config import Settings
from picqsync.core.picqer import FetchedPage

# 导入模型以注册到 SQLModel.metadata
from picqsync.models.progress import SyncProgress  # noqa: F401
from picqsync.models.sync import SyncStatus  # noqa: F401


class FakeFetcher:
    """内存中的分页数据源，按 api_path 返回预置记录."""

    def __init__(self, records: dict[str, list[dict[str, Any]]] | None = None) -> None:
        self.records = records or {}
        self.calls: list[dict[str, Any]] = []
        # api_path -> (offset, 异常)，触发一次后移除
        self.fail_at: dict[str, tuple[int, BaseException]] = {}

    async def fetch_page(
        self,
        api_path: str,
        offset: int,
        limit: int = 100,
        updated_since: datetime | None = None,
        since_param: str = "updated_since",
    ) -> FetchedPage:
        self.calls.append(
            {
                "api_path": api_path,
                "offset": offset,
                "limit": limit,
                "updated_since": updated_since,
                "since_param": since_param,
            }
        )
        failure = self.fail_at.get(api_path)
        if failure is not None and failure[0] == offset:
            del self.fail_at[api_path]
            raise failure[1]

        page = self.records.get(api_path, [])[offset : offset + limit]
        return FetchedPage(
            records=[dict(r) for r in page],
            has_more=len(page) == limit,
            offset=offset,
        )

    def offsets(self, api_path: str) -> list[int]:
        return [c["offset"] for c in self.calls if c["api_path"] == api_path]


def make_warehouses(count: int, **extra: Any) -> list[dict[str, Any]]:
    """生成仓库测试数据."""
    return [
        {
            "idwarehouse": i,
            "name": f"Warehouse {i}",
            "accept_orders": True,
            "updated": "2025-06-01 10:00:00",
            **extra,
        }
        for i in range(1, count + 1)
    ]


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """创建测试用的内存数据库引擎（所有会话共享同一连接）."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """创建测试会话工厂."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def async_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """创建测试会话."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings() -> Settings:
    """测试配置（小页、无延迟、串行执行）."""
    return Settings(
        _env_file=None,
        picqer_api_url="https://example.picqer.com/api/v1",
        picqer_api_key="test-key",
        sync_page_size=10,
        sync_page_delay_seconds=0,
        sync_concurrency=1,
    )


@pytest.fixture
def fetcher() -> FakeFetcher:
    return FakeFetcher()

"""数据库初始化和会话管理."""

import logging
from typing import Any

from sqlalchemy import DateTime, Integer, String, UnicodeText, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncConnection,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.types import TypeEngine
from sqlmodel import SQLModel

# 导入模型以注册到 SQLModel.metadata
from picqsync.models.progress import SyncProgress  # noqa: F401
from picqsync.models.sync import SyncStatus  # noqa: F401

logger = logging.getLogger(__name__)

# 全局引擎和会话工厂
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

# 旧版本库中可能缺失的记账列: 列名 -> (类型, 默认值)
_BOOKKEEPING_COLUMNS: dict[str, dict[str, tuple[TypeEngine[Any], str | None]]] = {
    "sync_progress": {
        "mode": (String(20), "'incremental'"),
        "window_days": (Integer(), None),
        "updated_since": (DateTime(), None),
        "items_saved": (Integer(), "0"),
        "items_failed": (Integer(), "0"),
        "total_items": (Integer(), None),
        "error_message": (UnicodeText(), None),
    },
    "sync_status": {
        "last_sync_count": (Integer(), "0"),
        "total_count": (Integer(), "0"),
    },
}


async def init_db(database_url: str, **engine_kwargs: Any) -> AsyncEngine:
    """初始化数据库，创建记账表."""
    global _engine, _session_factory

    _engine = create_async_engine(database_url, echo=False, **engine_kwargs)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
        await _add_bookkeeping_columns(conn)

    return _engine


async def _add_bookkeeping_columns(conn: AsyncConnection) -> None:
    """为旧表补齐记账列（如果不存在）."""
    for table, columns in _BOOKKEEPING_COLUMNS.items():
        existing = await conn.run_sync(
            lambda sync_conn, t=table: {
                c["name"].lower() for c in inspect(sync_conn).get_columns(t)
            }
        )
        for name, (type_, default) in columns.items():
            if name in existing:
                continue
            ddl = type_.compile(dialect=conn.dialect)
            if default is not None:
                ddl += f" DEFAULT {default}"
            logger.info(f"添加 {table}.{name} 列")
            await conn.execute(text(f"ALTER TABLE {table} ADD {name} {ddl}"))


async def close_db() -> None:
    """释放连接池."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def async_session_maker() -> async_sessionmaker[AsyncSession]:
    """获取会话工厂（用于后台任务）."""
    if _session_factory is None:
        msg = "数据库未初始化，请先调用 init_db()"
        raise RuntimeError(msg)
    return _session_factory

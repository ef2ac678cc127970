"""picqsync 主应用入口."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from picqsync import __version__
from picqsync.api import sync
from picqsync.config import Settings, get_settings
from picqsync.core.orchestrator import SyncOrchestrator, set_orchestrator
from picqsync.core.picqer import PicqerClient, PicqerConfig
from picqsync.models.database import async_session_maker, close_db, init_db
from picqsync.scheduler import create_scheduler, shutdown_scheduler

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_client(settings: Settings) -> PicqerClient:
    """根据配置创建 Picqer 客户端."""
    return PicqerClient(
        PicqerConfig(
            base_url=settings.picqer_api_url,
            api_key=settings.picqer_api_key,
            user_agent=settings.picqer_user_agent,
            timeout=settings.request_timeout_seconds,
            rate_limit_sleep=settings.rate_limit_sleep_seconds,
            rate_limit_max_sleep=settings.rate_limit_max_sleep_seconds,
            rate_limit_max_retries=settings.rate_limit_max_retries,
            requests_per_minute=settings.picqer_requests_per_minute,
        )
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """应用生命周期管理."""
    app_settings = get_settings()

    logger.info("正在初始化数据库...")
    await init_db(app_settings.database_url)

    client = build_client(app_settings)
    set_orchestrator(SyncOrchestrator(client, async_session_maker(), app_settings))

    if not app_settings.picqer_api_url or not app_settings.picqer_api_key:
        logger.warning("Picqer 未配置，跳过定时同步")
    elif app_settings.scheduler_enabled:
        logger.info("正在启动定时任务...")
        create_scheduler(app_settings)

    logger.info("picqsync 启动完成！")
    yield

    # 关闭时清理
    logger.info("正在关闭...")
    await shutdown_scheduler()
    set_orchestrator(None)
    await client.close()
    await close_db()
    logger.info("picqsync 已关闭")


app = FastAPI(
    title="picqsync",
    description="Picqer 数据同步服务 - 可续跑的实体同步引擎",
    version=__version__,
    lifespan=lifespan,
)

# 注册路由
app.include_router(sync.router)


@app.get("/health")
async def health() -> dict:
    """健康检查."""
    return {"status": "ok"}


def run() -> None:
    """命令行入口."""
    import uvicorn

    uvicorn.run(
        "picqsync.main:app",
        host="0.0.0.0",
        port=8000,
    )


if __name__ == "__main__":
    run()

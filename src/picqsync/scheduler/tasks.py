"""定时任务定义."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from picqsync.config import Settings

logger = logging.getLogger(__name__)

_scheduler: AsyncIOScheduler | None = None


async def sync_task() -> None:
    """增量同步任务：同步所有实体类型."""
    from picqsync.core.orchestrator import get_orchestrator
    from picqsync.core.runner import SyncMode

    logger.info("开始定时同步任务...")
    try:
        results = await get_orchestrator().sync_all(SyncMode.INCREMENTAL)
    except Exception as e:
        logger.exception(f"同步任务失败: {e}")
        return

    for entity_type, result in results.items():
        if result.success:
            logger.info(f"[{entity_type}] 写入 {result.items_saved} 条")
        else:
            logger.warning(f"[{entity_type}] 同步失败: {result.error}")


def create_scheduler(settings: Settings) -> AsyncIOScheduler:
    """创建并启动定时任务调度器."""
    global _scheduler

    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        sync_task,
        "interval",
        minutes=settings.sync_interval_minutes,
        id="picqer_sync_task",
        name="Picqer 增量同步",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    # 启动时立即执行一次同步
    _scheduler.add_job(
        sync_task,
        "date",  # 一次性任务
        id="picqer_sync_task_initial",
        name="初始同步",
    )

    _scheduler.start()
    logger.info(
        f"定时任务调度器已启动，同步间隔: {settings.sync_interval_minutes} 分钟"
    )

    return _scheduler


async def shutdown_scheduler() -> None:
    """关闭定时任务调度器."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        logger.info("定时任务调度器已关闭")
        _scheduler = None

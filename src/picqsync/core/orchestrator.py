"""同步编排：选择实体、并发执行、重试和状态查询."""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from picqsync.config import Settings
from picqsync.core.entities import (
    ENTITY_CONFIGS,
    EntityConfig,
    EntitySource,
    PageFetcher,
    get_entity_config,
)
from picqsync.core.errors import UnknownEntityError
from picqsync.core.progress import ProgressTracker, WatermarkStore, progress_to_dict
from picqsync.core.runner import EntitySyncRunner, SyncMode, SyncResult
from picqsync.core.schema import SchemaCache, SchemaReconciler
from picqsync.core.upsert import UpsertEngine, count_rows
from picqsync.models.progress import ProgressStatus, SyncProgress

logger = logging.getLogger(__name__)

# 全局编排器（由应用启动时设置）
_orchestrator: "SyncOrchestrator | None" = None


def set_orchestrator(orchestrator: "SyncOrchestrator | None") -> None:
    """设置全局编排器."""
    global _orchestrator
    _orchestrator = orchestrator


def get_orchestrator() -> "SyncOrchestrator":
    """获取全局编排器."""
    if _orchestrator is None:
        msg = "同步编排器未初始化"
        raise RuntimeError(msg)
    return _orchestrator


class SyncOrchestrator:
    """
    同步编排器.

    每个实体类型在进程内同一时间只运行一个同步；
    不同实体类型互不影响，一个失败不会中断其他实体。
    """

    def __init__(
        self,
        client: PageFetcher,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        entities: Mapping[str, EntityConfig] = ENTITY_CONFIGS,
        schema_cache: SchemaCache | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.client = client
        self.settings = settings
        self.entities = dict(entities)
        self.schema = SchemaReconciler(schema_cache)
        self.engine = UpsertEngine(self.schema)
        self._session_factory = session_factory
        self._sleep = sleep
        self._runners: dict[str, EntitySyncRunner] = {}

    def is_running(self, entity_type: str) -> bool:
        return entity_type in self._runners

    def build_runner(self, config: EntityConfig) -> EntitySyncRunner:
        return EntitySyncRunner(
            EntitySource(config, self.client),
            self._session_factory,
            self.engine,
            page_size=self.settings.sync_page_size,
            full_sync_start=self.settings.full_sync_start,
            incremental_floor_days=self.settings.incremental_floor_days,
            page_delay=self.settings.sync_page_delay_seconds,
            sleep=self._sleep,
        )

    async def sync_one(
        self,
        entity_type: str,
        mode: SyncMode | str = SyncMode.INCREMENTAL,
        window_days: int | None = None,
    ) -> SyncResult:
        """同步单个实体类型."""
        try:
            config = get_entity_config(entity_type, self.entities)
        except UnknownEntityError as e:
            logger.warning(str(e))
            return SyncResult.failed(entity_type, str(e), str(mode))

        if self.is_running(entity_type):
            logger.info(f"[{entity_type}] 已有同步在运行，跳过")
            return SyncResult.failed(entity_type, "already running", str(mode))

        runner = self.build_runner(config)
        self._runners[entity_type] = runner
        try:
            return await runner.run(mode, window_days)
        finally:
            self._runners.pop(entity_type, None)

    async def sync_all(
        self,
        mode: SyncMode | str = SyncMode.INCREMENTAL,
        window_days: int | None = None,
    ) -> dict[str, SyncResult]:
        """并发同步所有实体类型（受 sync_concurrency 限制）."""
        semaphore = asyncio.Semaphore(max(1, self.settings.sync_concurrency))
        entity_types = list(self.entities)

        async def sync_with_semaphore(entity_type: str) -> SyncResult:
            async with semaphore:
                return await self.sync_one(entity_type, mode, window_days)

        outcomes = await asyncio.gather(
            *(sync_with_semaphore(t) for t in entity_types),
            return_exceptions=True,
        )

        results: dict[str, SyncResult] = {}
        for entity_type, outcome in zip(entity_types, outcomes, strict=True):
            if isinstance(outcome, BaseException):
                logger.error(f"[{entity_type}] 同步异常: {outcome!r}")
                results[entity_type] = SyncResult.failed(
                    entity_type, str(outcome) or type(outcome).__name__, str(mode)
                )
            else:
                results[entity_type] = outcome

        succeeded = sum(1 for r in results.values() if r.success)
        logger.info(f"全部同步完成: 成功 {succeeded}/{len(results)}")
        return results

    async def retry(self, run_id: str) -> SyncResult:
        """按运行 ID 重试失败的运行（从当前水位线开始新的运行）."""
        progress = await self.get_run(run_id)
        if progress is None:
            return SyncResult.failed("unknown", f"运行不存在: {run_id}")
        if progress.status == ProgressStatus.IN_PROGRESS:
            return SyncResult.failed(
                progress.entity_type, "run still active", progress.mode
            )

        logger.info(f"[{progress.entity_type}] 重试运行 {run_id} ({progress.mode})")
        return await self.sync_one(
            progress.entity_type, progress.mode, progress.window_days
        )

    def cancel(self, entity_type: str) -> bool:
        """请求取消正在运行的同步."""
        runner = self._runners.get(entity_type)
        if runner is None:
            return False
        runner.cancel()
        logger.info(f"[{entity_type}] 已请求取消")
        return True

    async def get_count(self, entity_type: str) -> int:
        """目标表行数."""
        config = get_entity_config(entity_type, self.entities)
        async with self._session_factory() as session:
            return await count_rows(session, config.table_name)

    async def get_last_sync_date(self, entity_type: str) -> datetime | None:
        """上次成功同步时间."""
        get_entity_config(entity_type, self.entities)
        async with self._session_factory() as session:
            return await WatermarkStore(session).get_last_sync_date(entity_type)

    async def get_run(self, run_id: str) -> SyncProgress | None:
        async with self._session_factory() as session:
            return await ProgressTracker(session).get(run_id)

    async def recent_runs(
        self, entity_type: str | None = None, limit: int = 20
    ) -> list[dict[str, Any]]:
        """最近的运行记录."""
        async with self._session_factory() as session:
            runs = await ProgressTracker(session).recent(entity_type, limit)
        return [progress_to_dict(p) for p in runs]

    async def get_status(self) -> dict[str, Any]:
        """所有实体类型的同步状态."""
        entities: dict[str, dict[str, Any]] = {}

        async with self._session_factory() as session:
            tracker = ProgressTracker(session)
            watermarks = WatermarkStore(session)

            for entity_type, config in self.entities.items():
                status = await watermarks.get(entity_type)
                active = await tracker.active(entity_type)
                latest = await tracker.recent(entity_type, limit=1)
                entities[entity_type] = {
                    "table": config.table_name,
                    "count": await count_rows(session, config.table_name),
                    "last_sync_date": (
                        status.last_sync_date.isoformat()
                        if status and status.last_sync_date
                        else None
                    ),
                    "last_sync_count": status.last_sync_count if status else 0,
                    "active_run_id": active.run_id if active else None,
                    "latest_run": progress_to_dict(latest[0]) if latest else None,
                    "running": self.is_running(entity_type),
                }

        stats = getattr(self.client, "stats", None)
        return {
            "entities": entities,
            "client": stats.to_dict() if stats is not None else None,
        }

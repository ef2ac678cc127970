"""单个实体类型的可续跑同步."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from picqsync.core.entities import EntitySource
from picqsync.core.errors import ProgressStateError, RunError
from picqsync.core.picqer import RawRecord
from picqsync.core.progress import ProgressTracker, WatermarkStore
from picqsync.core.upsert import UpsertEngine, count_rows
from picqsync.models.progress import SyncProgress
from picqsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

DEFAULT_FULL_SYNC_START = datetime(2025, 1, 1)


class SyncMode(StrEnum):
    """同步模式."""

    INCREMENTAL = "incremental"
    FULL = "full"
    WINDOW = "window"


@dataclass
class SyncResult:
    """一次同步调用的结果."""

    entity_type: str
    mode: str = SyncMode.INCREMENTAL.value
    run_id: str | None = None
    success: bool = False
    items_fetched: int = 0
    items_saved: int = 0
    items_failed: int = 0
    items_skipped: int = 0
    duplicates: int = 0
    error: str | None = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    @classmethod
    def failed(
        cls, entity_type: str, error: str, mode: str | None = None
    ) -> "SyncResult":
        """未能开始运行时的失败结果."""
        return cls(
            entity_type=entity_type,
            mode=mode or SyncMode.INCREMENTAL.value,
            error=error,
            completed_at=utcnow(),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "run_id": self.run_id,
            "mode": self.mode,
            "success": self.success,
            "items_fetched": self.items_fetched,
            "items_saved": self.items_saved,
            "items_failed": self.items_failed,
            "items_skipped": self.items_skipped,
            "duplicates": self.duplicates,
            "error": self.error,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class EntitySyncRunner:
    """
    单个实体类型的同步执行器.

    按页拉取 -> 逐条写入 -> 页末写检查点，直到没有下一页。
    进度和数据使用两个独立会话，单条记录回滚不会影响检查点。
    """

    def __init__(
        self,
        source: EntitySource,
        session_factory: async_sessionmaker[AsyncSession],
        engine: UpsertEngine,
        *,
        page_size: int = 100,
        full_sync_start: datetime = DEFAULT_FULL_SYNC_START,
        incremental_floor_days: int = 30,
        page_delay: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.source = source
        self.engine = engine
        self.page_size = page_size
        self.full_sync_start = full_sync_start
        self.incremental_floor_days = incremental_floor_days
        self.page_delay = page_delay
        self._session_factory = session_factory
        self._sleep = sleep
        self._cancelled = asyncio.Event()

    @property
    def entity_type(self) -> str:
        return self.source.entity_type

    def cancel(self) -> None:
        """请求在下一个分页边界停止."""
        self._cancelled.set()

    async def run(
        self,
        mode: SyncMode | str = SyncMode.INCREMENTAL,
        window_days: int | None = None,
    ) -> SyncResult:
        """执行一次同步，失败时返回失败结果而不是抛出异常."""
        try:
            mode = SyncMode(mode)
        except ValueError:
            return SyncResult.failed(self.entity_type, f"未知的同步模式: {mode}")
        if mode is SyncMode.WINDOW and (window_days is None or window_days <= 0):
            return SyncResult.failed(
                self.entity_type, "window 模式需要正数 window_days", mode.value
            )

        result = SyncResult(entity_type=self.entity_type, mode=mode.value)
        logger.info(f"[{self.entity_type}] 开始同步 ({mode.value})")

        async with (
            self._session_factory() as progress_session,
            self._session_factory() as data_session,
        ):
            tracker = ProgressTracker(progress_session)
            watermarks = WatermarkStore(progress_session)
            progress: SyncProgress | None = None

            try:
                since = await self._lower_bound(mode, window_days, watermarks)
                progress = await tracker.start_or_resume(
                    self.entity_type, mode.value, window_days, since
                )
                result.run_id = progress.run_id

                await self._sync_pages(progress, tracker, data_session, result)

                await tracker.complete(progress, success=True)
                total = await count_rows(data_session, self.source.config.table_name)
                await watermarks.record_success(
                    self.entity_type, utcnow(), result.items_saved, total
                )
                result.success = True
                logger.info(
                    f"[{self.entity_type}] 同步完成: 拉取={result.items_fetched}, "
                    f"写入={result.items_saved}, 失败={result.items_failed}, "
                    f"总行数={total}"
                )

            except ProgressStateError as e:
                # 运行已被其他调用作废，不记录失败也不推进水位线
                logger.warning(f"[{self.entity_type}] 运行已失效，停止同步: {e}")
                await data_session.rollback()
                result.error = str(e)

            except asyncio.CancelledError:
                await data_session.rollback()
                await self._record_failure(tracker, progress, "cancelled")
                raise

            except Exception as e:
                logger.exception(f"[{self.entity_type}] 同步失败: {e}")
                await data_session.rollback()
                await self._record_failure(tracker, progress, str(e))
                result.error = str(e)

        result.completed_at = utcnow()
        return result

    async def _lower_bound(
        self,
        mode: SyncMode,
        window_days: int | None,
        watermarks: WatermarkStore,
    ) -> datetime:
        """新运行的起始时间（续跑时沿用进度记录中的值）."""
        if mode is SyncMode.FULL:
            return self.full_sync_start
        if mode is SyncMode.WINDOW:
            return utcnow() - timedelta(days=window_days or 0)

        last_sync = await watermarks.get_last_sync_date(self.entity_type)
        if last_sync is not None:
            return last_sync
        return utcnow() - timedelta(days=self.incremental_floor_days)

    async def _sync_pages(
        self,
        progress: SyncProgress,
        tracker: ProgressTracker,
        data_session: AsyncSession,
        result: SyncResult,
    ) -> None:
        """分页主循环."""
        config = self.source.config
        since = progress.updated_since
        cutoff = since if progress.mode == SyncMode.WINDOW else None
        offset = progress.current_offset
        batch = progress.batch_number
        seen: set[str] = set()

        while True:
            if self._cancelled.is_set():
                msg = "cancelled"
                raise RunError(msg)

            page = await self.source.fetch_page(offset, self.page_size, since)
            fetched = len(page.records)
            result.items_fetched += fetched
            halt = not page.has_more

            records = page.records
            if cutoff is not None:
                records = [r for r in records if not self._is_older(r, cutoff)]
                if len(records) < fetched:
                    logger.info(
                        f"[{self.entity_type}] 本页有 {fetched - len(records)} 条"
                        f"早于 {cutoff:%Y-%m-%d %H:%M:%S}，停止翻页"
                    )
                    halt = True

            saved = failed = 0
            for record in records:
                key = self.source.record_key(record)
                if key is not None:
                    if key in seen:
                        result.duplicates += 1
                        continue
                    seen.add(key)

                row = self.source.transform(record)
                if row is None:
                    result.items_skipped += 1
                    logger.warning(
                        f"[{self.entity_type}] 记录缺少 {config.id_field}，跳过: "
                        f"{self.source.display_name(record)}"
                    )
                    continue

                outcome = await self.engine.upsert_row(
                    data_session,
                    config.table_name,
                    row,
                    config.id_field,
                    explicit_identity=config.explicit_identity,
                )
                if outcome.written:
                    saved += 1
                    logger.debug(
                        f"[{self.entity_type}] {outcome.outcome}: "
                        f"{key} {self.source.display_name(record)}"
                    )
                else:
                    failed += 1

            result.items_saved += saved
            result.items_failed += failed
            offset += page.size
            batch += 1

            await tracker.checkpoint(
                progress,
                current_offset=offset,
                batch_number=batch,
                items_processed=progress.items_processed + fetched,
                items_saved=progress.items_saved + saved,
                items_failed=progress.items_failed + failed,
            )
            logger.info(
                f"[{self.entity_type}] 第 {batch} 页: 拉取 {fetched} 条，"
                f"写入 {saved} 条，失败 {failed} 条，offset={offset}"
            )

            if halt:
                break
            if self.page_delay > 0:
                await self._sleep(self.page_delay)

    def _is_older(self, record: RawRecord, cutoff: datetime) -> bool:
        """记录更新时间早于截止时间（无时间字段的记录保留）."""
        updated = self.source.record_updated_at(record)
        return updated is not None and updated < cutoff

    async def _record_failure(
        self,
        tracker: ProgressTracker,
        progress: SyncProgress | None,
        error: str,
    ) -> None:
        """尽力将进度记录标记为失败."""
        if progress is None:
            return
        try:
            await tracker.session.rollback()
            await tracker.session.refresh(progress)
            if not progress.is_terminal:
                await tracker.complete(progress, success=False, error=error)
        except SQLAlchemyError as e:
            logger.error(f"[{self.entity_type}] 无法记录失败状态: {e}")

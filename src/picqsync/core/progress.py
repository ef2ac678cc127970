"""同步进度检查点和水位线."""

import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import select

from picqsync.core.errors import ProgressStateError
from picqsync.models.progress import ProgressStatus, SyncProgress
from picqsync.models.sync import SyncStatus
from picqsync.utils.dates import utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 4000

# checkpoint 允许更新的字段
CHECKPOINT_FIELDS = frozenset(
    {
        "current_offset",
        "batch_number",
        "items_processed",
        "items_saved",
        "items_failed",
        "total_items",
    }
)

# 开始新运行前需要作废旧进度的模式
EXCLUSIVE_MODES = frozenset({"full", "window"})


class ProgressTracker:
    """sync_progress 表的读写."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def start_or_resume(
        self,
        entity_type: str,
        mode: str,
        window_days: int | None = None,
        updated_since: datetime | None = None,
    ) -> SyncProgress:
        """
        开始新运行或续跑.

        - full/window: 作废该实体所有进行中的记录，从 offset 0 新建
        - incremental: 存在进行中的记录则原样返回，否则新建
        """
        if mode in EXCLUSIVE_MODES:
            abandoned = await self._abandon_active(entity_type)
            if abandoned:
                logger.info(f"[{entity_type}] 已作废 {abandoned} 条未完成的进度记录")
        else:
            existing = await self.active(entity_type)
            if existing is not None:
                logger.info(
                    f"[{entity_type}] 续跑 {existing.run_id}，"
                    f"从 offset {existing.current_offset} 继续"
                )
                return existing

        progress = SyncProgress(
            run_id=uuid.uuid4().hex,
            entity_type=entity_type,
            mode=mode,
            window_days=window_days,
            updated_since=updated_since,
        )
        self.session.add(progress)
        await self.session.commit()
        await self.session.refresh(progress)
        logger.info(f"[{entity_type}] 新建运行 {progress.run_id} ({mode})")
        return progress

    async def checkpoint(self, progress: SyncProgress, **fields: Any) -> SyncProgress:
        """部分更新进度计数，总是刷新 last_updated."""
        unknown = set(fields) - CHECKPOINT_FIELDS
        if unknown:
            msg = f"不支持的进度字段: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        self._ensure_active(progress)

        await self._update_active(progress, {**fields, "last_updated": utcnow()})
        return progress

    async def complete(
        self,
        progress: SyncProgress,
        success: bool,
        error: str | None = None,
    ) -> SyncProgress:
        """将运行标记为完成或失败."""
        self._ensure_active(progress)

        now = utcnow()
        values: dict[str, Any] = {
            "status": ProgressStatus.COMPLETED if success else ProgressStatus.FAILED,
            "completed_at": now,
            "last_updated": now,
        }
        if error is not None:
            values["error_message"] = error[:MAX_ERROR_LENGTH]

        await self._update_active(progress, values)
        return progress

    async def get(self, run_id: str) -> SyncProgress | None:
        """按运行 ID 查询."""
        stmt = select(SyncProgress).where(SyncProgress.run_id == run_id)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def active(self, entity_type: str) -> SyncProgress | None:
        """实体当前进行中的运行（最新一条）."""
        stmt = (
            select(SyncProgress)
            .where(SyncProgress.entity_type == entity_type)
            .where(SyncProgress.status == ProgressStatus.IN_PROGRESS)
            .order_by(SyncProgress.started_at.desc(), SyncProgress.id.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def recent(
        self, entity_type: str | None = None, limit: int = 20
    ) -> list[SyncProgress]:
        """最近的运行记录."""
        stmt = select(SyncProgress)
        if entity_type is not None:
            stmt = stmt.where(SyncProgress.entity_type == entity_type)
        stmt = stmt.order_by(SyncProgress.started_at.desc(), SyncProgress.id.desc())
        result = await self.session.execute(stmt.limit(limit))
        return list(result.scalars().all())

    async def _abandon_active(self, entity_type: str) -> int:
        now = utcnow()
        stmt = (
            update(SyncProgress)
            .where(SyncProgress.entity_type == entity_type)
            .where(SyncProgress.status == ProgressStatus.IN_PROGRESS)
            .values(status=ProgressStatus.ABANDONED, last_updated=now, completed_at=now)
            .execution_options(synchronize_session="fetch")
        )
        result = await self.session.execute(stmt)
        await self.session.commit()
        return result.rowcount or 0

    async def _update_active(
        self, progress: SyncProgress, values: dict[str, Any]
    ) -> None:
        """只更新仍处于进行中的运行（其他会话可能已将其作废）."""
        run_id = progress.run_id
        stmt = (
            update(SyncProgress)
            .where(SyncProgress.run_id == run_id)
            .where(SyncProgress.status == ProgressStatus.IN_PROGRESS)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        updated = result.rowcount or 0
        await self.session.commit()

        if not updated:
            msg = f"运行 {run_id} 已不在进行中，不能再修改"
            raise ProgressStateError(msg)
        for name, value in values.items():
            set_committed_value(progress, name, value)

    @staticmethod
    def _ensure_active(progress: SyncProgress) -> None:
        if progress.is_terminal:
            msg = f"运行 {progress.run_id} 已结束 ({progress.status})，不能再修改"
            raise ProgressStateError(msg)


class WatermarkStore:
    """sync_status 表：每个实体一行，只在运行成功后更新."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, entity_type: str) -> SyncStatus | None:
        return await self.session.get(SyncStatus, entity_type)

    async def get_last_sync_date(self, entity_type: str) -> datetime | None:
        """上次成功同步的时间."""
        status = await self.get(entity_type)
        return status.last_sync_date if status else None

    async def record_success(
        self,
        entity_type: str,
        synced_at: datetime,
        count: int,
        total: int,
    ) -> SyncStatus:
        """运行成功后推进水位线."""
        status = await self.get(entity_type)
        if status is None:
            status = SyncStatus(entity_type=entity_type)

        status.last_sync_date = synced_at
        status.last_sync_count = count
        status.total_count = total
        status.updated_at = utcnow()

        self.session.add(status)
        await self.session.commit()
        return status

    async def all(self) -> list[SyncStatus]:
        result = await self.session.execute(
            select(SyncStatus).order_by(SyncStatus.entity_type)
        )
        return list(result.scalars().all())


def progress_to_dict(progress: SyncProgress) -> dict[str, Any]:
    """进度记录转为 API 返回格式."""
    return {
        "run_id": progress.run_id,
        "entity_type": progress.entity_type,
        "mode": progress.mode,
        "window_days": progress.window_days,
        "status": progress.status,
        "current_offset": progress.current_offset,
        "batch_number": progress.batch_number,
        "items_processed": progress.items_processed,
        "items_saved": progress.items_saved,
        "items_failed": progress.items_failed,
        "total_items": progress.total_items,
        "updated_since": (
            progress.updated_since.isoformat() if progress.updated_since else None
        ),
        "started_at": progress.started_at.isoformat(),
        "last_updated": progress.last_updated.isoformat(),
        "completed_at": (
            progress.completed_at.isoformat() if progress.completed_at else None
        ),
        "error_message": progress.error_message,
    }

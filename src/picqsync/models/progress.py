"""SyncProgress 同步进度模型."""

from pydantic import NaiveDatetime
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from picqsync.utils.dates import utcnow


class ProgressStatus:
    """进度状态枚举."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"

    TERMINAL = frozenset({COMPLETED, FAILED, ABANDONED})


class SyncProgress(SQLModel, table=True):
    """单次同步运行的检查点记录（只追加，不删除）."""

    __tablename__ = "sync_progress"  # type: ignore[assignment]

    id: int | None = Field(default=None, primary_key=True)
    run_id: str = Field(unique=True, index=True, description="运行 ID")
    entity_type: str = Field(index=True, description="实体类型")
    mode: str = Field(default="incremental", description="模式: incremental|full|window")
    window_days: int | None = Field(default=None, description="时间窗口天数")
    updated_since: NaiveDatetime | None = Field(
        default=None,
        sa_type=DateTime(),
        description="创建运行时确定的起始时间，续跑时沿用",
    )
    current_offset: int = Field(default=0, description="当前分页偏移")
    batch_number: int = Field(default=0, description="已完成页数")
    items_processed: int = Field(default=0, description="已处理记录数")
    items_saved: int = Field(default=0, description="写入成功数")
    items_failed: int = Field(default=0, description="写入失败数")
    total_items: int | None = Field(default=None, description="总记录数")
    status: str = Field(
        default=ProgressStatus.IN_PROGRESS,
        index=True,
        description="状态: in_progress|completed|failed|abandoned",
    )
    started_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime())
    last_updated: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime())
    completed_at: NaiveDatetime | None = Field(default=None, sa_type=DateTime())
    error_message: str | None = Field(default=None, description="错误信息")

    @property
    def is_terminal(self) -> bool:
        """是否已进入终态."""
        return self.status in ProgressStatus.TERMINAL

"""SyncStatus 同步水位模型."""

from pydantic import NaiveDatetime
from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from picqsync.utils.dates import utcnow


class SyncStatus(SQLModel, table=True):
    """每个实体类型一行，记录最近一次成功同步."""

    __tablename__ = "sync_status"  # type: ignore[assignment]

    entity_type: str = Field(primary_key=True, description="实体类型")
    last_sync_date: NaiveDatetime | None = Field(
        default=None, sa_type=DateTime(), description="水位时间"
    )
    last_sync_count: int = Field(default=0, description="最近一次写入数")
    total_count: int = Field(default=0, description="目标表总行数")
    updated_at: NaiveDatetime = Field(default_factory=utcnow, sa_type=DateTime())

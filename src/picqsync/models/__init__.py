"""数据模型."""

from picqsync.models.database import async_session_maker, close_db, init_db
from picqsync.models.progress import ProgressStatus, SyncProgress
from picqsync.models.sync import SyncStatus

__all__ = [
    "ProgressStatus",
    "SyncProgress",
    "SyncStatus",
    "async_session_maker",
    "close_db",
    "init_db",
]

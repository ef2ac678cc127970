"""核心业务逻辑."""

from picqsync.core.entities import ENTITY_CONFIGS, EntityConfig, EntitySource
from picqsync.core.orchestrator import SyncOrchestrator
from picqsync.core.picqer import PicqerClient, PicqerConfig
from picqsync.core.runner import EntitySyncRunner, SyncMode, SyncResult

__all__ = [
    "ENTITY_CONFIGS",
    "EntityConfig",
    "EntitySource",
    "EntitySyncRunner",
    "PicqerClient",
    "PicqerConfig",
    "SyncMode",
    "SyncOrchestrator",
    "SyncResult",
]

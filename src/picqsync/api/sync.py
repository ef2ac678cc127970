"""同步 API."""

from fastapi import APIRouter, Depends, HTTPException

from picqsync.core.errors import UnknownEntityError
from picqsync.core.orchestrator import SyncOrchestrator, get_orchestrator
from picqsync.core.runner import SyncMode

router = APIRouter(prefix="/api/sync", tags=["sync"])


def _check_window(mode: SyncMode, window_days: int | None) -> None:
    if mode is SyncMode.WINDOW and (window_days is None or window_days <= 0):
        raise HTTPException(status_code=400, detail="window 模式需要正数 window_days")


@router.post("")
async def trigger_sync_all(
    mode: SyncMode = SyncMode.INCREMENTAL,
    window_days: int | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    """同步所有实体类型."""
    _check_window(mode, window_days)
    results = await orchestrator.sync_all(mode, window_days)
    return {
        "success": all(r.success for r in results.values()),
        "results": {name: r.to_dict() for name, r in results.items()},
    }


@router.get("/status")
async def get_sync_status(
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    """获取各实体同步状态."""
    return await orchestrator.get_status()


@router.get("/runs")
async def list_runs(
    entity_type: str | None = None,
    limit: int = 20,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    """最近的运行记录."""
    limit = max(1, min(limit, 200))
    return {"items": await orchestrator.recent_runs(entity_type, limit)}


@router.post("/retry/{run_id}")
async def retry_run(
    run_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    """按运行 ID 重试."""
    if await orchestrator.get_run(run_id) is None:
        raise HTTPException(status_code=404, detail=f"运行不存在: {run_id}")
    result = await orchestrator.retry(run_id)
    return result.to_dict()


@router.post("/{entity_type}")
async def trigger_sync_one(
    entity_type: str,
    mode: SyncMode = SyncMode.INCREMENTAL,
    window_days: int | None = None,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    """同步单个实体类型."""
    if entity_type not in orchestrator.entities:
        raise HTTPException(status_code=404, detail=f"未配置的实体类型: {entity_type}")
    _check_window(mode, window_days)
    result = await orchestrator.sync_one(entity_type, mode, window_days)
    return result.to_dict()


@router.post("/{entity_type}/cancel")
async def cancel_sync(
    entity_type: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    """取消正在运行的同步."""
    if entity_type not in orchestrator.entities:
        raise HTTPException(status_code=404, detail=f"未配置的实体类型: {entity_type}")
    return {"entity_type": entity_type, "cancelled": orchestrator.cancel(entity_type)}


@router.get("/{entity_type}/count")
async def get_entity_count(
    entity_type: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    """目标表行数和上次同步时间."""
    try:
        count = await orchestrator.get_count(entity_type)
        last_sync = await orchestrator.get_last_sync_date(entity_type)
    except UnknownEntityError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    return {
        "entity_type": entity_type,
        "count": count,
        "last_sync_date": last_sync.isoformat() if last_sync else None,
    }

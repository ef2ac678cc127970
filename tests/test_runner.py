"""测试单实体同步执行器."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from picqsync.core.entities import ENTITY_CONFIGS, EntitySource
from picqsync.core.errors import FetchError
from picqsync.core.progress import ProgressTracker, WatermarkStore
from picqsync.core.runner import EntitySyncRunner, SyncMode
from picqsync.core.schema import SchemaReconciler
from picqsync.core.upsert import UpsertEngine, count_rows
from picqsync.models.progress import ProgressStatus
from picqsync.utils.dates import format_since, utcnow
from tests.conftest import FakeFetcher, make_warehouses


class Crash(BaseException):
    """模拟进程崩溃（不会被执行器捕获）."""


class TakeoverFetcher(FakeFetcher):
    """拉取到指定 offset 时，由另一个会话开始全量运行."""

    def __init__(self, records, session_factory, at_offset: int) -> None:
        super().__init__(records)
        self.session_factory = session_factory
        self.at_offset = at_offset
        self.takeover_run_id: str | None = None

    async def fetch_page(self, api_path, offset, limit=100, **kwargs):
        if offset == self.at_offset and self.takeover_run_id is None:
            async with self.session_factory() as session:
                progress = await ProgressTracker(session).start_or_resume(
                    "warehouse", "full"
                )
            self.takeover_run_id = progress.run_id
        return await super().fetch_page(api_path, offset, limit, **kwargs)


def make_runner(
    fetcher: FakeFetcher,
    session_factory: async_sessionmaker[AsyncSession],
    entity_type: str = "warehouse",
    **kwargs,
) -> EntitySyncRunner:
    return EntitySyncRunner(
        EntitySource(ENTITY_CONFIGS[entity_type], fetcher),
        session_factory,
        UpsertEngine(SchemaReconciler()),
        page_size=10,
        **kwargs,
    )


async def table_count(session_factory, table: str) -> int:
    async with session_factory() as session:
        return await count_rows(session, table)


class TestFullRun:
    """测试完整运行."""

    async def test_pages_until_end_of_data(self, session_factory) -> None:
        """按页拉取直到返回不足一页."""
        fetcher = FakeFetcher({"/warehouses": make_warehouses(25)})
        runner = make_runner(fetcher, session_factory)

        result = await runner.run(SyncMode.FULL)

        assert result.success is True
        assert result.items_fetched == 25
        assert result.items_saved == 25
        assert fetcher.offsets("/warehouses") == [0, 10, 20]
        assert fetcher.calls[0]["updated_since"] == datetime(2025, 1, 1)
        assert await table_count(session_factory, "warehouses") == 25

        async with session_factory() as session:
            progress = await ProgressTracker(session).get(result.run_id)
            status = await WatermarkStore(session).get("warehouse")
        assert progress.status == ProgressStatus.COMPLETED
        assert progress.current_offset == 25
        assert progress.batch_number == 3
        assert progress.items_saved == 25
        assert status.last_sync_count == 25
        assert status.total_count == 25
        assert status.last_sync_date is not None

    async def test_rerun_is_idempotent(self, session_factory) -> None:
        """重复运行不产生重复行."""
        fetcher = FakeFetcher({"/warehouses": make_warehouses(12)})
        runner = make_runner(fetcher, session_factory)
        await runner.run(SyncMode.FULL)
        second = await make_runner(fetcher, session_factory).run(SyncMode.FULL)

        assert second.success is True
        assert second.items_saved == 12
        assert await table_count(session_factory, "warehouses") == 12

    async def test_rename_updates_existing_row(self, session_factory) -> None:
        """源端改名后目标行被更新而不是新增."""
        fetcher = FakeFetcher(
            {"/warehouses": [{"idwarehouse": 1, "name": "W1"}]}
        )
        await make_runner(fetcher, session_factory).run(SyncMode.FULL)
        fetcher.records["/warehouses"] = [{"idwarehouse": 1, "name": "W1 Main"}]
        await make_runner(fetcher, session_factory).run(SyncMode.FULL)

        async with session_factory() as session:
            rows = (await session.execute(text("SELECT id, name FROM warehouses"))).all()
        assert [tuple(r) for r in rows] == [("1", "W1 Main")]

    async def test_duplicates_within_run_are_skipped(self, session_factory) -> None:
        records = make_warehouses(3)
        records.append(dict(records[0]))
        fetcher = FakeFetcher({"/warehouses": records})

        result = await make_runner(fetcher, session_factory).run(SyncMode.FULL)

        assert result.duplicates == 1
        assert result.items_saved == 3
        assert await table_count(session_factory, "warehouses") == 3

    async def test_records_without_id_are_skipped(self, session_factory) -> None:
        fetcher = FakeFetcher(
            {"/warehouses": [{"name": "no id"}, {"idwarehouse": 9, "name": "ok"}]}
        )
        result = await make_runner(fetcher, session_factory).run(SyncMode.FULL)

        assert result.success is True
        assert result.items_skipped == 1
        assert result.items_saved == 1

    async def test_empty_source(self, session_factory) -> None:
        result = await make_runner(FakeFetcher(), session_factory).run(SyncMode.FULL)
        assert result.success is True
        assert result.items_fetched == 0


class TestResume:
    """测试中断续跑."""

    async def test_crash_and_resume_keeps_row_count(self, session_factory) -> None:
        """100 个仓库在 offset 50 处崩溃，续跑后仍为 100 行."""
        fetcher = FakeFetcher({"/warehouses": make_warehouses(100)})
        fetcher.fail_at["/warehouses"] = (50, Crash())

        with pytest.raises(Crash):
            await make_runner(fetcher, session_factory).run(SyncMode.INCREMENTAL)

        assert await table_count(session_factory, "warehouses") == 50
        async with session_factory() as session:
            active = await ProgressTracker(session).active("warehouse")
        assert active is not None
        assert active.current_offset == 50

        fetcher.calls.clear()
        result = await make_runner(fetcher, session_factory).run(SyncMode.INCREMENTAL)

        assert result.success is True
        assert result.run_id == active.run_id
        assert fetcher.offsets("/warehouses")[0] == 50
        assert fetcher.calls[0]["updated_since"] == active.updated_since
        assert await table_count(session_factory, "warehouses") == 100

        async with session_factory() as session:
            progress = await ProgressTracker(session).get(active.run_id)
        assert progress.items_processed == 100
        assert progress.status == ProgressStatus.COMPLETED

    async def test_crash_before_checkpoint_refetches_page(
        self, session_factory, monkeypatch
    ) -> None:
        """页已写入但检查点未保存时崩溃，续跑从同一 offset 重拉且不产生重复行."""
        original = ProgressTracker.checkpoint
        calls = 0

        async def crash_on_first_checkpoint(self, progress, **fields):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise Crash()
            return await original(self, progress, **fields)

        monkeypatch.setattr(ProgressTracker, "checkpoint", crash_on_first_checkpoint)
        fetcher = FakeFetcher({"/warehouses": make_warehouses(100)})

        with pytest.raises(Crash):
            await make_runner(fetcher, session_factory).run(SyncMode.INCREMENTAL)

        assert await table_count(session_factory, "warehouses") == 10
        async with session_factory() as session:
            active = await ProgressTracker(session).active("warehouse")
        assert active is not None
        assert active.current_offset == 0

        fetcher.calls.clear()
        result = await make_runner(fetcher, session_factory).run(SyncMode.INCREMENTAL)

        assert result.success is True
        assert result.run_id == active.run_id
        assert fetcher.offsets("/warehouses")[0] == 0
        assert await table_count(session_factory, "warehouses") == 100

    async def test_superseded_run_stops_without_watermark(
        self, session_factory
    ) -> None:
        """运行被全量运行作废后停止，不改写其状态也不推进水位线."""
        fetcher = TakeoverFetcher(
            {"/warehouses": make_warehouses(30)}, session_factory, at_offset=10
        )

        result = await make_runner(fetcher, session_factory).run(SyncMode.INCREMENTAL)

        assert result.success is False
        assert fetcher.offsets("/warehouses") == [0, 10]
        async with session_factory() as session:
            tracker = ProgressTracker(session)
            stale = await tracker.get(result.run_id)
            active = await tracker.active("warehouse")
            watermark = await WatermarkStore(session).get_last_sync_date("warehouse")
        assert stale.status == ProgressStatus.ABANDONED
        assert stale.current_offset == 10
        assert active.run_id == fetcher.takeover_run_id
        assert watermark is None

    async def test_failed_run_is_recorded(self, session_factory) -> None:
        """拉取失败时运行标记为 failed，下一次从头开始新的运行."""
        fetcher = FakeFetcher({"/warehouses": make_warehouses(30)})
        fetcher.fail_at["/warehouses"] = (10, FetchError("HTTP 500", status_code=500))

        failed = await make_runner(fetcher, session_factory).run(SyncMode.INCREMENTAL)

        assert failed.success is False
        assert "HTTP 500" in failed.error
        async with session_factory() as session:
            progress = await ProgressTracker(session).get(failed.run_id)
            watermark = await WatermarkStore(session).get_last_sync_date("warehouse")
        assert progress.status == ProgressStatus.FAILED
        assert progress.error_message == "HTTP 500"
        assert watermark is None

        retried = await make_runner(fetcher, session_factory).run(SyncMode.INCREMENTAL)
        assert retried.success is True
        assert retried.run_id != failed.run_id
        assert await table_count(session_factory, "warehouses") == 30

    async def test_full_run_abandons_stale_progress(self, session_factory) -> None:
        """全量运行不续跑旧记录."""
        async with session_factory() as session:
            stale = await ProgressTracker(session).start_or_resume(
                "warehouse", "incremental"
            )

        fetcher = FakeFetcher({"/warehouses": make_warehouses(5)})
        result = await make_runner(fetcher, session_factory).run(SyncMode.FULL)

        assert result.run_id != stale.run_id
        assert fetcher.offsets("/warehouses") == [0]
        async with session_factory() as session:
            old = await ProgressTracker(session).get(stale.run_id)
        assert old.status == ProgressStatus.ABANDONED


class TestLowerBound:
    """测试起始时间选择."""

    async def test_incremental_uses_watermark(self, session_factory) -> None:
        watermark = datetime(2025, 7, 1, 8, 30, 0)
        async with session_factory() as session:
            await WatermarkStore(session).record_success("user", watermark, 0, 0)

        fetcher = FakeFetcher()
        await make_runner(fetcher, session_factory, "user").run()

        assert fetcher.calls[0]["updated_since"] == watermark
        assert fetcher.calls[0]["api_path"] == "/users"

    async def test_incremental_without_watermark_uses_floor(
        self, session_factory
    ) -> None:
        fetcher = FakeFetcher()
        await make_runner(
            fetcher, session_factory, "user", incremental_floor_days=30
        ).run()

        since = fetcher.calls[0]["updated_since"]
        expected = utcnow() - timedelta(days=30)
        assert abs((since - expected).total_seconds()) < 60

    async def test_purchase_orders_use_own_since_param(
        self, session_factory
    ) -> None:
        fetcher = FakeFetcher()
        await make_runner(fetcher, session_factory, "purchase_order").run(
            SyncMode.FULL
        )
        assert fetcher.calls[0]["api_path"] == "/purchaseorders"
        assert fetcher.calls[0]["since_param"] == "updated_since"

    async def test_receipts_filter_on_updated_after(self, session_factory) -> None:
        fetcher = FakeFetcher(
            {"/receipts": [{"idreceipt": 3, "receiptid": "R3", "status": "completed"}]}
        )
        result = await make_runner(fetcher, session_factory, "receipt").run(
            SyncMode.FULL
        )

        assert result.items_saved == 1
        assert fetcher.calls[0]["api_path"] == "/receipts"
        assert fetcher.calls[0]["since_param"] == "updated_after"
        assert await table_count(session_factory, "receipts") == 1


class TestWindowRun:
    """测试时间窗口运行."""

    async def test_drops_old_records_and_stops(self, session_factory) -> None:
        """早于窗口的记录被丢弃，并停止翻页."""
        recent = format_since(utcnow() - timedelta(days=1))
        old = format_since(utcnow() - timedelta(days=30))
        records = [
            {"idpicklist": i, "picklistid": f"P{i}", "updated": recent}
            for i in range(1, 9)
        ]
        records.append({"idpicklist": 9, "picklistid": "P9"})
        records.append({"idpicklist": 10, "picklistid": "P10", "updated": old})
        records += [
            {"idpicklist": i, "picklistid": f"P{i}", "updated": recent}
            for i in range(11, 16)
        ]
        fetcher = FakeFetcher({"/picklists": records})

        result = await make_runner(fetcher, session_factory, "picklist").run(
            SyncMode.WINDOW, window_days=7
        )

        assert result.success is True
        assert fetcher.offsets("/picklists") == [0]
        assert result.items_fetched == 10
        # 无时间字段的记录保留
        assert result.items_saved == 9
        assert await table_count(session_factory, "picklists") == 9

    async def test_requires_positive_window(self, session_factory) -> None:
        result = await make_runner(FakeFetcher(), session_factory).run(
            SyncMode.WINDOW, window_days=0
        )
        assert result.success is False
        assert result.run_id is None


class TestCancel:
    """测试取消."""

    async def test_cancel_marks_run_failed(self, session_factory) -> None:
        fetcher = FakeFetcher({"/warehouses": make_warehouses(30)})
        runner = make_runner(fetcher, session_factory)
        runner.cancel()

        result = await runner.run(SyncMode.FULL)

        assert result.success is False
        assert result.error == "cancelled"
        assert fetcher.calls == []
        async with session_factory() as session:
            progress = await ProgressTracker(session).get(result.run_id)
        assert progress.status == ProgressStatus.FAILED
        assert progress.error_message == "cancelled"

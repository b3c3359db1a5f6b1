import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from investing.exceptions import ProviderError, ProviderErrorKind, StoreWriteError
from investing.schemas.market_data import IngestMode
from investing.schemas.scheduler import (
    CompletedDetail,
    FailedDetail,
    RunLog,
    RunStatus,
    RunTrigger,
    RunType,
)

from fakes import make_history


@pytest.fixture
def scheduler(context):
    return context.scheduler


@pytest.fixture
def seeded(store, source):
    store.add_asset("PETR4")
    store.add_asset("VALE3")
    for ticker in ("PETR4", "VALE3"):
        source.history[f"{ticker}.SA"] = make_history(10)
        source.quotes[f"{ticker}.SA"] = (10.0, 9.5)
    return store


class TestRunLog:
    def test_moves_forward_once(self):
        log = RunLog.started(RunType.DAILY, RunTrigger.TIME_SCHEDULED, IngestMode.HISTORICAL, 7)
        log.complete(duration_ms=1200, records_updated=2, errors=0, total_records=14, success_rate=100.0)

        assert log.status == RunStatus.COMPLETED
        assert isinstance(log.detail, CompletedDetail)
        with pytest.raises(ValueError):
            log.fail(duration_ms=1, message="late")

    def test_detail_round_trips_through_json(self):
        log = RunLog.started(RunType.HOURLY, RunTrigger.ACTIVITY_DETECTED, IngestMode.QUOTES, 1)
        log.fail(duration_ms=5, message="boom")

        restored = RunLog.model_validate_json(log.model_dump_json())
        assert isinstance(restored.detail, FailedDetail)
        assert restored.detail.message == "boom"


class TestRuns:
    def test_daily_run_completes(self, scheduler, seeded):
        log = asyncio.run(scheduler.run_daily())

        assert log.status == RunStatus.COMPLETED
        assert log.run_type == RunType.DAILY
        assert log.trigger == RunTrigger.TIME_SCHEDULED
        assert log.records_updated == 2
        assert log.errors == 0
        assert log.detail.mode == IngestMode.HISTORICAL
        assert log.detail.historical_days == 7
        assert seeded.logs[0].status == RunStatus.COMPLETED
        assert scheduler.get_status()["last_update"] is not None
        assert scheduler.get_status()["is_running"] is False

    def test_failed_run_is_logged_and_notified(self, scheduler, notifier, store):
        # No assets: setup fails
        log = asyncio.run(scheduler.force_update())

        assert log.status == RunStatus.FAILED
        assert "No assets" in log.detail.message
        assert store.logs[0].status == RunStatus.FAILED
        assert len(notifier.sent) == 1
        assert scheduler.state.is_running is False
        assert scheduler.state.last_update is None
        assert log.is_setup_failure
        assert store.logs[0].detail.setup is True

    def test_hourly_skipped_without_activity(self, scheduler, seeded):
        scheduler.heuristic.should_run_hourly = AsyncMock(return_value=False)

        assert asyncio.run(scheduler.run_hourly()) is None
        assert seeded.logs == []

    def test_hourly_runs_quotes(self, scheduler, seeded, source):
        scheduler.heuristic.should_run_hourly = AsyncMock(return_value=True)

        log = asyncio.run(scheduler.run_hourly())

        assert log.trigger == RunTrigger.ACTIVITY_DETECTED
        assert log.detail.mode == IngestMode.QUOTES
        assert source.quote_calls == ["PETR4.SA", "VALE3.SA"]
        assert source.history_calls == []

    def test_partial_failure_still_completes(self, scheduler, seeded, source):
        source.errors["VALE3.SA"] = ProviderError("fake", ProviderErrorKind.NETWORK, "timeout")

        log = asyncio.run(scheduler.run_daily())

        assert log.status == RunStatus.COMPLETED
        assert log.records_updated == 1
        assert log.errors == 1
        assert log.detail.success_rate == 50.0

    def test_hourly_quotes_with_one_provider_error(self, scheduler, seeded, source):
        seeded.add_asset("ITUB4")
        source.errors["ITUB4.SA"] = ProviderError("fake", ProviderErrorKind.NETWORK, "reset by peer")
        scheduler.heuristic.should_run_hourly = AsyncMock(return_value=True)

        log = asyncio.run(scheduler.run_hourly())

        assert log.status == RunStatus.COMPLETED
        assert log.detail.mode == IngestMode.QUOTES
        assert log.records_updated == 2
        assert log.errors == 1
        assert not log.is_setup_failure
        assert seeded.logs[0].status == RunStatus.COMPLETED
        assert sorted(source.quote_calls) == ["ITUB4.SA", "PETR4.SA", "VALE3.SA"]


class TestRunLogPersistence:
    def test_failed_final_write_still_notifies(self, scheduler, store, notifier):
        store.update_run_log = AsyncMock(side_effect=StoreWriteError("db down"))

        log = asyncio.run(scheduler.force_update())

        assert log.status == RunStatus.FAILED
        assert len(notifier.sent) == 1
        assert scheduler.state.is_running is False

    def test_failed_start_write_fails_the_run(self, scheduler, seeded, source, notifier):
        seeded.create_run_log = AsyncMock(side_effect=StoreWriteError("db down"))

        log = asyncio.run(scheduler.run_daily())

        assert log.status == RunStatus.FAILED
        assert log.detail.message == "db down"
        assert not log.is_setup_failure
        assert source.history_calls == []
        assert len(notifier.sent) == 1
        assert scheduler.state.is_running is False

    def test_failed_final_write_after_success_is_not_raised(self, scheduler, seeded, notifier):
        seeded.update_run_log = AsyncMock(side_effect=StoreWriteError("db down"))

        log = asyncio.run(scheduler.run_daily())

        assert log.status == RunStatus.COMPLETED
        assert notifier.sent == []
        assert scheduler.state.is_running is False

    def test_cancelled_run_is_marked_failed(self, scheduler, seeded, source):
        async def scenario():
            source.gate = asyncio.Event()
            task = asyncio.create_task(scheduler.run_daily())
            while not source.history_calls:
                await asyncio.sleep(0)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        assert seeded.logs[0].status == RunStatus.FAILED
        assert seeded.logs[0].detail.message == "Update cancelled"
        assert scheduler.state.is_running is False


class TestSingleFlight:
    def test_concurrent_request_is_rejected(self, scheduler, seeded, source):
        async def scenario():
            source.gate = asyncio.Event()
            first = asyncio.create_task(scheduler.force_update())
            while not source.history_calls:
                await asyncio.sleep(0)

            second = await scheduler.run_daily()
            source.gate.set()
            return await first, second

        first, second = asyncio.run(scenario())

        assert first.status == RunStatus.COMPLETED
        assert second.status == RunStatus.FAILED
        assert second.is_conflict
        assert second.detail.message == "Update already running"
        # The rejected attempt is not persisted
        assert len(seeded.logs) == 1
        assert scheduler.state.is_running is False


class TestTimers:
    def test_start_and_stop_arm_both_timers(self, scheduler):
        async def scenario():
            scheduler.start()
            scheduler.start()
            armed = scheduler.get_status()
            next_runs = scheduler.next_run_times()
            scheduler.stop()
            disarmed = scheduler.get_status()
            paused = scheduler.next_run_times()
            scheduler.shutdown()
            return armed, next_runs, disarmed, paused

        armed, next_runs, disarmed, paused = asyncio.run(scenario())

        assert armed["hourly_armed"] and armed["daily_armed"]
        assert next_runs["hourly"] is not None and next_runs["daily"] is not None
        assert not disarmed["hourly_armed"] and not disarmed["daily_armed"]
        assert paused == {"hourly": None, "daily": None}

    def test_created_disarmed(self, scheduler):
        status = scheduler.get_status()
        assert status == {"is_running": False, "last_update": None, "hourly_armed": False, "daily_armed": False}


class TestStats:
    def _log(self, status, at, duration_ms=2000, records=3):
        log = RunLog.started(RunType.HOURLY, RunTrigger.ACTIVITY_DETECTED, IngestMode.QUOTES, 1, timestamp=at)
        if status == RunStatus.COMPLETED:
            log.complete(duration_ms, records, 0, records, 100.0)
        else:
            log.fail(duration_ms, "boom")
        return log

    def test_success_rate_over_last_24h(self, scheduler, store):
        now = datetime(2026, 3, 10, 12, 0)

        async def seed():
            for i in range(7):
                await store.create_run_log(self._log(RunStatus.COMPLETED, now - timedelta(hours=i + 1)))
            for i in range(3):
                await store.create_run_log(self._log(RunStatus.FAILED, now - timedelta(hours=i + 10)))
            await store.create_run_log(self._log(RunStatus.FAILED, now - timedelta(hours=30)))
            return await scheduler.get_stats(now)

        stats = asyncio.run(seed())

        assert stats["last_24h"] == {"total": 10, "successful": 7, "failed": 3, "success_rate": 70}
        assert stats["average_duration"] == 2
        assert stats["total_records_updated"] == 21

    def test_empty_window(self, scheduler):
        stats = asyncio.run(scheduler.get_stats(datetime(2026, 3, 10, 12, 0)))
        assert stats["last_24h"]["success_rate"] == 0
        assert stats["average_duration"] == 0

    def test_logs_newest_first(self, scheduler, store):
        now = datetime(2026, 3, 10, 12, 0)

        async def scenario():
            await store.create_run_log(self._log(RunStatus.COMPLETED, now - timedelta(hours=2)))
            await store.create_run_log(self._log(RunStatus.FAILED, now - timedelta(hours=1)))
            return await scheduler.get_logs(limit=1)

        logs = asyncio.run(scenario())
        assert len(logs) == 1
        assert logs[0].status == RunStatus.FAILED

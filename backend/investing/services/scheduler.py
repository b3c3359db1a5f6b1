"""Automatic market-data refresh scheduling.

Two cron timers drive the refresh: an hourly one gated by the activity
heuristic (quotes only) and a daily one that always runs a short historical
catch-up. Manual runs share the same single-flight guard; a run requested
while another is in progress is rejected, never queued.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from ..config import Settings
from ..exceptions import RunSetupError
from ..schemas.market_data import IngestMode
from ..schemas.scheduler import RunLog, RunStatus, RunTrigger, RunType
from .activity import ActivityHeuristic
from .ingestion import IngestionEngine, IngestOptions
from .notifier import WebhookNotifier
from .store import Store

logger = logging.getLogger(__name__)

HOURLY_JOB = "hourly"
DAILY_JOB = "daily"
ALREADY_RUNNING = "Update already running"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@dataclass
class SchedulerRuntimeState:
    is_running: bool = False
    last_update: Optional[datetime] = None
    hourly_armed: bool = False
    daily_armed: bool = False


class AutoUpdateScheduler:
    def __init__(
        self,
        engine: IngestionEngine,
        heuristic: ActivityHeuristic,
        store: Store,
        notifier: WebhookNotifier,
        settings: Settings,
    ):
        self.engine = engine
        self.heuristic = heuristic
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self.state = SchedulerRuntimeState()
        self._scheduler = AsyncIOScheduler(timezone=settings.scheduler_timezone)

    # --- Timers ---

    def _ensure_started(self) -> None:
        # Jobs are added paused so a started APScheduler never fires disarmed timers
        if self._scheduler.running:
            return
        self._scheduler.add_job(
            self.run_hourly,
            CronTrigger(minute=self.settings.hourly_cron_minute, timezone=self.settings.scheduler_timezone),
            id=HOURLY_JOB,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=None,
        )
        self._scheduler.add_job(
            self.run_daily,
            CronTrigger(
                hour=self.settings.daily_cron_hour,
                minute=self.settings.daily_cron_minute,
                timezone=self.settings.scheduler_timezone,
            ),
            id=DAILY_JOB,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            next_run_time=None,
        )
        self._scheduler.start()

    def start(self) -> None:
        """Arm both timers. Needs a running event loop; repeated calls are no-ops."""
        if self.state.hourly_armed and self.state.daily_armed:
            return
        self._ensure_started()
        self._scheduler.resume_job(HOURLY_JOB)
        self._scheduler.resume_job(DAILY_JOB)
        self.state.hourly_armed = True
        self.state.daily_armed = True
        logger.info(
            f"Auto-update scheduler started (hourly at :{self.settings.hourly_cron_minute:02d}, "
            f"daily at {self.settings.daily_cron_hour:02d}:{self.settings.daily_cron_minute:02d} "
            f"{self.settings.scheduler_timezone})"
        )

    def stop(self) -> None:
        if not (self.state.hourly_armed or self.state.daily_armed):
            return
        self._scheduler.pause_job(HOURLY_JOB)
        self._scheduler.pause_job(DAILY_JOB)
        self.state.hourly_armed = False
        self.state.daily_armed = False
        logger.info("Auto-update scheduler stopped")

    def shutdown(self) -> None:
        self.state.hourly_armed = False
        self.state.daily_armed = False
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)

    def next_run_times(self) -> dict:
        times = {}
        for job_id in (HOURLY_JOB, DAILY_JOB):
            job = self._scheduler.get_job(job_id) if self._scheduler.running else None
            times[job_id] = job.next_run_time.isoformat() if job and job.next_run_time else None
        return times

    # --- Runs ---

    async def run_hourly(self) -> Optional[RunLog]:
        if not await self.heuristic.should_run_hourly():
            logger.info("No recent activity outside business hours, hourly update skipped")
            return None
        return await self._execute(
            RunType.HOURLY, RunTrigger.ACTIVITY_DETECTED, IngestMode.QUOTES, self.settings.hourly_historical_days
        )

    async def run_daily(self) -> RunLog:
        return await self._execute(
            RunType.DAILY, RunTrigger.TIME_SCHEDULED, IngestMode.HISTORICAL, self.settings.daily_historical_days
        )

    async def force_update(self) -> RunLog:
        return await self._execute(
            RunType.MANUAL, RunTrigger.FORCED, IngestMode.HISTORICAL, self.settings.hourly_historical_days
        )

    async def _execute(self, run_type: RunType, trigger: RunTrigger, mode: IngestMode, days: int) -> RunLog:
        log = RunLog.started(run_type, trigger, mode, days)

        # Check-and-set with no await in between
        if self.state.is_running:
            logger.warning(f"{run_type.value} update rejected: another update is running")
            log.fail(duration_ms=0, message=ALREADY_RUNNING, conflict=True)
            return log
        self.state.is_running = True

        started = time.monotonic()
        try:
            try:
                await self.store.create_run_log(log)
                logger.info(f"Starting {run_type.value} update (trigger={trigger.value}, mode={mode.value}, days={days})")
                options = IngestOptions(historical_days=days) if mode == IngestMode.HISTORICAL else IngestOptions()
                result = await self.engine.ingest(mode=mode, options=options)
            except asyncio.CancelledError:
                log.fail(duration_ms=_elapsed_ms(started), message="Update cancelled")
                logger.warning(f"{run_type.value} update cancelled after {log.duration_ms}ms")
                await self._save_log(log)
                raise
            except Exception as e:
                message = str(e) or e.__class__.__name__
                log.fail(duration_ms=_elapsed_ms(started), message=message, setup=isinstance(e, RunSetupError))
                logger.error(f"{run_type.value} update failed after {log.duration_ms}ms: {message}")
                await self._save_log(log)
                await self.notifier.notify_failure(log, message)
                return log

            log.complete(
                duration_ms=_elapsed_ms(started),
                records_updated=len(result.successful),
                errors=len(result.failed),
                total_records=result.total_records,
                success_rate=result.success_rate,
            )
            await self._save_log(log)
            self.state.last_update = datetime.utcnow()
            logger.info(
                f"{run_type.value} update completed in {round(log.duration_ms / 1000)}s: "
                f"{log.records_updated} updated, {log.errors} errors"
            )
            return log
        finally:
            self.state.is_running = False

    async def _save_log(self, log: RunLog) -> None:
        """Write the final state of a run; store failures are logged, not raised."""
        try:
            if log.id is None:
                await self.store.create_run_log(log)
            else:
                await self.store.update_run_log(log)
        except Exception as e:
            logger.error(f"Could not persist {log.run_type.value} run log ({log.status.value}): {e}")

    # --- Reporting ---

    def get_status(self) -> dict:
        status = asdict(self.state)
        status["last_update"] = self.state.last_update.isoformat() if self.state.last_update else None
        return status

    async def get_logs(self, limit: int = 20) -> list[RunLog]:
        return await self.store.list_run_logs(limit=limit)

    async def get_stats(self, now: Optional[datetime] = None) -> dict:
        """Aggregates over the run logs of the trailing 24 hours."""
        now = now or datetime.utcnow()
        logs = await self.store.list_run_logs(limit=None, since=now - timedelta(hours=24))

        completed = [log for log in logs if log.status == RunStatus.COMPLETED]
        failed = [log for log in logs if log.status == RunStatus.FAILED]
        durations = [log.duration_ms for log in completed if log.duration_ms is not None]
        return {
            "last_24h": {
                "total": len(logs),
                "successful": len(completed),
                "failed": len(failed),
                "success_rate": round(len(completed) / len(logs) * 100) if logs else 0,
            },
            "average_duration": round(sum(durations) / len(durations) / 1000) if durations else 0,
            "total_records_updated": sum(log.records_updated or 0 for log in completed),
        }

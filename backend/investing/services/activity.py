import logging
from datetime import datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from ..config import Settings
from .store import Store

logger = logging.getLogger(__name__)


class ActivityHeuristic:
    """Decides whether the hourly refresh is worth running."""

    def __init__(self, store: Store, settings: Settings):
        self.store = store
        self.settings = settings
        self.tz = ZoneInfo(settings.scheduler_timezone)

    def is_business_hours(self, now: datetime) -> bool:
        hour = now.astimezone(self.tz).hour
        return self.settings.business_hours_start <= hour <= self.settings.business_hours_end

    async def should_run_hourly(self, now: Optional[datetime] = None) -> bool:
        """True during business hours, otherwise only when users were recently active.

        ``now`` must be timezone-aware; defaults to the current time.
        Any store failure answers False.
        """
        now = now or datetime.now(self.tz)
        # Store timestamps are naive UTC
        utc_now = now.astimezone(ZoneInfo("UTC")).replace(tzinfo=None)
        try:
            counts = await self.store.count_recent_activity(
                users_since=utc_now - timedelta(minutes=self.settings.active_user_window_minutes),
                transactions_since=utc_now - timedelta(minutes=self.settings.transaction_window_minutes),
                simulations_since=utc_now - timedelta(minutes=self.settings.simulation_window_minutes),
            )
        except Exception as e:
            logger.error(f"Activity check failed, skipping hourly update: {e}")
            return False

        business_hours = self.is_business_hours(now)
        should_run = business_hours or counts.any
        logger.info(
            f"Activity check: users={counts.users}, transactions={counts.transactions}, "
            f"simulations={counts.simulations}, business_hours={business_hours} -> run={should_run}"
        )
        return should_run

import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Optional

from ..config import Settings
from ..exceptions import ConcurrencyConflict, RunSetupError
from ..models.asset import Currency
from ..schemas.market_data import IngestMode
from .ingestion import IngestionEngine, IngestOptions, Window, classify
from .quote_source import to_provider_symbol
from .store import AssetRecord, Store

logger = logging.getLogger(__name__)


@dataclass
class LoadResults:
    successful: list[dict] = field(default_factory=list)
    failed: list[dict] = field(default_factory=list)
    total_records: int = 0


@dataclass
class LoadStatus:
    is_running: bool = False
    cancel_requested: bool = False
    progress: int = 0
    current_asset: str = ""
    total_assets: int = 0
    processed_assets: int = 0
    errors: list[str] = field(default_factory=list)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    results: LoadResults = field(default_factory=LoadResults)


def years_before(day: date, years: int) -> date:
    try:
        return day.replace(year=day.year - years)
    except ValueError:  # Feb 29
        return day.replace(year=day.year - years, day=28)


class FullHistoryLoader:
    """Background loader for multi-decade daily history, one asset at a time."""

    def __init__(self, engine: IngestionEngine, store: Store, settings: Settings, sleep=asyncio.sleep):
        self.engine = engine
        self.store = store
        self.settings = settings
        self._sleep = sleep
        self._status = LoadStatus()
        self._task: Optional[asyncio.Task] = None

    def status(self) -> dict:
        snapshot = asdict(self._status)
        snapshot["start_time"] = self._status.start_time.isoformat() if self._status.start_time else None
        snapshot["end_time"] = self._status.end_time.isoformat() if self._status.end_time else None
        return snapshot

    async def start(
        self,
        currency: Optional[Currency] = None,
        years_back: Optional[int] = None,
        replace_existing: bool = False,
    ) -> dict:
        if self._status.is_running:
            raise ConcurrencyConflict("Full history load already running")

        years_back = years_back or self.settings.full_history_years
        assets = await self.store.list_assets(currency=currency)
        if not assets:
            raise RunSetupError(f"No assets found (currency={Currency(currency).value if currency else 'all'})")

        # Re-check after the await; start() may have been called twice concurrently
        if self._status.is_running:
            raise ConcurrencyConflict("Full history load already running")
        self._status = LoadStatus(is_running=True, total_assets=len(assets), start_time=datetime.utcnow())

        end = date.today()
        window = self.engine.resolve_window(
            IngestMode.HISTORICAL, IngestOptions(start=years_before(end, years_back), end=end)
        )
        self._task = asyncio.create_task(self._run(assets, window, replace_existing))
        logger.info(f"Full history load started for {len(assets)} assets ({window.start} to {window.end})")
        return {
            "total_assets": len(assets),
            "period": {"start": window.start.isoformat(), "end": window.end.isoformat()},
        }

    def cancel(self) -> dict:
        """Stop after the ticker in progress."""
        if not self._status.is_running:
            raise RunSetupError("No full history load in progress")
        self._status.cancel_requested = True
        logger.info("Full history load cancellation requested")
        return self.status()

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def _run(self, assets: list[AssetRecord], window: Window, replace_existing: bool) -> None:
        status = self._status
        try:
            for i, asset in enumerate(assets):
                if status.cancel_requested:
                    logger.info(f"Full history load cancelled after {status.processed_assets} assets")
                    break
                status.current_asset = asset.ticker
                status.progress = round(i / len(assets) * 100)
                await self._load_asset(asset, window, replace_existing)
                status.processed_assets += 1
                if i < len(assets) - 1:
                    await self._sleep(self.settings.full_history_asset_delay)
        finally:
            status.is_running = False
            status.current_asset = ""
            status.end_time = datetime.utcnow()
            if not status.cancel_requested:
                status.progress = 100
            logger.info(
                f"Full history load finished: {len(status.results.successful)} ok, "
                f"{len(status.results.failed)} failed, {status.results.total_records} records"
            )

    async def _load_asset(self, asset: AssetRecord, window: Window, replace_existing: bool) -> None:
        results = self._status.results
        try:
            if not replace_existing:
                existing = await self.store.count_bars(asset.ticker)
                if existing > self.settings.full_history_skip_threshold:
                    logger.info(f"{asset.ticker} already has {existing} bars, skipping")
                    results.successful.append({
                        "ticker": asset.ticker,
                        "name": asset.name,
                        "message": f"Skipped - already has {existing} records",
                        "records": existing,
                    })
                    return

            success = await self.engine.ingest_history(
                asset,
                window,
                replace_existing,
                chunk_size=self.settings.full_history_chunk_size,
                timeout=self.settings.full_history_write_timeout,
            )
        except Exception as e:
            message = str(e) or e.__class__.__name__
            logger.warning(f"{asset.ticker} full history load failed: {message}")
            results.failed.append({
                "ticker": asset.ticker,
                "name": asset.name,
                "provider_symbol": to_provider_symbol(asset.ticker),
                "error": message,
                "kind": classify(e).value,
            })
            self._status.errors.append(f"{asset.ticker}: {message}")
            return

        results.successful.append({
            "ticker": asset.ticker,
            "name": asset.name,
            "currency": asset.currency,
            "provider_symbol": success.provider_symbol,
            "records": asdict(success.records),
        })
        results.total_records += success.records.processed
        logger.info(f"{asset.ticker}: {success.records.processed} bars stored ({success.records.errors} errors)")

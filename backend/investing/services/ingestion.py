"""Bulk market-data ingestion.

Tickers are processed in sequential batches. Inside a batch every ticker is
fetched concurrently and joined with settle-all semantics, so one failing
ticker never drops its siblings. A delay between batches keeps the provider's
implicit rate limit.
"""
import asyncio
import logging
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Optional

from ..config import Settings
from ..exceptions import NotFoundError, ProviderError, RunSetupError, StoreWriteError
from ..models.asset import Currency
from ..schemas.market_data import IngestMode
from .quote_cache import HistoricalCache, QuoteCache
from .quote_source import HistoricalBar, QuoteSource, to_provider_symbol
from .store import AssetRecord, PriceBarRecord, Store, to_price

logger = logging.getLogger(__name__)


class FailureKind(str, Enum):
    NOT_FOUND = "not_found"
    PROVIDER = "provider"
    STORE = "store"
    UNKNOWN = "unknown"


@dataclass
class IngestOptions:
    currency: Optional[Currency] = None
    historical_days: Optional[int] = None
    years_back: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    replace_existing: bool = False
    batch_size: Optional[int] = None
    delay_between_batches: Optional[float] = None  # seconds


@dataclass
class RecordCounts:
    found: int = 0
    processed: int = 0
    errors: int = 0


@dataclass
class TickerSuccess:
    ticker: str
    provider_symbol: str
    name: str
    currency: str
    records: RecordCounts
    source: str = "provider"
    message: str = ""


@dataclass
class TickerFailure:
    ticker: str
    provider_symbol: str
    name: str
    error: str
    kind: FailureKind


@dataclass
class RunResult:
    mode: IngestMode
    started_at: datetime
    finished_at: Optional[datetime] = None
    historical_days: Optional[int] = None
    total: int = 0
    successful: list[TickerSuccess] = field(default_factory=list)
    failed: list[TickerFailure] = field(default_factory=list)
    total_records: int = 0
    batch_size: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.finished_at or datetime.utcnow()
        return (end - self.started_at).total_seconds()

    @property
    def success_rate(self) -> float:
        if not self.total:
            return 0.0
        return round(len(self.successful) / self.total * 100, 2)

    def summary(self) -> dict:
        duration = self.duration_seconds
        return {
            "mode": self.mode.value,
            "historical_days": self.historical_days,
            "success_rate": self.success_rate,
            "total_records": self.total_records,
            "records_per_second": round(self.total_records / duration) if duration > 0 else self.total_records,
            "batch_size": self.batch_size,
        }

    def to_dict(self) -> dict:
        return {
            "successful": [asdict(s) for s in self.successful],
            "failed": [{**asdict(f), "kind": f.kind.value} for f in self.failed],
            "total_records": self.total_records,
            "total": self.total,
            "start_time": self.started_at.isoformat(),
            "end_time": self.finished_at.isoformat() if self.finished_at else None,
            "duration": f"{round(self.duration_seconds)}s",
            "summary": self.summary(),
        }


def plan_batching(mode: IngestMode, days: Optional[int]) -> tuple[int, float]:
    """Batch size and inter-batch delay (seconds); longer windows get smaller batches."""
    if mode == IngestMode.QUOTES:
        return 10, 2.0
    days = days or 0
    if days > 3650:
        return 2, 8.0
    if days > 730:
        return 3, 5.0
    return 8, 3.0


def chunked(items: list, size: int) -> list[list]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def classify(exc: BaseException) -> FailureKind:
    if isinstance(exc, NotFoundError):
        return FailureKind.NOT_FOUND
    if isinstance(exc, ProviderError):
        return FailureKind.PROVIDER
    if isinstance(exc, StoreWriteError):
        return FailureKind.STORE
    return FailureKind.UNKNOWN


def bars_from_history(ticker: str, history: list[HistoricalBar]) -> list[PriceBarRecord]:
    return [
        PriceBarRecord(
            ticker=ticker,
            date=bar.date,
            open=to_price(bar.open),
            high=to_price(bar.high),
            low=to_price(bar.low),
            close=to_price(bar.close),
            volume=bar.volume,
        )
        for bar in history
    ]


def bar_from_quote(ticker: str, price: float, previous_close: Optional[float], on: date) -> PriceBarRecord:
    """Approximate a day's bar from a live quote."""
    return PriceBarRecord(
        ticker=ticker,
        date=on,
        open=to_price(previous_close if previous_close is not None else price),
        high=to_price(price),
        low=to_price(price),
        close=to_price(price),
    )


@dataclass
class Window:
    start: date
    end: date
    days: int


class IngestionEngine:
    def __init__(
        self,
        store: Store,
        source: QuoteSource,
        quote_cache: QuoteCache,
        historical_cache: HistoricalCache,
        settings: Settings,
        sleep=asyncio.sleep,
    ):
        self.store = store
        self.source = source
        self.quote_cache = quote_cache
        self.historical_cache = historical_cache
        self.settings = settings
        self._sleep = sleep

    # --- Setup ---

    def _resolve_mode(self, mode) -> IngestMode:
        try:
            return IngestMode(mode)
        except ValueError:
            raise RunSetupError(f"Unsupported ingestion mode: {mode}")

    def resolve_window(self, mode: IngestMode, options: IngestOptions) -> Optional[Window]:
        if mode == IngestMode.QUOTES and options.start is None and options.historical_days is None:
            return None

        end = options.end or date.today()
        if options.start is not None:
            start = options.start
        else:
            days = options.historical_days
            if days is None and options.years_back is not None:
                days = options.years_back * 365
            if days is None:
                raise RunSetupError("Historical mode needs historical_days, years_back or a start date")
            if days <= 0:
                raise RunSetupError(f"Historical window must be positive, got {days} days")
            start = end - timedelta(days=days)
        if start > end:
            raise RunSetupError(f"Window start {start} is after end {end}")
        return Window(start=start, end=end, days=(end - start).days)

    async def _resolve_assets(self, tickers: Optional[list[str]], options: IngestOptions) -> list[AssetRecord]:
        assets = await self.store.list_assets(currency=options.currency, tickers=tickers)
        if not assets:
            raise RunSetupError(
                f"No assets found (currency={Currency(options.currency).value if options.currency else 'all'}"
                f"{', tickers=' + ','.join(tickers) if tickers else ''})"
            )
        return assets

    # --- Run ---

    async def ingest(
        self,
        tickers: Optional[list[str]] = None,
        mode: IngestMode | str = IngestMode.QUOTES,
        options: Optional[IngestOptions] = None,
    ) -> RunResult:
        options = options or IngestOptions()
        mode = self._resolve_mode(mode)
        window = self.resolve_window(mode, options)
        assets = await self._resolve_assets(tickers, options)

        batch_size, delay = plan_batching(mode, window.days if window else None)
        if options.batch_size:
            batch_size = options.batch_size
        if options.delay_between_batches is not None:
            delay = options.delay_between_batches

        result = RunResult(
            mode=mode,
            started_at=datetime.utcnow(),
            historical_days=window.days if window else None,
            total=len(assets),
            batch_size=batch_size,
        )
        batches = chunked(assets, batch_size)
        logger.info(
            f"Ingesting {len(assets)} assets (mode={mode.value}, days={result.historical_days}, "
            f"batches={len(batches)}x{batch_size})"
        )

        for number, batch in enumerate(batches, start=1):
            logger.info(f"Batch {number}/{len(batches)}: {', '.join(a.ticker for a in batch)}")
            outcomes = await asyncio.gather(
                *(self._ingest_one(asset, mode, window, options) for asset in batch),
                return_exceptions=True,
            )
            for asset, outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if isinstance(outcome, asyncio.CancelledError):
                        raise outcome
                    failure = TickerFailure(
                        ticker=asset.ticker,
                        provider_symbol=to_provider_symbol(asset.ticker),
                        name=asset.name,
                        error=str(outcome) or outcome.__class__.__name__,
                        kind=classify(outcome),
                    )
                    logger.warning(f"{asset.ticker} failed ({failure.kind.value}): {failure.error}")
                    result.failed.append(failure)
                else:
                    result.successful.append(outcome)
                    result.total_records += outcome.records.processed

            if number < len(batches) and delay > 0:
                await self._sleep(delay)

        result.finished_at = datetime.utcnow()
        logger.info(
            f"Ingestion finished: {len(result.successful)} ok, {len(result.failed)} failed, "
            f"{result.total_records} records in {result.duration_seconds:.1f}s"
        )
        return result

    async def _ingest_one(
        self, asset: AssetRecord, mode: IngestMode, window: Optional[Window], options: IngestOptions
    ) -> TickerSuccess:
        if mode == IngestMode.QUOTES:
            return await self.refresh_quote(asset)
        return await self.ingest_history(asset, window, options.replace_existing)

    # --- Per ticker ---

    async def get_quote(self, asset: AssetRecord) -> tuple[dict, bool]:
        """Quote payload for an asset, from the cache when fresh."""
        cached = self.quote_cache.get(asset.ticker)
        if cached is not None:
            return cached, True
        symbol = to_provider_symbol(asset.ticker)
        quote = await self.source.fetch_quote(symbol)
        payload = {
            **quote.to_dict(),
            "ticker": asset.ticker,
            "provider_symbol": symbol,
            "name": quote.name or asset.name,
            "currency": quote.currency or asset.currency,
        }
        self.quote_cache.set(asset.ticker, payload, self.settings.quote_cache_ttl)
        return payload, False

    async def save_quote_bar(self, ticker: str, payload: dict) -> int:
        """Upsert today's bar from a quote payload."""
        bar = bar_from_quote(ticker, payload["price"], payload.get("previous_close"), date.today())
        return await self._write(self.store.upsert_bars([bar]), self.settings.store_write_timeout)

    async def refresh_quote(self, asset: AssetRecord) -> TickerSuccess:
        payload, cached = await self.get_quote(asset)
        processed = await self.save_quote_bar(asset.ticker, payload)
        return TickerSuccess(
            ticker=asset.ticker,
            provider_symbol=payload["provider_symbol"],
            name=asset.name,
            currency=asset.currency,
            records=RecordCounts(found=1, processed=processed),
            source="cache" if cached else "provider",
            message=f"Quote {payload['price']:.2f} {payload.get('currency') or ''}".strip(),
        )

    async def fetch_history(self, asset: AssetRecord, window: Window) -> tuple[list[HistoricalBar], bool]:
        cacheable = window.end == date.today()
        if cacheable:
            cached = self.historical_cache.get(asset.ticker, window.days)
            if cached is not None:
                return cached, True
        history = await self.source.fetch_historical(to_provider_symbol(asset.ticker), window.start, window.end)
        if not history:
            raise NotFoundError(self.source.name, f"No historical data for {to_provider_symbol(asset.ticker)}")
        if cacheable:
            self.historical_cache.set(asset.ticker, window.days, history)
        return history, False

    async def ingest_history(
        self,
        asset: AssetRecord,
        window: Window,
        replace_existing: bool = False,
        chunk_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> TickerSuccess:
        history, cached = await self.fetch_history(asset, window)
        bars = bars_from_history(asset.ticker, history)
        processed, errors = await self.write_bars(asset.ticker, bars, replace_existing, chunk_size, timeout)
        if bars and processed == 0:
            raise StoreWriteError(f"None of {len(bars)} bars for {asset.ticker} could be stored")
        return TickerSuccess(
            ticker=asset.ticker,
            provider_symbol=to_provider_symbol(asset.ticker),
            name=asset.name,
            currency=asset.currency,
            records=RecordCounts(found=len(bars), processed=processed, errors=errors),
            source="cache" if cached else "provider",
            message=f"{processed} records processed",
        )

    # --- Writes ---

    async def _write(self, coro, timeout: float) -> int:
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise StoreWriteError(f"Store write timed out after {timeout}s")

    async def write_bars(
        self,
        ticker: str,
        bars: list[PriceBarRecord],
        replace_existing: bool = False,
        chunk_size: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> tuple[int, int]:
        """Persist bars for one ticker; returns (processed, errors).

        With replace_existing the ticker's rows are deleted and a single bulk
        insert is attempted. If that fails, rows go through keyed upserts in
        small transactional chunks. A failed chunk counts as record errors.

        The timeout only bounds the wait here; the store call keeps running on
        its executor thread. On PostgreSQL the engine also carries a
        statement_timeout no longer than the write timeouts, so an abandoned
        statement is cancelled server-side instead of committing late. Other
        backends have no such cap, and a chunk reported as failed may still land.
        """
        timeout = timeout or self.settings.store_write_timeout
        if replace_existing:
            deleted = await self._write(self.store.delete_bars(ticker), timeout)
            logger.info(f"{ticker}: removed {deleted} existing bars")
            if chunk_size is None:
                try:
                    inserted = await self._write(self.store.insert_bars(bars), timeout)
                    return inserted, 0
                except StoreWriteError as e:
                    logger.warning(f"{ticker}: bulk insert failed, falling back to upserts: {e}")
                chunk_size = self.settings.fallback_chunk_size

        chunk_size = chunk_size or self.settings.upsert_chunk_size
        processed = 0
        errors = 0
        for chunk in chunked(bars, chunk_size):
            try:
                processed += await self._write(self.store.upsert_bars(chunk), timeout)
            except StoreWriteError as e:
                errors += len(chunk)
                logger.error(f"{ticker}: chunk {chunk[0].date}..{chunk[-1].date} failed: {e}")
        return processed, errors

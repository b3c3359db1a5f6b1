import logging
from datetime import date, datetime, timedelta
from typing import Optional

from ..exceptions import NotFoundError, ProviderError, RunSetupError, StoreWriteError
from ..schemas.market_data import IngestMode
from .ingestion import IngestionEngine, IngestOptions
from .quote_source import to_provider_symbol
from .store import AssetRecord

logger = logging.getLogger(__name__)

MAX_QUOTES_PER_REQUEST = 20
MAX_WARM_UP = 10
DEFAULT_HISTORY_YEARS = 2


class QuoteService:
    """Read paths for single tickers: live quotes and per-ticker history."""

    def __init__(self, engine: IngestionEngine):
        self.engine = engine
        self.store = engine.store
        self.quote_cache = engine.quote_cache

    async def _require_asset(self, ticker: str) -> AssetRecord:
        asset = await self.store.get_asset(ticker)
        if asset is None:
            raise NotFoundError("store", f"Asset {ticker} not found")
        return asset

    async def get_quote(self, ticker: str) -> dict:
        """
        Quote for one ticker.
        1. Fresh cache entry
        2. Provider, then today's bar is upserted
        3. Latest stored bar when the provider fails
        """
        ticker = ticker.upper()
        cached = self.quote_cache.get(ticker)
        if cached is not None:
            return {**cached, "source": "cache", "cached": True}

        asset = await self._require_asset(ticker)
        try:
            payload, _ = await self.engine.get_quote(asset)
        except ProviderError as e:
            logger.warning(f"Provider quote failed for {ticker}, trying stored prices: {e}")
            latest = await self.store.latest_bar(ticker)
            if latest is None:
                raise
            return {
                "ticker": ticker,
                "provider_symbol": to_provider_symbol(ticker),
                "name": asset.name,
                "price": float(latest.close),
                "previous_close": None,
                "change": None,
                "change_percent": None,
                "currency": asset.currency,
                "as_of": datetime.combine(latest.date, datetime.min.time()).isoformat(),
                "source": "local-cache",
                "cached": False,
                "warning": "Data from local storage, may be outdated",
            }

        try:
            await self.engine.save_quote_bar(ticker, payload)
        except StoreWriteError as e:
            logger.warning(f"Could not store today's bar for {ticker}: {e}")
        return {**payload, "source": self.engine.source.name, "cached": False}

    async def get_quotes(self, tickers: list[str]) -> dict:
        if not tickers:
            raise RunSetupError("At least one ticker is required")
        if len(tickers) > MAX_QUOTES_PER_REQUEST:
            raise RunSetupError(f"Maximum {MAX_QUOTES_PER_REQUEST} tickers allowed per request")

        results = []
        errors = []
        for ticker in tickers:
            try:
                results.append(await self.get_quote(ticker))
            except (NotFoundError, ProviderError) as e:
                errors.append({"ticker": ticker.upper(), "error": str(e)})
        return {
            "results": results,
            "errors": errors,
            "summary": {"total": len(tickers), "successful": len(results), "failed": len(errors)},
        }

    async def warm_up(self, tickers: list[str]) -> dict:
        """Pre-load the quote cache; only the first ten tickers are processed."""
        results = []
        errors = []
        for ticker in tickers[:MAX_WARM_UP]:
            try:
                quote = await self.get_quote(ticker)
                results.append({"ticker": ticker.upper(), "cached": not quote["cached"], "success": True})
            except (NotFoundError, ProviderError) as e:
                errors.append({"ticker": ticker.upper(), "error": str(e)})
        return {
            "requested": len(tickers),
            "processed": len(results) + len(errors),
            "successful": len(results),
            "failed": len(errors),
            "results": results,
            "errors": errors,
        }

    async def load_history(
        self,
        ticker: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
        replace_existing: bool = False,
    ) -> dict:
        """Fetch and store one ticker's history; defaults to the last two years."""
        asset = await self._require_asset(ticker.upper())
        end = end or date.today()
        start = start or end - timedelta(days=DEFAULT_HISTORY_YEARS * 365)
        window = self.engine.resolve_window(IngestMode.HISTORICAL, IngestOptions(start=start, end=end))
        success = await self.engine.ingest_history(asset, window, replace_existing)
        return {
            "ticker": asset.ticker,
            "provider_symbol": success.provider_symbol,
            "period": {"start": window.start.isoformat(), "end": window.end.isoformat()},
            "records": {
                "found": success.records.found,
                "processed": success.records.processed,
                "errors": success.records.errors,
            },
        }

    async def stored_history(self, ticker: str, days: int = 30) -> dict:
        ticker = ticker.upper()
        if days <= 0:
            raise RunSetupError("days must be positive")
        since = date.today() - timedelta(days=days)
        bars = await self.store.list_bars(ticker, since=since)
        return {
            "ticker": ticker,
            "period": f"{days} days",
            "count": len(bars),
            "data": [bar.to_dict() for bar in bars],
        }

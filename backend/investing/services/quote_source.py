import asyncio
import logging
import re
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta
from typing import Optional, Protocol

from ..exceptions import NotFoundError, ProviderError, ProviderErrorKind

logger = logging.getLogger(__name__)

# B3 tickers: four letters + share class digits (PETR4, BOVA11)
_B3_TICKER = re.compile(r"[A-Z]{4}[0-9]{1,2}")
B3_SUFFIX = ".SA"


def to_provider_symbol(ticker: str) -> str:
    """Translate an asset ticker into the provider's symbol."""
    if _B3_TICKER.fullmatch(ticker):
        return f"{ticker}{B3_SUFFIX}"
    return ticker


@dataclass
class Quote:
    symbol: str
    price: float
    previous_close: Optional[float]
    change: Optional[float]
    change_percent: Optional[float]
    currency: Optional[str]
    as_of: datetime
    name: Optional[str] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["as_of"] = self.as_of.isoformat()
        return data


@dataclass
class HistoricalBar:
    date: date
    open: Optional[float]
    high: Optional[float]
    low: Optional[float]
    close: Optional[float]
    volume: Optional[int] = None


class QuoteSource(Protocol):
    name: str

    async def fetch_quote(self, symbol: str) -> Quote:
        raise NotImplementedError

    async def fetch_historical(
        self, symbol: str, start: date, end: date, interval: str = "1d"
    ) -> list[HistoricalBar]:
        raise NotImplementedError


def _float_or_none(value) -> Optional[float]:
    if value is None:
        return None
    value = float(value)
    if value != value:  # NaN
        return None
    return value


class YahooQuoteSource:
    """Yahoo Finance via yfinance. Blocking calls run in the default executor."""

    name = "yahoo"

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    async def fetch_quote(self, symbol: str) -> Quote:
        return await self._run(self._fetch_quote, symbol)

    async def fetch_historical(
        self, symbol: str, start: date, end: date, interval: str = "1d"
    ) -> list[HistoricalBar]:
        return await self._run(self._fetch_historical, symbol, start, end, interval)

    def _fetch_quote(self, symbol: str) -> Quote:
        import yfinance as yf

        try:
            ticker = yf.Ticker(symbol)
            hist = ticker.history(period="5d")
        except Exception as e:
            raise ProviderError(self.name, ProviderErrorKind.NETWORK, f"Quote request failed for {symbol}: {e}", e) from e

        if hist is None or hist.empty:
            raise NotFoundError(self.name, f"No quote data for {symbol}")

        closes = hist["Close"].dropna()
        if closes.empty:
            raise ProviderError(self.name, ProviderErrorKind.PARSE, f"Quote for {symbol} has no close price")

        price = float(closes.iloc[-1])
        previous_close = float(closes.iloc[-2]) if len(closes) > 1 else None
        change = price - previous_close if previous_close is not None else None
        change_percent = (
            change / previous_close * 100 if previous_close else None
        )

        currency = None
        try:
            currency = ticker.fast_info.get("currency")
        except Exception as e:
            logger.debug(f"Currency lookup failed for {symbol}: {e}")

        as_of = closes.index[-1].to_pydatetime()
        return Quote(
            symbol=symbol,
            price=price,
            previous_close=previous_close,
            change=change,
            change_percent=change_percent,
            currency=currency,
            as_of=as_of,
        )

    def _fetch_historical(self, symbol: str, start: date, end: date, interval: str) -> list[HistoricalBar]:
        import yfinance as yf

        try:
            # yfinance treats end as exclusive
            df = yf.Ticker(symbol).history(
                start=start.isoformat(),
                end=(end + timedelta(days=1)).isoformat(),
                interval=interval,
                auto_adjust=False,
            )
        except Exception as e:
            raise ProviderError(self.name, ProviderErrorKind.NETWORK, f"Historical request failed for {symbol}: {e}", e) from e

        if df is None or df.empty:
            raise NotFoundError(self.name, f"No historical data for {symbol}")

        bars = []
        for ts, row in df.iterrows():
            volume = _float_or_none(row.get("Volume"))
            bars.append(HistoricalBar(
                date=ts.date(),
                open=_float_or_none(row.get("Open")),
                high=_float_or_none(row.get("High")),
                low=_float_or_none(row.get("Low")),
                close=_float_or_none(row.get("Close")),
                volume=int(volume) if volume is not None else None,
            ))
        return bars

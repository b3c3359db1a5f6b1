import asyncio
from datetime import date
from unittest.mock import MagicMock, patch

import pandas as pd
import pytest

from investing.exceptions import NotFoundError, ProviderError, ProviderErrorKind
from investing.services.quote_source import YahooQuoteSource, to_provider_symbol


@pytest.mark.parametrize(
    "ticker, expected",
    [
        ("PETR4", "PETR4.SA"),
        ("BOVA11", "BOVA11.SA"),
        ("VALE3", "VALE3.SA"),
        ("AAPL", "AAPL"),
        ("BRK-B", "BRK-B"),
        ("PETR444", "PETR444"),
        ("PETR4.SA", "PETR4.SA"),
    ],
)
def test_to_provider_symbol(ticker, expected):
    assert to_provider_symbol(ticker) == expected


def _frame(closes, start="2026-01-05"):
    index = pd.date_range(start, periods=len(closes), freq="D")
    return pd.DataFrame(
        {
            "Open": closes,
            "High": [c + 1 for c in closes],
            "Low": [c - 1 for c in closes],
            "Close": closes,
            "Volume": [1000.0] * len(closes),
        },
        index=index,
    )


class TestYahooQuoteSource:
    def test_fetch_quote_uses_last_two_closes(self):
        ticker = MagicMock()
        ticker.history.return_value = _frame([37.0, 38.0, 38.5])
        ticker.fast_info = {"currency": "BRL"}

        with patch("yfinance.Ticker", return_value=ticker):
            quote = asyncio.run(YahooQuoteSource().fetch_quote("PETR4.SA"))

        assert quote.symbol == "PETR4.SA"
        assert quote.price == 38.5
        assert quote.previous_close == 38.0
        assert quote.change == pytest.approx(0.5)
        assert quote.currency == "BRL"

    def test_empty_frame_is_not_found(self):
        ticker = MagicMock()
        ticker.history.return_value = pd.DataFrame()

        with patch("yfinance.Ticker", return_value=ticker):
            with pytest.raises(NotFoundError):
                asyncio.run(YahooQuoteSource().fetch_quote("XXXX9.SA"))

    def test_library_failure_is_network_error(self):
        with patch("yfinance.Ticker", side_effect=RuntimeError("connection reset")):
            with pytest.raises(ProviderError) as exc_info:
                asyncio.run(YahooQuoteSource().fetch_historical("AAPL", date(2026, 1, 1), date(2026, 1, 10)))

        assert exc_info.value.kind == ProviderErrorKind.NETWORK
        assert "connection reset" in str(exc_info.value)

    def test_fetch_historical_converts_rows(self):
        ticker = MagicMock()
        frame = _frame([10.0, 11.0])
        frame.loc[frame.index[0], "Volume"] = float("nan")
        ticker.history.return_value = frame

        with patch("yfinance.Ticker", return_value=ticker):
            bars = asyncio.run(YahooQuoteSource().fetch_historical("AAPL", date(2026, 1, 5), date(2026, 1, 6)))

        assert [b.date for b in bars] == [date(2026, 1, 5), date(2026, 1, 6)]
        assert bars[0].volume is None
        assert bars[1].close == 11.0
        # End date is inclusive
        _, kwargs = ticker.history.call_args
        assert kwargs["end"] == "2026-01-07"

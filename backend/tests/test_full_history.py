import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest

from investing.exceptions import ConcurrencyConflict, RunSetupError
from investing.services.full_history import years_before
from investing.services.store import PriceBarRecord

from fakes import make_history


@pytest.fixture
def loader(context):
    return context.full_history


def _seed(store, source, tickers, days=12):
    for ticker in tickers:
        store.add_asset(ticker)
        source.history[f"{ticker}.SA"] = make_history(days)


def test_years_before_handles_leap_day():
    assert years_before(date(2024, 2, 29), 1) == date(2023, 2, 28)
    assert years_before(date(2026, 10, 18), 20) == date(2006, 10, 18)


def test_loads_every_asset_in_mini_lots(loader, store, source, sleep, settings):
    _seed(store, source, ["VALE3", "PETR4"])

    async def scenario():
        await loader.start()
        await loader.wait()
        return loader.status()

    status = asyncio.run(scenario())

    assert status["is_running"] is False
    assert status["progress"] == 100
    assert status["processed_assets"] == 2
    assert status["results"]["total_records"] == 24
    assert [r["ticker"] for r in status["results"]["successful"]] == ["PETR4", "VALE3"]
    assert set(store.upsert_calls) <= {settings.full_history_chunk_size, 2}
    assert sleep.calls == [settings.full_history_asset_delay]


def test_skips_tickers_with_enough_history(loader, store, source, settings):
    settings.full_history_skip_threshold = 5
    _seed(store, source, ["PETR4"])
    for offset in range(6):
        day = date.today() - timedelta(days=500 + offset)
        store.bars[("PETR4", day)] = PriceBarRecord("PETR4", day, *(Decimal("1"),) * 4)

    async def scenario():
        await loader.start()
        await loader.wait()
        return loader.status()

    status = asyncio.run(scenario())

    assert source.history_calls == []
    assert "Skipped" in status["results"]["successful"][0]["message"]


def test_failures_are_recorded(loader, store, source):
    _seed(store, source, ["PETR4"])
    store.add_asset("XXXX3")

    async def scenario():
        await loader.start()
        await loader.wait()
        return loader.status()

    status = asyncio.run(scenario())

    assert status["results"]["failed"][0]["ticker"] == "XXXX3"
    assert status["results"]["failed"][0]["kind"] == "not_found"
    assert status["errors"][0].startswith("XXXX3")


def test_second_start_conflicts_and_cancel_stops_between_tickers(loader, store, source):
    _seed(store, source, ["AAAA3", "BBBB3", "CCCC3"])

    async def scenario():
        source.gate = asyncio.Event()
        await loader.start()
        while not source.history_calls:
            await asyncio.sleep(0)
        with pytest.raises(ConcurrencyConflict):
            await loader.start()
        loader.cancel()
        source.gate.set()
        await loader.wait()
        return loader.status()

    status = asyncio.run(scenario())

    assert status["is_running"] is False
    assert status["cancel_requested"] is True
    assert status["processed_assets"] == 1
    assert source.history_calls == ["AAAA3.SA"]


def test_cancel_without_run(loader):
    with pytest.raises(RunSetupError):
        loader.cancel()


def test_start_without_assets(loader):
    with pytest.raises(RunSetupError):
        asyncio.run(loader.start(currency="USD"))

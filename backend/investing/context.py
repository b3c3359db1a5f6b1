from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from .config import Settings
from .database import init_db, make_engine, make_session_factory
from .services.activity import ActivityHeuristic
from .services.full_history import FullHistoryLoader
from .services.ingestion import IngestionEngine
from .services.notifier import WebhookNotifier
from .services.quote_cache import HistoricalCache, QuoteCache
from .services.quote_service import QuoteService
from .services.quote_source import QuoteSource, YahooQuoteSource
from .services.scheduler import AutoUpdateScheduler
from .services.store import SqlStore, Store


@dataclass
class AppContext:
    """Process-wide services shared by the HTTP handlers and the timers."""
    settings: Settings
    store: Store
    source: QuoteSource
    quote_cache: QuoteCache
    historical_cache: HistoricalCache
    engine: IngestionEngine
    heuristic: ActivityHeuristic
    notifier: WebhookNotifier
    scheduler: AutoUpdateScheduler
    quotes: QuoteService
    full_history: FullHistoryLoader


def assemble_context(
    settings: Settings,
    store: Store,
    source: QuoteSource,
    notifier: Optional[WebhookNotifier] = None,
    sleep=None,
) -> AppContext:
    quote_cache = QuoteCache(ttl=settings.quote_cache_ttl, max_size=settings.quote_cache_max_size)
    historical_cache = HistoricalCache(ttl=settings.historical_cache_ttl, max_size=settings.historical_cache_max_size)
    extra = {"sleep": sleep} if sleep is not None else {}

    engine = IngestionEngine(store, source, quote_cache, historical_cache, settings, **extra)
    heuristic = ActivityHeuristic(store, settings)
    notifier = notifier or WebhookNotifier(settings.error_webhook_url, settings.webhook_timeout)
    return AppContext(
        settings=settings,
        store=store,
        source=source,
        quote_cache=quote_cache,
        historical_cache=historical_cache,
        engine=engine,
        heuristic=heuristic,
        notifier=notifier,
        scheduler=AutoUpdateScheduler(engine, heuristic, store, notifier, settings),
        quotes=QuoteService(engine),
        full_history=FullHistoryLoader(engine, store, settings, **extra),
    )


def build_context(settings: Settings) -> AppContext:
    """Production wiring: SQL store on ``database_url`` and Yahoo Finance."""
    db_engine = make_engine(
        settings.database_url,
        statement_timeout=min(settings.store_write_timeout, settings.full_history_write_timeout),
    )
    init_db(db_engine)
    store = SqlStore(make_session_factory(db_engine))
    return assemble_context(settings, store, YahooQuoteSource())


def get_context(request: Request) -> AppContext:
    return request.app.state.context

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import ValidationError

from ..context import AppContext, get_context
from ..exceptions import MarketDataError
from ..schemas.market_data import (
    BulkHistoricalRequest,
    CacheInvalidateRequest,
    CacheWarmUpRequest,
    FullHistoryRequest,
    HistoricalRequest,
    IngestMode,
    QuotesRequest,
    UpdateAllRequest,
)
from ..services.ingestion import IngestOptions
from .deps import http_error

logger = logging.getLogger(__name__)

router = APIRouter()

DEFAULT_BULK_DAYS = 30


def _parse(model, payload: dict | None):
    try:
        return model.model_validate(payload or {})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))


# === Bulk ingestion ===

@router.post("/bulk-historical")
async def bulk_historical(request: BulkHistoricalRequest, ctx: AppContext = Depends(get_context)):
    """Historical backfill for every asset (optionally one currency)."""
    days = request.historical_days
    if days is None and request.years_back is None:
        days = DEFAULT_BULK_DAYS
    options = IngestOptions(
        currency=request.currency,
        historical_days=days,
        years_back=request.years_back,
        replace_existing=request.replace_existing,
        batch_size=request.batch_size,
        delay_between_batches=request.delay_between_batches,
    )
    try:
        result = await ctx.engine.ingest(mode=IngestMode.HISTORICAL, options=options)
    except MarketDataError as e:
        raise http_error(e)
    return {"success": True, "results": result.to_dict()}


@router.post("/update-all")
async def update_all(request: UpdateAllRequest, ctx: AppContext = Depends(get_context)):
    options = IngestOptions(
        currency=request.currency,
        historical_days=request.historical_days if request.mode == IngestMode.HISTORICAL else None,
        replace_existing=request.replace_existing,
    )
    try:
        result = await ctx.engine.ingest(mode=request.mode, options=options)
    except MarketDataError as e:
        raise http_error(e)
    return {"success": True, "results": result.to_dict()}


@router.post("/bulk-historical/full")
async def start_full_history(request: FullHistoryRequest, ctx: AppContext = Depends(get_context)):
    """Start the background multi-decade load; progress via GET on the same path."""
    try:
        started = await ctx.full_history.start(
            currency=request.currency,
            years_back=request.years_back,
            replace_existing=request.replace_existing,
        )
    except MarketDataError as e:
        raise http_error(e)
    return {
        "success": True,
        "message": f"Background load started for {started['total_assets']} assets",
        "tracking_url": "/api/market-data/bulk-historical/full",
        **started,
    }


@router.get("/bulk-historical/full")
async def full_history_status(ctx: AppContext = Depends(get_context)):
    return {"success": True, "status": ctx.full_history.status()}


@router.delete("/bulk-historical/full")
async def cancel_full_history(ctx: AppContext = Depends(get_context)):
    try:
        status = ctx.full_history.cancel()
    except MarketDataError as e:
        raise http_error(e)
    return {"success": True, "message": "Load cancellation requested", "status": status}


# === Quotes ===

@router.get("/quote")
async def get_quote(ticker: str = Query(..., min_length=1), ctx: AppContext = Depends(get_context)):
    try:
        quote = await ctx.quotes.get_quote(ticker)
    except MarketDataError as e:
        raise http_error(e)
    response = {"success": True, "data": quote, "cached": quote["cached"]}
    if "warning" in quote:
        response["warning"] = quote["warning"]
    return response


@router.post("/quotes")
async def get_quotes(request: QuotesRequest, ctx: AppContext = Depends(get_context)):
    try:
        result = await ctx.quotes.get_quotes(request.tickers)
    except MarketDataError as e:
        raise http_error(e)
    return {"success": True, **result}


# === Per-ticker history ===

@router.post("/historical")
async def load_historical(request: HistoricalRequest, ctx: AppContext = Depends(get_context)):
    try:
        data = await ctx.quotes.load_history(
            request.ticker,
            start=request.start,
            end=request.end,
            replace_existing=request.replace_existing,
        )
    except MarketDataError as e:
        raise http_error(e)
    return {"success": True, "data": data, "message": f"Historical data updated for {data['ticker']}"}


@router.get("/historical")
async def stored_historical(
    ticker: str = Query(..., min_length=1),
    days: int = Query(30, ge=1),
    ctx: AppContext = Depends(get_context),
):
    data = await ctx.quotes.stored_history(ticker, days)
    return {"success": True, **data}


# === Cache management ===

@router.get("/cache")
async def cache_info(
    action: str | None = Query(None),
    ticker: str | None = Query(None),
    ctx: AppContext = Depends(get_context),
):
    if action == "stats":
        return {
            "success": True,
            "cache": {
                "quotes": {**ctx.quote_cache.stats(), "has_recent_data": ctx.quote_cache.has_recent_data(30)},
                "historical": ctx.historical_cache.stats(),
            },
        }
    if action == "check":
        if not ticker:
            raise HTTPException(status_code=400, detail="Ticker parameter required")
        data = ctx.quote_cache.get(ticker)
        return {
            "success": True,
            "ticker": ticker.upper(),
            "in_cache": data is not None,
            "data": data,
        }
    return {
        "success": True,
        "actions": [
            "stats - cache statistics",
            "check - whether a ticker is cached (requires ?ticker=)",
            "clear - clear all caches (POST)",
            "invalidate - invalidate one ticker (POST)",
            "warm-up - pre-load quotes for up to 10 tickers (POST)",
        ],
    }


@router.post("/cache")
async def manage_cache(
    action: str = Query(...),
    payload: dict | None = Body(None),
    ctx: AppContext = Depends(get_context),
):
    if action == "clear":
        ctx.quote_cache.clear()
        ctx.historical_cache.clear()
        logger.info("All caches cleared")
        return {"success": True, "message": "All caches cleared"}

    if action == "invalidate":
        request = _parse(CacheInvalidateRequest, payload)
        return {
            "success": True,
            "ticker": request.ticker.upper(),
            "invalidated": {
                "quotes": ctx.quote_cache.invalidate(request.ticker),
                "historical": ctx.historical_cache.invalidate(request.ticker),
            },
        }

    if action == "warm-up":
        request = _parse(CacheWarmUpRequest, payload)
        warm_up = await ctx.quotes.warm_up(request.tickers)
        return {"success": True, "warm_up": warm_up, "message": "Cache warm-up completed"}

    raise HTTPException(status_code=400, detail="Invalid action. Use: clear, invalidate, or warm-up")

from datetime import datetime

from fastapi import Depends, Header, HTTPException
from fastapi.responses import JSONResponse

from ..context import AppContext, get_context
from ..exceptions import (
    ConcurrencyConflict,
    MarketDataError,
    NotFoundError,
    ProviderError,
    RunSetupError,
    StoreWriteError,
)
from ..schemas.scheduler import RunLog


def http_error(e: MarketDataError) -> HTTPException:
    """Map a core error onto the HTTP status the API reports for it."""
    if isinstance(e, RunSetupError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=e.message)
    if isinstance(e, ConcurrencyConflict):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ProviderError):
        return HTTPException(status_code=502, detail=str(e))
    if isinstance(e, StoreWriteError):
        return HTTPException(status_code=503, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def verify_cron_secret(
    authorization: str | None = Header(None),
    ctx: AppContext = Depends(get_context),
) -> None:
    secret = ctx.settings.cron_secret
    if not secret or authorization != f"Bearer {secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def run_log_response(log: RunLog, message: str, log_key: str = "log", **extra):
    """Report a scheduler run; runs that could not start at all are not a success."""
    if log.is_conflict:
        raise HTTPException(status_code=409, detail=log.detail.message)
    body = {log_key: log.model_dump(mode="json"), "timestamp": datetime.utcnow().isoformat(), **extra}
    if log.is_setup_failure:
        return JSONResponse(status_code=400, content={"success": False, "message": log.detail.message, **body})
    return {"success": True, "message": message, **body}

import logging
from datetime import datetime

from fastapi import APIRouter, Depends

from ..context import AppContext, get_context
from .deps import run_log_response, verify_cron_secret

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_cron_secret)])


@router.get("/hourly")
async def hourly_cron(ctx: AppContext = Depends(get_context)):
    """External cron hook; the activity check still decides whether to run."""
    logger.info("Cron: hourly job triggered")
    log = await ctx.scheduler.run_hourly()
    if log is None:
        return {
            "success": True,
            "message": "Hourly update skipped: no recent activity",
            "log": None,
            "timestamp": datetime.utcnow().isoformat(),
        }
    return run_log_response(log, "Hourly cron job completed")


@router.get("/daily")
async def daily_cron(ctx: AppContext = Depends(get_context)):
    logger.info("Cron: daily job triggered")
    log = await ctx.scheduler.run_daily()
    return run_log_response(log, "Daily cron job completed")

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from ..context import AppContext, get_context
from ..schemas.scheduler import SchedulerAction, SchedulerCommand
from .deps import run_log_response

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
async def get_scheduler(
    action: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    ctx: AppContext = Depends(get_context),
):
    """Scheduler status, run logs or stats; everything at once without an action."""
    scheduler = ctx.scheduler
    if action == "status":
        return {"success": True, "data": scheduler.get_status()}
    if action == "logs":
        logs = await scheduler.get_logs(limit)
        return {"success": True, "data": [log.model_dump(mode="json") for log in logs]}
    if action == "stats":
        return {"success": True, "data": await scheduler.get_stats()}

    stats = await scheduler.get_stats()
    recent = await scheduler.get_logs(10)
    return {
        "success": True,
        "data": {
            "status": scheduler.get_status(),
            "next_runs": scheduler.next_run_times(),
            "stats": stats,
            "recent_logs": [log.model_dump(mode="json") for log in recent],
        },
    }


@router.post("")
async def control_scheduler(command: SchedulerCommand, ctx: AppContext = Depends(get_context)):
    scheduler = ctx.scheduler
    try:
        action = SchedulerAction(command.action)
    except ValueError:
        raise HTTPException(
            status_code=400,
            detail="Invalid action. Available actions: start, stop, force_update",
        )

    if action == SchedulerAction.START:
        scheduler.start()
        return {"success": True, "message": "Scheduler started successfully", "status": scheduler.get_status()}

    if action == SchedulerAction.STOP:
        scheduler.stop()
        return {"success": True, "message": "Scheduler stopped successfully", "status": scheduler.get_status()}

    log = await scheduler.force_update()
    return run_log_response(log, "Manual update triggered", log_key="update_log", status=scheduler.get_status())

"""
Admin API Router
Diagnostics and manual operations for the processing core
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Optional
import structlog

from fixbot.models.dead_letter_message import DeadLetterStatus
from fixbot.routers.dependencies import get_runtime, require_admin_token
from fixbot.services.runtime import Runtime

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.get("/diagnostics")
async def diagnostics(runtime: Runtime = Depends(get_runtime)):
    """
    Stats for every core component

    Returns:
        dict with dedup cache size, breaker state per dependency,
        dead-letter counts by status, rate-limiter counts, pipeline outcomes
    """
    return await runtime.diagnostics()


@router.get("/dead-letters")
async def list_dead_letters(
    status: Optional[str] = Query(None, description="Filter by status (PENDING, RETRYING, PROCESSED, FAILED, SKIPPED)"),
    limit: int = Query(50, ge=1, le=200, description="Maximum number of entries to return"),
    runtime: Runtime = Depends(get_runtime),
):
    """
    List recent dead-letter entries, newest first
    """
    if status and status.upper() not in DeadLetterStatus.__members__:
        raise HTTPException(status_code=400, detail=f"Unknown status '{status}'")

    entries = await runtime.dead_letters.list_entries(status=status, limit=limit)
    return {
        "count": len(entries),
        "entries": [entry.to_dict() for entry in entries],
    }


@router.post("/dead-letters/sweep")
async def trigger_sweep(runtime: Runtime = Depends(get_runtime)):
    """
    Run one dead-letter sweep now instead of waiting for the schedule.

    Returns:
        dict: Sweep summary
    """
    try:
        summary = await runtime.sweeper.sweep()
    except Exception as e:
        logger.error("manual_sweep_error", error=str(e), exc_info=True)
        return {"status": "error", "message": "Sweep failed"}

    return {"status": "completed", "result": summary.to_dict()}


@router.post("/circuit-breakers/reset")
async def reset_all_breakers(runtime: Runtime = Depends(get_runtime)):
    runtime.breakers.reset_all()
    logger.info("circuit_breakers_reset", breakers=runtime.breakers.names())
    return {"status": "reset", "breakers": runtime.breakers.names()}


@router.post("/circuit-breakers/{name}/reset")
async def reset_breaker(name: str, runtime: Runtime = Depends(get_runtime)):
    if not runtime.breakers.reset(name):
        raise HTTPException(status_code=404, detail=f"No circuit breaker named '{name}'")
    return {"status": "reset", "breaker": runtime.breakers.get(name).stats()}

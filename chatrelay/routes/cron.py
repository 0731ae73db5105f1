# chatrelay/routes/cron.py

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from chatrelay.container import Container, get_container
from chatrelay.routes.worker import bearer_matches

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.api_route("/analytics", methods=["GET", "POST"])
async def aggregate_analytics(
    authorization: Optional[str] = Header(None),
    container: Container = Depends(get_container),
):
    """Roll up the previous hour for every active config and prune old rows"""
    if not bearer_matches(authorization, container.settings.CRON_SECRET):
        return JSONResponse(status_code=401, content={"success": False, "error": "Unauthorized"})

    try:
        outcome = container.analytics.run_hourly(
            cache_stats=container.cache.get_stats(),
            queue_stats=await container.queue.get_stats(),
            breaker_stats=container.worker.circuit_breaker_stats(),
        )
    except Exception as e:
        logger.exception("Analytics aggregation run failed")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})

    failed = sum(1 for r in outcome["results"] if r["status"] == "error")
    return {
        "success": True,
        "message": f"Aggregated {len(outcome['results']) - failed} configs, {failed} failed",
        "hour": outcome["hour"].isoformat() + "Z",
        "results": outcome["results"],
        "cleanup": outcome["cleanup"],
        "timestamp": container.clock.utcnow().isoformat() + "Z",
    }

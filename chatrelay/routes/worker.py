# chatrelay/routes/worker.py

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from chatrelay.container import Container, get_container
from chatrelay.data_schemas import WorkerControlRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/worker", tags=["worker"])


def bearer_matches(authorization: Optional[str], secret: Optional[str]) -> bool:
    """True when no secret is configured or the header carries it"""
    if not secret:
        return True
    return authorization == f"Bearer {secret}"


def _unauthorized() -> JSONResponse:
    return JSONResponse(status_code=401, content={"success": False, "error": "Unauthorized"})


@router.get("/status")
async def worker_status(container: Container = Depends(get_container)):
    return {
        "status": "active",
        "queueSize": await container.queue.size(),
        "paused": container.queue.paused,
        "throughput": container.queue.get_throughput(),
        "timestamp": container.clock.utcnow().isoformat() + "Z",
    }


@router.post("/process")
async def process_queue(
    authorization: Optional[str] = Header(None),
    container: Container = Depends(get_container),
):
    """Drain one batch of queued messages"""
    if not bearer_matches(authorization, container.settings.CRON_SECRET):
        return _unauthorized()
    try:
        stats = await container.worker.process_batch()
    except Exception as e:
        logger.exception("Worker batch failed")
        return JSONResponse(status_code=500, content={"success": False, "error": str(e)})
    return {"success": True, "stats": stats}


@router.post("/control")
async def control_worker(
    request: WorkerControlRequest,
    authorization: Optional[str] = Header(None),
    container: Container = Depends(get_container),
):
    if not bearer_matches(authorization, container.settings.CRON_SECRET):
        return _unauthorized()

    queue = container.queue
    if request.action == "pause":
        queue.pause()
        return {"success": True, "message": "Queue processing paused"}
    if request.action == "resume":
        queue.resume()
        return {"success": True, "message": "Queue processing resumed"}

    cleared = await queue.clear_failed()
    logger.info(f"Cleared {cleared} dead-lettered messages")
    return {"success": True, "message": f"Cleared {cleared} failed messages", "cleared": cleared}

# chatrelay/routes/admin.py

from fastapi import APIRouter, Depends, HTTPException
from datetime import datetime, timedelta, timezone
from typing import Optional

from chatrelay.container import Container, get_container

router = APIRouter(prefix="/admin", tags=["admin"])


def _naive_utc(moment: Optional[datetime]) -> Optional[datetime]:
    # Stored timestamps are naive UTC
    if moment is None or moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


# Simple API key auth
def verify_api_key(api_key: str, container: Container = Depends(get_container)):
    expected = container.settings.ADMIN_API_KEY
    if not expected or api_key != expected:
        raise HTTPException(status_code=403, detail="Invalid API key")
    return True


@router.get("/circuit-breakers", dependencies=[Depends(verify_api_key)])
def get_circuit_breakers(container: Container = Depends(get_container)):
    """Stats of every circuit breaker"""
    return container.worker.circuit_breaker_stats()


@router.post("/circuit-breakers/{name}/reset", dependencies=[Depends(verify_api_key)])
async def reset_circuit_breaker(name: str, container: Container = Depends(get_container)):
    """Force a breaker back to CLOSED"""
    breaker = container.breakers.get(name)
    if breaker is None:
        raise HTTPException(status_code=404, detail="Circuit breaker not found")
    breaker.reset()
    return breaker.get_stats()


@router.get("/cache", dependencies=[Depends(verify_api_key)])
def get_cache_stats(container: Container = Depends(get_container)):
    return container.cache.get_stats()


@router.get("/dead-letters", dependencies=[Depends(verify_api_key)])
async def get_dead_letters(limit: int = 50, container: Container = Depends(get_container)):
    """Messages that exhausted their retries, newest first"""
    return await container.queue.dead_letters(limit)


@router.get("/analytics/{config_id}", dependencies=[Depends(verify_api_key)])
def get_analytics_summary(
    config_id: str,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    container: Container = Depends(get_container),
):
    """Hourly buckets of one config, last 24 hours unless a range is given"""
    end = _naive_utc(end) or container.clock.utcnow()
    start = _naive_utc(start) or end - timedelta(days=1)
    if start > end:
        raise HTTPException(status_code=400, detail="start must be before end")
    return container.analytics.get_summary(config_id, start, end)

"""
Cron API Routes

Invocation point for the periodic external scheduler. Every call runs one
tick of the lifecycle engine; calls are at-least-once and may overlap.
"""
from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import verify_cron_key
from ..config import EngineConfig, get_engine_config
from ..database import get_db
from ..services.delivery import HttpSmsProvider, HttpShortLinkService
from ..services.lifecycle import (
    LifecycleEngine,
    LifecycleAnalytics,
    EngineConfigurationError,
    RuleStoreError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/cron", tags=["cron"])


class TickResponse(BaseModel):
    """Counts for one engine tick."""
    scheduled: int
    sent: int
    failed: int
    skipped: int


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_delivery_provider():
    return HttpSmsProvider()


def get_short_link_service() -> Optional[HttpShortLinkService]:
    service = HttpShortLinkService()
    return service if service.api_url else None


# =============================================================================
# ENDPOINTS
# =============================================================================

def _run_tick(db, provider, short_links, engine_config) -> TickResponse:
    engine = LifecycleEngine(db, provider, short_links, engine_config)
    try:
        summary = engine.tick()
    except EngineConfigurationError as e:
        logger.error(f"Lifecycle engine misconfigured: {e}")
        raise HTTPException(status_code=500, detail=f"Engine configuration error: {e}")
    except RuleStoreError as e:
        logger.error(f"Lifecycle engine could not load rules: {e}")
        raise HTTPException(status_code=500, detail="Failed to load lifecycle rules")
    return TickResponse(**summary.to_dict())


@router.get("/lifecycle-engine", response_model=TickResponse)
def run_lifecycle_engine(
    db: Session = Depends(get_db),
    provider=Depends(get_delivery_provider),
    short_links=Depends(get_short_link_service),
    engine_config: EngineConfig = Depends(get_engine_config),
    _: bool = Depends(verify_cron_key),
):
    """
    Run one lifecycle engine tick.

    Phase 1 schedules executions for new trigger events; Phase 2 sends
    the ones that are due. Provider sends block, so this handler is sync
    and runs in the threadpool.
    """
    return _run_tick(db, provider, short_links, engine_config)


@router.post("/lifecycle-engine", response_model=TickResponse)
def run_lifecycle_engine_post(
    db: Session = Depends(get_db),
    provider=Depends(get_delivery_provider),
    short_links=Depends(get_short_link_service),
    engine_config: EngineConfig = Depends(get_engine_config),
    _: bool = Depends(verify_cron_key),
):
    """Same as GET; some schedulers can only POST."""
    return _run_tick(db, provider, short_links, engine_config)


@router.get("/lifecycle-engine/health", response_model=dict)
async def lifecycle_engine_health(
    limit: int = Query(20, ge=1, le=200),
    db: Session = Depends(get_db),
    _: bool = Depends(verify_cron_key),
):
    """Recent invocations with scheduled/sent/failed/skipped counts."""
    return LifecycleAnalytics(db).engine_health(limit=limit)

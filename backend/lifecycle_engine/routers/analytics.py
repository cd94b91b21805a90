"""
Marketing Analytics Router
Read-only automation performance and attribution for the admin console.
"""
from datetime import datetime
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..config import EngineConfig, get_engine_config
from ..database import get_db
from ..services.lifecycle import AttributionCalculator, LifecycleAnalytics, period_bounds

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/marketing", tags=["marketing-analytics"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class RuleAnalytics(BaseModel):
    """Per-rule automation performance."""
    rule_id: str
    name: str
    trigger: str
    is_active: bool
    total_executions: int
    status_counts: dict
    sent: int
    delivered: int
    clicked: int
    conversions: int  # Unique customers with an attributed purchase
    revenue: float


class AutomationAnalyticsResponse(BaseModel):
    period: str
    period_start: str
    period_end: str
    rules: List[RuleAnalytics]


class AttributionResponse(BaseModel):
    scope: str  # rule, campaign, or period
    scope_id: Optional[str] = None
    unique_customers: int
    total_revenue: float
    transaction_count: int
    recipients: int
    period_start: str
    period_end: str
    window_days: int


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("/analytics/automations", response_model=AutomationAnalyticsResponse)
async def get_automation_analytics(
    period: str = Query("30d"),
    window_days: Optional[int] = Query(None, ge=0, le=90),
    db: Session = Depends(get_db),
    engine_config: EngineConfig = Depends(get_engine_config),
    admin: dict = Depends(require_admin),
):
    """Executions, deliveries, clicks, conversions and revenue per rule."""
    try:
        start, end = period_bounds(period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    analytics = LifecycleAnalytics(db, config=engine_config)
    rules = analytics.rule_analytics(start, end, window_days=window_days)
    return AutomationAnalyticsResponse(
        period=period,
        period_start=start.isoformat(),
        period_end=end.isoformat(),
        rules=[RuleAnalytics(**r) for r in rules],
    )


@router.get("/attribution", response_model=AttributionResponse)
async def get_attribution(
    rule_id: Optional[str] = Query(None),
    campaign_id: Optional[str] = Query(None),
    period: str = Query("30d"),
    window_days: Optional[int] = Query(None, ge=0, le=90),
    db: Session = Depends(get_db),
    engine_config: EngineConfig = Depends(get_engine_config),
    admin: dict = Depends(require_admin),
):
    """
    Revenue attributed to sends in the period.

    Pass rule_id for one automation, campaign_id for one campaign, or
    neither for everything sent in the period.
    """
    if rule_id and campaign_id:
        raise HTTPException(status_code=400, detail="Pass rule_id or campaign_id, not both")

    try:
        start, end = period_bounds(period)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if window_days is None:
        window_days = engine_config.attribution_window_days

    calc = AttributionCalculator(db)
    if rule_id:
        scope, scope_id = "rule", rule_id
        window = calc.for_rule(rule_id, start, end, window_days=window_days)
    elif campaign_id:
        scope, scope_id = "campaign", campaign_id
        window = calc.for_campaign(campaign_id, start, end, window_days=window_days)
    else:
        scope, scope_id = "period", None
        window = calc.for_period(start, end, window_days=window_days)

    return AttributionResponse(scope=scope, scope_id=scope_id, **window.as_dict())

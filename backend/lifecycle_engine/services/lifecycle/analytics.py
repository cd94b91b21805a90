"""
Lifecycle Analytics

Read-only views for operational dashboards:
- rule_analytics(): per-rule executions, delivery, clicks, conversions, revenue
- engine_health(): per-invocation scheduled/sent/failed/skipped counts

Row-level failures surface here and nowhere else; they are not alerted
individually.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    LifecycleExecutionDB,
    SmsDeliveryLogDB,
    LinkClickDB,
    EngineInvocationDB,
    ExecutionStatus,
)
from ...models.events import round_currency
from .attribution import AttributionCalculator
from .rule_store import RuleStore


PERIOD_DAYS = {
    "7d": 7,
    "30d": 30,
    "90d": 90,
}


def period_bounds(period: str, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """'30d' -> (now - 30 days, now). Unknown periods raise ValueError."""
    if period not in PERIOD_DAYS:
        raise ValueError(f"Unknown period '{period}'. Must be one of: {list(PERIOD_DAYS)}")
    end = now or datetime.utcnow()
    return end - timedelta(days=PERIOD_DAYS[period]), end


class LifecycleAnalytics:

    def __init__(
        self,
        db: Session,
        attribution: Optional[AttributionCalculator] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.db = db
        self.attribution = attribution or AttributionCalculator(db)
        self.config = config or EngineConfig()

    def status_counts(
        self,
        rule_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Dict[str, int]:
        rows = self.db.query(
            LifecycleExecutionDB.status,
            func.count(LifecycleExecutionDB.id),
        ).filter(
            LifecycleExecutionDB.lifecycle_rule_id == rule_id,
            LifecycleExecutionDB.created_at >= period_start,
            LifecycleExecutionDB.created_at <= period_end,
        ).group_by(LifecycleExecutionDB.status).all()

        counts = {s.value: 0 for s in ExecutionStatus}
        for status, count in rows:
            counts[ExecutionStatus(status).value] = count
        return counts

    def rule_analytics(
        self,
        period_start: datetime,
        period_end: datetime,
        window_days: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        if window_days is None:
            window_days = self.config.attribution_window_days
        results = []

        for rule in RuleStore(self.db).list_rules():
            counts = self.status_counts(rule.id, period_start, period_end)

            sent_ids = [
                row[0] for row in self.db.query(LifecycleExecutionDB.id).filter(
                    LifecycleExecutionDB.lifecycle_rule_id == rule.id,
                    LifecycleExecutionDB.status == ExecutionStatus.SENT,
                    LifecycleExecutionDB.created_at >= period_start,
                    LifecycleExecutionDB.created_at <= period_end,
                ).all()
            ]

            delivered = 0
            clicked = 0
            if sent_ids:
                delivered = self.db.query(
                    func.count(func.distinct(SmsDeliveryLogDB.lifecycle_execution_id))
                ).filter(
                    SmsDeliveryLogDB.lifecycle_execution_id.in_(sent_ids),
                    SmsDeliveryLogDB.status == "delivered",
                ).scalar() or 0

                clicked = self.db.query(func.count(LinkClickDB.id)).filter(
                    LinkClickDB.lifecycle_execution_id.in_(sent_ids),
                ).scalar() or 0

            attribution = self.attribution.for_rule(
                rule.id, period_start, period_end, window_days=window_days
            )

            results.append({
                "rule_id": rule.id,
                "name": rule.name,
                "trigger": rule.trigger_condition.value,
                "is_active": rule.is_active,
                "total_executions": sum(counts.values()),
                "status_counts": counts,
                "sent": counts[ExecutionStatus.SENT.value],
                "delivered": delivered,
                "clicked": clicked,
                "conversions": attribution.unique_customers,
                "revenue": float(round_currency(attribution.total_revenue)),
            })

        return results

    def engine_health(self, limit: int = 20, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        invocations = (
            self.db.query(EngineInvocationDB)
            .order_by(EngineInvocationDB.started_at.desc())
            .limit(limit)
            .all()
        )

        pending_total = self.db.query(func.count(LifecycleExecutionDB.id)).filter(
            LifecycleExecutionDB.status == ExecutionStatus.PENDING,
        ).scalar() or 0
        pending_due = self.db.query(func.count(LifecycleExecutionDB.id)).filter(
            LifecycleExecutionDB.status == ExecutionStatus.PENDING,
            LifecycleExecutionDB.scheduled_for <= now,
        ).scalar() or 0

        totals = {"scheduled": 0, "sent": 0, "failed": 0, "skipped": 0}
        for inv in invocations:
            totals["scheduled"] += inv.scheduled
            totals["sent"] += inv.sent
            totals["failed"] += inv.failed
            totals["skipped"] += inv.skipped

        return {
            "generated_at": now.isoformat(),
            "invocation_count": len(invocations),
            "last_run": invocations[0].started_at.isoformat() if invocations else None,
            "last_status": invocations[0].status.value if invocations else None,
            "totals": totals,
            "pending_total": pending_total,
            "pending_due": pending_due,
            "invocations": [
                {
                    "id": inv.id,
                    "started_at": inv.started_at.isoformat(),
                    "completed_at": inv.completed_at.isoformat() if inv.completed_at else None,
                    "status": inv.status.value,
                    "scheduled": inv.scheduled,
                    "sent": inv.sent,
                    "failed": inv.failed,
                    "skipped": inv.skipped,
                    "error": inv.error_message,
                }
                for inv in invocations
            ],
        }

"""
Attribution Calculator

Read-only, on-demand computation of revenue caused by outbound messages.

A send opens a window [send_time, send_time + window_days] (closed at both
ends). A completed purchase by the same customer inside ANY of that
customer's windows is attributed once:
- a customer with several overlapping sends is counted once
- a purchase covered by several windows contributes its amount once

Revenue is summed as unrounded Decimal; rounding to cents happens only in
AttributionWindow.as_dict().
"""
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Iterable, Tuple
import logging

from sqlalchemy.orm import Session

from ...models.db_models import (
    LifecycleExecutionDB,
    CampaignRecipientDB,
    TransactionDB,
    ExecutionStatus,
)
from ...models.events import AttributionWindow


logger = logging.getLogger(__name__)


Send = Tuple[str, datetime]  # (customer_id, sent_at)


class AttributionCalculator:
    """
    Attribution for a lifecycle rule, a campaign, or a bare period.

    Usage:
        calc = AttributionCalculator(db)
        window = calc.for_rule(rule_id, start, end)
    """

    DEFAULT_WINDOW_DAYS = 7

    # Customers looked up per transaction query
    BATCH_SIZE = 100

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # SCOPES
    # =========================================================================

    def for_rule(
        self,
        rule_id: str,
        period_start: datetime,
        period_end: datetime,
        window_days: int = DEFAULT_WINDOW_DAYS,
    ) -> AttributionWindow:
        sends = self.lifecycle_sends(period_start, period_end, rule_id=rule_id)
        return self.calculate(sends, period_start, period_end, window_days)

    def for_campaign(
        self,
        campaign_id: str,
        period_start: datetime,
        period_end: datetime,
        window_days: int = DEFAULT_WINDOW_DAYS,
    ) -> AttributionWindow:
        sends = self.campaign_sends(period_start, period_end, campaign_id=campaign_id)
        return self.calculate(sends, period_start, period_end, window_days)

    def for_period(
        self,
        period_start: datetime,
        period_end: datetime,
        window_days: int = DEFAULT_WINDOW_DAYS,
    ) -> AttributionWindow:
        """All campaigns and all lifecycle automations sent in the period."""
        sends = (
            self.campaign_sends(period_start, period_end)
            + self.lifecycle_sends(period_start, period_end)
        )
        return self.calculate(sends, period_start, period_end, window_days)

    # =========================================================================
    # SEND SOURCES
    # =========================================================================

    def lifecycle_sends(
        self,
        period_start: datetime,
        period_end: datetime,
        rule_id: Optional[str] = None,
    ) -> List[Send]:
        query = self.db.query(
            LifecycleExecutionDB.customer_id,
            LifecycleExecutionDB.executed_at,
        ).filter(
            LifecycleExecutionDB.status == ExecutionStatus.SENT,
            LifecycleExecutionDB.executed_at.isnot(None),
            LifecycleExecutionDB.executed_at >= period_start,
            LifecycleExecutionDB.executed_at <= period_end,
        )
        if rule_id is not None:
            query = query.filter(LifecycleExecutionDB.lifecycle_rule_id == rule_id)
        return [(c, t) for c, t in query.all() if c]

    def campaign_sends(
        self,
        period_start: datetime,
        period_end: datetime,
        campaign_id: Optional[str] = None,
    ) -> List[Send]:
        query = self.db.query(
            CampaignRecipientDB.customer_id,
            CampaignRecipientDB.sent_at,
        ).filter(
            CampaignRecipientDB.sent_at.isnot(None),
            CampaignRecipientDB.sent_at >= period_start,
            CampaignRecipientDB.sent_at <= period_end,
        )
        if campaign_id is not None:
            query = query.filter(CampaignRecipientDB.campaign_id == campaign_id)
        return [(c, t) for c, t in query.all() if c]

    # =========================================================================
    # CALCULATION
    # =========================================================================

    def calculate(
        self,
        sends: Iterable[Send],
        period_start: datetime,
        period_end: datetime,
        window_days: int = DEFAULT_WINDOW_DAYS,
    ) -> AttributionWindow:
        if window_days < 0:
            raise ValueError("window_days cannot be negative")

        window = timedelta(days=window_days)
        sends_by_customer: Dict[str, List[datetime]] = defaultdict(list)
        for customer_id, sent_at in sends:
            sends_by_customer[customer_id].append(sent_at)

        total_revenue = Decimal("0")
        transaction_count = 0
        converted = set()

        customer_ids = sorted(sends_by_customer)
        for i in range(0, len(customer_ids), self.BATCH_SIZE):
            batch = customer_ids[i:i + self.BATCH_SIZE]
            earliest = min(min(sends_by_customer[c]) for c in batch)
            latest = max(max(sends_by_customer[c]) for c in batch) + window

            transactions = self.db.query(
                TransactionDB.id,
                TransactionDB.customer_id,
                TransactionDB.total_amount,
                TransactionDB.transaction_date,
            ).filter(
                TransactionDB.customer_id.in_(batch),
                TransactionDB.status == "completed",
                TransactionDB.transaction_date >= earliest,
                TransactionDB.transaction_date <= latest,
            ).all()

            for txn_id, customer_id, amount, txn_time in transactions:
                if not in_any_window(txn_time, sends_by_customer[customer_id], window):
                    continue
                total_revenue += Decimal(str(amount or 0))
                transaction_count += 1
                converted.add(customer_id)

        logger.info(
            f"Attribution {period_start.isoformat()}..{period_end.isoformat()}: "
            f"{len(converted)}/{len(customer_ids)} customers converted, {transaction_count} transactions"
        )

        return AttributionWindow(
            unique_customers=len(converted),
            total_revenue=total_revenue,
            transaction_count=transaction_count,
            recipients=len(customer_ids),
            period_start=period_start,
            period_end=period_end,
            window_days=window_days,
        )


def in_any_window(moment: datetime, send_times: List[datetime], window: timedelta) -> bool:
    """True when send <= moment <= send + window for at least one send."""
    return any(sent_at <= moment <= sent_at + window for sent_at in send_times)

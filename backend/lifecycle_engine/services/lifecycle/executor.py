"""
Lifecycle Executor (Phase 2)

AUTHORITY: SYSTEM
Sends every PENDING execution whose scheduled_for has arrived.

Key behaviors:
- Due rows are processed oldest-first, capped at a batch size per tick
- Each row is claimed (claimed_by / claimed_at) before any side effect, so
  overlapping ticks cannot both send it
- Consent and customer validity are re-checked at send time
- Every row moves PENDING -> SENT | FAILED | SKIPPED exactly once through a
  conditional update; terminal rows are never selected again
- Per-row failures are recorded on the row and never abort the batch
- When the wall-clock budget runs out, untouched rows stay PENDING for the
  next tick
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any
from uuid import uuid4
import json
import logging
import time

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    LifecycleExecutionDB,
    LifecycleRuleDB,
    CustomerDB,
    AppointmentDB,
    AppointmentServiceDB,
    TransactionDB,
    TransactionItemDB,
    VehicleDB,
    BusinessSettingDB,
    FeatureFlagDB,
    ExecutionStatus,
    ConsentChannel,
    TERMINAL_STATUSES,
)
from ...models.events import ExecutionCounts
from ..delivery import DeliveryProvider, ShortLinkService, normalize_phone, shorten_or_fallback
from .consent_ledger import ConsentLedger
from .rule_store import RuleStore
from .template_renderer import render_template, uses_review_links


logger = logging.getLogger(__name__)


GOOGLE_REVIEW_FLAG = "google_review_requests"

BUSINESS_SETTING_VARIABLES = {
    "business_name": "businessName",
    "business_phone": "businessPhone",
    "business_hours": "businessHours",
    "google_review_count": "reviewCount",
}

REVIEW_URL_SETTINGS = ("google_review_url", "yelp_review_url")

# Skip reasons
REASON_RULE_INACTIVE = "Rule deactivated or deleted"
REASON_REVIEW_FLAG_OFF = "Google review requests feature flag disabled"
REASON_CUSTOMER_MISSING = "Customer no longer exists"
REASON_NO_CONSENT = "SMS consent revoked"
REASON_NO_PHONE = "No valid phone number"


def setting_to_text(value: Any) -> str:
    """business_settings stores JSON values; strip wrapping quotes."""
    if value is None:
        return ""
    text = value if isinstance(value, str) else json.dumps(value)
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        text = text[1:-1]
    return text


@dataclass
class BatchContext:
    """Values loaded once per batch and shared by every execution."""
    review_flag_enabled: bool = False
    google_review_link: str = ""
    yelp_review_link: str = ""
    business: Dict[str, str] = field(default_factory=dict)


class LifecycleExecutor:
    """
    Phase 2 of the lifecycle engine.

    Usage:
        executor = LifecycleExecutor(db, provider, short_links)
        counts = executor.run(now)
    """

    def __init__(
        self,
        db_session: Session,
        provider: DeliveryProvider,
        short_links: Optional[ShortLinkService] = None,
        config: Optional[EngineConfig] = None,
        worker_id: Optional[str] = None,
    ):
        self.db = db_session
        self.provider = provider
        self.short_links = short_links
        self.config = config or EngineConfig()
        self.worker_id = worker_id or str(uuid4())
        self.consent = ConsentLedger(db_session)
        self.rule_store = RuleStore(db_session)

    # =========================================================================
    # SELECTION & CLAIM
    # =========================================================================

    def select_due(self, now: datetime) -> List[LifecycleExecutionDB]:
        return (
            self.db.query(LifecycleExecutionDB)
            .filter(
                LifecycleExecutionDB.status == ExecutionStatus.PENDING,
                LifecycleExecutionDB.scheduled_for <= now,
            )
            .order_by(LifecycleExecutionDB.scheduled_for.asc(), LifecycleExecutionDB.id.asc())
            .limit(self.config.batch_size)
            .all()
        )

    def claim(self, execution_id: str, now: datetime) -> bool:
        """
        Claim a PENDING row for this worker.

        A claim older than claim_ttl_minutes is considered abandoned (the
        tick that took it died) and can be taken over.
        """
        stale_before = now - timedelta(minutes=self.config.claim_ttl_minutes)
        updated = (
            self.db.query(LifecycleExecutionDB)
            .filter(
                LifecycleExecutionDB.id == execution_id,
                LifecycleExecutionDB.status == ExecutionStatus.PENDING,
                or_(
                    LifecycleExecutionDB.claimed_by.is_(None),
                    LifecycleExecutionDB.claimed_by == self.worker_id,
                    LifecycleExecutionDB.claimed_at < stale_before,
                ),
            )
            .update(
                {
                    LifecycleExecutionDB.claimed_by: self.worker_id,
                    LifecycleExecutionDB.claimed_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated == 1

    def mark_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        now: datetime,
        error_message: Optional[str] = None,
        provider_message_id: Optional[str] = None,
    ) -> bool:
        """
        Move a PENDING row to a terminal status.

        The WHERE status = PENDING guard makes this a no-op for rows that
        already reached a terminal status.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"{status} is not a terminal execution status")

        values = {LifecycleExecutionDB.status: status}
        if status in (ExecutionStatus.SENT, ExecutionStatus.FAILED):
            values[LifecycleExecutionDB.executed_at] = now
        if error_message:
            values[LifecycleExecutionDB.error_message] = error_message[:1000]
        if provider_message_id:
            values[LifecycleExecutionDB.provider_message_id] = provider_message_id

        updated = (
            self.db.query(LifecycleExecutionDB)
            .filter(
                LifecycleExecutionDB.id == execution_id,
                LifecycleExecutionDB.status == ExecutionStatus.PENDING,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()

        if updated != 1:
            logger.warning(f"Execution {execution_id} was no longer pending; {status.value} not applied")
        return updated == 1

    # =========================================================================
    # RUN
    # =========================================================================

    def run(self, now: datetime, deadline: Optional[float] = None) -> ExecutionCounts:
        """
        Process one batch of due executions.

        Args:
            now: Tick time; rows with scheduled_for <= now are due
            deadline: time.monotonic() value after which no new row is started
        """
        counts = ExecutionCounts()
        due = self.select_due(now)
        if not due:
            return counts

        # Plain values only: the objects expire on every commit below
        batch = [(e.id, e.lifecycle_rule_id) for e in due]
        rules = self.rule_store.get_rules_by_ids(list({rule_id for _, rule_id in batch}))
        context = self.load_batch_context(list(rules.values()))

        for index, (execution_id, rule_id) in enumerate(batch):
            if deadline is not None and time.monotonic() >= deadline:
                counts.deferred = len(batch) - index
                logger.warning(f"Tick budget exhausted; {counts.deferred} executions left pending")
                break

            if not self.claim(execution_id, now):
                counts.claimed_elsewhere += 1
                continue

            try:
                status = self.process(execution_id, rules.get(rule_id), context, now)
            except Exception as e:
                logger.error(f"Lifecycle execution {execution_id} failed: {e}")
                self.db.rollback()
                try:
                    self.mark_execution(execution_id, ExecutionStatus.FAILED, now, error_message=str(e) or "Unknown error")
                except Exception as mark_error:
                    self.db.rollback()
                    logger.error(f"Could not record failure for execution {execution_id}: {mark_error}")
                status = ExecutionStatus.FAILED

            if status == ExecutionStatus.SENT:
                counts.sent += 1
            elif status == ExecutionStatus.FAILED:
                counts.failed += 1
            elif status == ExecutionStatus.SKIPPED:
                counts.skipped += 1

        logger.info(
            f"Executed lifecycle batch: sent={counts.sent} failed={counts.failed} "
            f"skipped={counts.skipped} deferred={counts.deferred}"
        )
        return counts

    def process(
        self,
        execution_id: str,
        rule: Optional[LifecycleRuleDB],
        context: BatchContext,
        now: datetime,
    ) -> Optional[ExecutionStatus]:
        """
        Gate, render and send one claimed execution.

        Returns the status applied, or None when the row had already left
        PENDING (nothing to count).
        """
        def finish(status, error_message=None, provider_message_id=None):
            applied = self.mark_execution(
                execution_id, status, now,
                error_message=error_message,
                provider_message_id=provider_message_id,
            )
            return status if applied else None

        execution = self.db.query(LifecycleExecutionDB).filter(
            LifecycleExecutionDB.id == execution_id
        ).first()
        if execution is None or execution.status != ExecutionStatus.PENDING:
            return None

        if rule is None or not rule.is_active:
            return finish(ExecutionStatus.SKIPPED, REASON_RULE_INACTIVE)

        template = rule.sms_template or ""
        if uses_review_links(template) and not context.review_flag_enabled:
            return finish(ExecutionStatus.SKIPPED, REASON_REVIEW_FLAG_OFF)

        customer = self.db.query(CustomerDB).filter(CustomerDB.id == execution.customer_id).first()
        if customer is None or customer.deleted_at is not None:
            return finish(ExecutionStatus.SKIPPED, REASON_CUSTOMER_MISSING)

        if not self.consent.check(customer.id, ConsentChannel.SMS):
            return finish(ExecutionStatus.SKIPPED, REASON_NO_CONSENT)

        destination = normalize_phone(customer.phone)
        if not destination:
            return finish(ExecutionStatus.SKIPPED, REASON_NO_PHONE)

        variables = self.build_variables(execution, customer, context)
        body = render_template(template, variables)

        result = self.provider.send(destination, body)
        if result.success:
            return finish(ExecutionStatus.SENT, provider_message_id=result.provider_message_id)
        return finish(ExecutionStatus.FAILED, result.error or "Unknown provider error")

    # =========================================================================
    # CONTEXT
    # =========================================================================

    def load_batch_context(self, rules: List[LifecycleRuleDB]) -> BatchContext:
        """Feature flag, business settings and shortened review links."""
        context = BatchContext()

        flag = self.db.query(FeatureFlagDB).filter(FeatureFlagDB.key == GOOGLE_REVIEW_FLAG).first()
        context.review_flag_enabled = bool(flag and flag.enabled)

        keys = list(BUSINESS_SETTING_VARIABLES) + list(REVIEW_URL_SETTINGS)
        settings = {
            s.key: setting_to_text(s.value)
            for s in self.db.query(BusinessSettingDB).filter(BusinessSettingDB.key.in_(keys)).all()
        }
        context.business = {
            variable: settings.get(key, "")
            for key, variable in BUSINESS_SETTING_VARIABLES.items()
        }

        needs_links = context.review_flag_enabled and any(
            uses_review_links(r.sms_template or "") for r in rules
        )
        if needs_links:
            # Shortened once per batch and reused for every execution
            context.google_review_link = shorten_or_fallback(
                self.short_links, settings.get("google_review_url", "")
            )
            context.yelp_review_link = shorten_or_fallback(
                self.short_links, settings.get("yelp_review_url", "")
            )

        return context

    def build_variables(
        self,
        execution: LifecycleExecutionDB,
        customer: CustomerDB,
        context: BatchContext,
    ) -> Dict[str, str]:
        vehicle_id = None
        service_names: List[str] = []

        if execution.appointment_id:
            apt = self.db.query(AppointmentDB).filter(AppointmentDB.id == execution.appointment_id).first()
            vehicle_id = apt.vehicle_id if apt else None
            service_names = [
                s.service_name for s in self.db.query(AppointmentServiceDB).filter(
                    AppointmentServiceDB.appointment_id == execution.appointment_id
                ).all() if s.service_name
            ]
        elif execution.transaction_id:
            tx = self.db.query(TransactionDB).filter(TransactionDB.id == execution.transaction_id).first()
            vehicle_id = tx.vehicle_id if tx else None
            service_names = [
                i.item_name for i in self.db.query(TransactionItemDB).filter(
                    TransactionItemDB.transaction_id == execution.transaction_id
                ).limit(5).all() if i.item_name
            ]

        vehicle_info = ""
        if vehicle_id:
            vehicle = self.db.query(VehicleDB).filter(VehicleDB.id == vehicle_id).first()
            if vehicle:
                vehicle_info = " ".join(
                    str(part) for part in (vehicle.year, vehicle.make, vehicle.model) if part
                )

        return {
            "firstName": customer.first_name or "",
            "serviceName": ", ".join(service_names),
            "vehicleInfo": vehicle_info,
            "googleReviewLink": context.google_review_link,
            "yelpReviewLink": context.yelp_review_link,
            **context.business,
        }

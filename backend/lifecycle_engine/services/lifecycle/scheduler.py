"""
Lifecycle Scheduler (Phase 1)

AUTHORITY: SYSTEM
Converts newly observed trigger events into PENDING lifecycle executions.
Sending is deferred to the executor (Phase 2).

Key behaviors:
- Scan a bounded lookback window (default 24h) for each trigger condition
- Ignore events older than a hard cutoff (default 30 days)
- Apply each rule's target filters before scheduling
- Dedup against executions that already exist so that re-running the same
  tick (at-least-once invocation) never schedules twice
- scheduled_for = event time + rule delay

The scheduler is the only writer of new lifecycle_executions rows.
"""
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, Set, Tuple
from uuid import uuid4
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import (
    LifecycleRuleDB,
    LifecycleExecutionDB,
    ExecutionStatus,
    TriggerCondition,
)
from ...models.events import (
    ServiceCompleted,
    TransactionCompleted,
    TriggerEvent,
    TRIGGER_EVENT_TYPES,
)
from .rule_store import RuleStore
from .trigger_source import TriggerSource


logger = logging.getLogger(__name__)


def rule_matches_event(rule: LifecycleRuleDB, event: TriggerEvent) -> bool:
    """
    Apply a rule's target filters to one trigger event.

    Returns False when the customer is not in the rule's audience.
    Raises TypeError for an event type outside the TriggerEvent union.
    """
    if isinstance(event, ServiceCompleted):
        if rule.service_category:
            if (event.category or "").strip().lower() != rule.service_category.strip().lower():
                return False
    elif isinstance(event, TransactionCompleted):
        # POS transactions carry no category; a category-filtered rule
        # can never match one.
        if rule.service_category:
            return False
    else:
        raise TypeError(f"Unknown trigger event type: {type(event).__name__}")

    expected_type = TRIGGER_EVENT_TYPES[TriggerCondition(rule.trigger_condition)]
    if not isinstance(event, expected_type):
        return False

    if rule.min_purchase_amount is not None:
        if event.amount is None or event.amount < rule.min_purchase_amount:
            return False

    if rule.trigger_service_id and rule.trigger_service_id not in event.service_ids:
        return False

    return True


def is_contactable(event: TriggerEvent) -> bool:
    """Customer has a phone and currently consents to SMS."""
    return bool(event.phone) and bool(event.sms_consent)


def compute_scheduled_for(rule: LifecycleRuleDB, event_time: datetime) -> datetime:
    return event_time + timedelta(minutes=rule.total_delay_minutes)


class LifecycleScheduler:
    """
    Phase 1 of the lifecycle engine.

    Usage:
        scheduler = LifecycleScheduler(db)
        scheduled = scheduler.run(now)
    """

    def __init__(
        self,
        db_session: Session,
        config: Optional[EngineConfig] = None,
        rule_store: Optional[RuleStore] = None,
        trigger_source: Optional[TriggerSource] = None,
    ):
        self.db = db_session
        self.config = config or EngineConfig()
        self.rule_store = rule_store or RuleStore(db_session)
        self.trigger_source = trigger_source or TriggerSource(db_session)

    def scan_window(self, now: datetime) -> Tuple[datetime, datetime]:
        """[start, now] bounded by both the lookback and the hard cutoff."""
        lookback_start = now - timedelta(hours=self.config.lookback_hours)
        cutoff = now - timedelta(days=self.config.hard_cutoff_days)
        return max(lookback_start, cutoff), now

    def run(self, now: datetime) -> int:
        """
        Schedule executions for every active rule.

        Raises RuleStoreError when rules cannot be loaded; nothing has been
        written at that point. A trigger-source failure only aborts the
        scan for that trigger condition.
        """
        rules = self.rule_store.list_active()
        if not rules:
            return 0

        since, until = self.scan_window(now)
        scheduled = 0

        for trigger in TriggerCondition:
            trigger_rules = [r for r in rules if TriggerCondition(r.trigger_condition) == trigger]
            if not trigger_rules:
                continue

            try:
                events = self.trigger_source.events_for(trigger, since, until)
            except SQLAlchemyError as e:
                self.db.rollback()
                logger.error(f"Failed to query {trigger.value} trigger events: {e}")
                continue

            created = self.schedule_events(trigger_rules, events, now)
            self.db.commit()
            scheduled += created

            logger.info(
                f"Scheduled {created} executions for {trigger.value} "
                f"({len(events)} events, {len(trigger_rules)} rules)"
            )

        return scheduled

    def schedule_events(
        self,
        rules: List[LifecycleRuleDB],
        events: List[TriggerEvent],
        now: datetime,
    ) -> int:
        """Insert PENDING executions for qualifying (rule, event) pairs."""
        if not rules or not events:
            return 0

        cutoff = now - timedelta(days=self.config.hard_cutoff_days)
        dedup = self._load_dedup_state(rules, events, now)
        created = 0

        for event in events:
            if event.timestamp < cutoff:
                continue
            if not is_contactable(event):
                continue

            for rule in rules:
                try:
                    if not rule_matches_event(rule, event):
                        continue
                except Exception as e:
                    logger.error(
                        f"Filter check failed for rule {rule.id}, customer {event.customer_id}: {e}"
                    )
                    break

                if self._is_duplicate(dedup, rule, event):
                    continue

                if self._insert_execution(rule, event, now):
                    created += 1

                dedup["event_keys"].add((rule.id, event.event_key))
                dedup["pending"].add((rule.id, event.customer_id))
                dedup["cooldown"].add((rule.id, event.customer_id))

        return created

    # =========================================================================
    # DEDUP
    # =========================================================================

    def _load_dedup_state(
        self,
        rules: List[LifecycleRuleDB],
        events: List[TriggerEvent],
        now: datetime,
    ) -> Dict[str, Set[Tuple[str, str]]]:
        rule_ids = [r.id for r in rules]
        event_keys = list({e.event_key for e in events})
        customer_ids = list({e.customer_id for e in events})

        existing_by_event = self.db.query(
            LifecycleExecutionDB.lifecycle_rule_id,
            LifecycleExecutionDB.trigger_event_key,
        ).filter(
            LifecycleExecutionDB.lifecycle_rule_id.in_(rule_ids),
            LifecycleExecutionDB.trigger_event_key.in_(event_keys),
        ).all()

        lookback_start = now - timedelta(hours=self.config.lookback_hours)
        pending_by_customer = self.db.query(
            LifecycleExecutionDB.lifecycle_rule_id,
            LifecycleExecutionDB.customer_id,
        ).filter(
            LifecycleExecutionDB.lifecycle_rule_id.in_(rule_ids),
            LifecycleExecutionDB.customer_id.in_(customer_ids),
            LifecycleExecutionDB.status == ExecutionStatus.PENDING,
            LifecycleExecutionDB.created_at >= lookback_start,
        ).all()

        cooldown = set()
        if self.config.customer_cooldown_days > 0:
            cooldown_start = now - timedelta(days=self.config.customer_cooldown_days)
            recent_by_customer = self.db.query(
                LifecycleExecutionDB.lifecycle_rule_id,
                LifecycleExecutionDB.customer_id,
            ).filter(
                LifecycleExecutionDB.lifecycle_rule_id.in_(rule_ids),
                LifecycleExecutionDB.customer_id.in_(customer_ids),
                LifecycleExecutionDB.created_at >= cooldown_start,
            ).all()
            cooldown = {(r, c) for r, c in recent_by_customer}

        return {
            "event_keys": {(r, k) for r, k in existing_by_event},
            "pending": {(r, c) for r, c in pending_by_customer},
            "cooldown": cooldown,
        }

    @staticmethod
    def _is_duplicate(
        dedup: Dict[str, Set[Tuple[str, str]]],
        rule: LifecycleRuleDB,
        event: TriggerEvent,
    ) -> bool:
        if (rule.id, event.event_key) in dedup["event_keys"]:
            return True
        if (rule.id, event.customer_id) in dedup["pending"]:
            return True
        if (rule.id, event.customer_id) in dedup["cooldown"]:
            return True
        return False

    # =========================================================================
    # INSERT
    # =========================================================================

    def _insert_execution(self, rule: LifecycleRuleDB, event: TriggerEvent, now: datetime) -> bool:
        """
        Insert one PENDING execution inside a savepoint.

        A uniqueness violation means an overlapping tick got there first;
        it is logged and the row is not counted.
        """
        execution = LifecycleExecutionDB(
            id=str(uuid4()),
            lifecycle_rule_id=rule.id,
            customer_id=event.customer_id,
            trigger_event=event.trigger_event,
            trigger_event_key=event.event_key,
            appointment_id=event.source_id if isinstance(event, ServiceCompleted) else None,
            transaction_id=event.source_id if isinstance(event, TransactionCompleted) else None,
            triggered_at=event.timestamp,
            scheduled_for=compute_scheduled_for(rule, event.timestamp),
            status=ExecutionStatus.PENDING,
            created_at=now,
        )

        try:
            with self.db.begin_nested():
                self.db.add(execution)
        except IntegrityError:
            logger.warning(
                f"Execution for rule {rule.id} / {event.event_key} already exists "
                f"(concurrent tick), skipping duplicate"
            )
            return False

        return True

    def preview(self, now: datetime) -> List[Dict[str, Any]]:
        """
        Dry run: what run(now) would schedule, without writing.

        Useful for operators checking a new rule's audience.
        """
        rules = self.rule_store.list_active()
        since, until = self.scan_window(now)
        preview = []

        for trigger in TriggerCondition:
            trigger_rules = [r for r in rules if TriggerCondition(r.trigger_condition) == trigger]
            if not trigger_rules:
                continue
            events = self.trigger_source.events_for(trigger, since, until)
            dedup = self._load_dedup_state(trigger_rules, events, now) if events else None

            for event in events:
                if not is_contactable(event):
                    continue
                for rule in trigger_rules:
                    if not rule_matches_event(rule, event):
                        continue
                    if self._is_duplicate(dedup, rule, event):
                        continue
                    preview.append({
                        "rule_id": rule.id,
                        "customer_id": event.customer_id,
                        "trigger_event_key": event.event_key,
                        "scheduled_for": compute_scheduled_for(rule, event.timestamp).isoformat(),
                    })
                    dedup["event_keys"].add((rule.id, event.event_key))
                    dedup["pending"].add((rule.id, event.customer_id))
                    dedup["cooldown"].add((rule.id, event.customer_id))

        return preview

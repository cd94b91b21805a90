"""
Lifecycle Engine - Trigger Events & Engine Results

Trigger events are a closed tagged union: every event the scheduler sees is
either a ServiceCompleted or a TransactionCompleted. Filters dispatch on the
concrete type, so adding a new event kind means touching every isinstance
branch that handles TriggerEvent.
"""

from __future__ import annotations
from dataclasses import dataclass, field, asdict
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Union, Any

from .db_models import TriggerCondition


# =============================================================================
# TRIGGER EVENTS
# =============================================================================

@dataclass(frozen=True)
class ServiceCompleted:
    """A booking appointment reached status=completed."""
    source_id: str  # appointment id
    customer_id: str
    timestamp: datetime
    amount: Optional[Decimal] = None
    category: Optional[str] = None
    service_ids: List[str] = field(default_factory=list)
    phone: Optional[str] = None
    sms_consent: bool = False

    @property
    def event_key(self) -> str:
        return f"appointment:{self.source_id}"

    @property
    def trigger_event(self) -> str:
        return "appointment_completed"


@dataclass(frozen=True)
class TransactionCompleted:
    """A point-of-sale transaction reached status=completed."""
    source_id: str  # transaction id
    customer_id: str
    timestamp: datetime
    amount: Optional[Decimal] = None
    service_ids: List[str] = field(default_factory=list)
    phone: Optional[str] = None
    sms_consent: bool = False

    @property
    def event_key(self) -> str:
        return f"transaction:{self.source_id}"

    @property
    def trigger_event(self) -> str:
        return "transaction_completed"


TriggerEvent = Union[ServiceCompleted, TransactionCompleted]


TRIGGER_EVENT_TYPES = {
    TriggerCondition.SERVICE_COMPLETED: ServiceCompleted,
    TriggerCondition.AFTER_TRANSACTION: TransactionCompleted,
}


# =============================================================================
# RESULTS
# =============================================================================

def round_currency(value: Decimal) -> Decimal:
    """Two-decimal rounding, applied only when presenting a total."""
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


@dataclass
class ExecutionCounts:
    """Per-invocation counters for the execute phase."""
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    claimed_elsewhere: int = 0
    deferred: int = 0  # left pending because the tick budget ran out

    @property
    def processed(self) -> int:
        return self.sent + self.failed + self.skipped


@dataclass
class TickSummary:
    """What one engine invocation did. Serialized as the cron response."""
    scheduled: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class AttributionWindow:
    """
    Revenue attributed to sends in a scope.

    Computed on demand, never persisted. total_revenue is the unrounded sum;
    as_dict() rounds to cents for presentation.
    """
    unique_customers: int
    total_revenue: Decimal
    transaction_count: int
    recipients: int
    period_start: datetime
    period_end: datetime
    window_days: int

    def as_dict(self) -> Dict[str, Any]:
        return {
            "unique_customers": self.unique_customers,
            "total_revenue": float(round_currency(self.total_revenue)),
            "transaction_count": self.transaction_count,
            "recipients": self.recipients,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "window_days": self.window_days,
        }

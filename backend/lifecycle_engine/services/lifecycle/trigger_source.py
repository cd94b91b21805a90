"""
Trigger Source

Time-bounded polling queries over the booking and POS tables.
Rows are converted into typed trigger events (ServiceCompleted /
TransactionCompleted) so nothing downstream touches raw rows.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session, selectinload

from ...models.db_models import (
    AppointmentDB,
    TransactionDB,
    CustomerDB,
    TriggerCondition,
)
from ...models.events import ServiceCompleted, TransactionCompleted, TriggerEvent


COMPLETED = "completed"


class TriggerSource:
    """Reads completed services and purchases inside a time window."""

    def __init__(self, db: Session):
        self.db = db

    def events_for(self, trigger: TriggerCondition, since: datetime, until: datetime) -> List[TriggerEvent]:
        trigger = TriggerCondition(trigger)
        if trigger == TriggerCondition.SERVICE_COMPLETED:
            return self.service_completions(since, until)
        if trigger == TriggerCondition.AFTER_TRANSACTION:
            return self.transaction_completions(since, until)
        raise ValueError(f"Unsupported trigger condition: {trigger}")

    def service_completions(self, since: datetime, until: datetime) -> List[ServiceCompleted]:
        """Completed appointments with a customer, completed inside [since, until]."""
        rows = (
            self.db.query(AppointmentDB, CustomerDB)
            .join(CustomerDB, CustomerDB.id == AppointmentDB.customer_id)
            .options(selectinload(AppointmentDB.services))
            .filter(
                AppointmentDB.status == COMPLETED,
                AppointmentDB.completed_at.isnot(None),
                AppointmentDB.completed_at >= since,
                AppointmentDB.completed_at <= until,
                CustomerDB.deleted_at.is_(None),
            )
            .order_by(AppointmentDB.completed_at.asc())
            .all()
        )

        return [
            ServiceCompleted(
                source_id=apt.id,
                customer_id=customer.id,
                timestamp=apt.completed_at,
                amount=_amount(apt.total_amount),
                category=apt.service_category,
                service_ids=[s.service_id for s in apt.services if s.service_id],
                phone=customer.phone,
                sms_consent=bool(customer.sms_consent),
            )
            for apt, customer in rows
        ]

    def transaction_completions(self, since: datetime, until: datetime) -> List[TransactionCompleted]:
        """Completed transactions with a customer, dated inside [since, until]."""
        rows = (
            self.db.query(TransactionDB, CustomerDB)
            .join(CustomerDB, CustomerDB.id == TransactionDB.customer_id)
            .options(selectinload(TransactionDB.items))
            .filter(
                TransactionDB.status == COMPLETED,
                TransactionDB.transaction_date >= since,
                TransactionDB.transaction_date <= until,
                CustomerDB.deleted_at.is_(None),
            )
            .order_by(TransactionDB.transaction_date.asc())
            .all()
        )

        return [
            TransactionCompleted(
                source_id=tx.id,
                customer_id=customer.id,
                timestamp=tx.transaction_date,
                amount=_amount(tx.total_amount),
                service_ids=[i.service_id for i in tx.items if i.service_id],
                phone=customer.phone,
                sms_consent=bool(customer.sms_consent),
            )
            for tx, customer in rows
        ]


def _amount(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))

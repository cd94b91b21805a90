"""
Consent Ledger

Authoritative record of whether a customer may be messaged on a channel.

Core Principles:
1. The log is append-only. Rows are never edited or deleted.
2. The current flag on CustomerDB always equals the action of the most
   recent log row for that channel.
3. update() is the ONLY writer of the consent flags. Anything else that
   assigns customers.sms_consent / email_consent directly is a defect.
"""
from uuid import uuid4
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any
import logging

from sqlalchemy.orm import Session

from ...models.db_models import (
    CustomerDB,
    MarketingConsentLogDB,
    ConsentChannel,
    ConsentAction,
    ConsentSource,
)


logger = logging.getLogger(__name__)


CHANNEL_FLAG = {
    ConsentChannel.SMS: "sms_consent",
    ConsentChannel.EMAIL: "email_consent",
}


class ConsentLedgerError(Exception):
    """Raised when a consent update cannot be applied."""
    pass


class ConsentLedger:
    """
    Consent update / check entry points.

    Used by the executor as the pre-send gate and by the customer-facing
    preference surface through the consent router.
    """

    def __init__(self, db: Session):
        self.db = db

    def update(
        self,
        customer_id: str,
        channel: ConsentChannel,
        action: ConsentAction,
        source: ConsentSource,
        recorded_by: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> MarketingConsentLogDB:
        """
        Append a consent log entry and set the current flag to match.

        Both writes are flushed together; the caller owns the commit.
        A repeated action (opt_in while already opted in) is still logged,
        since the log records every customer statement, not only flips.

        An explicit `at` must be later than the channel's latest entry so the
        flag keeps following the most recent row. A server-stamped entry that
        would not sort last (clock skew) is placed just after it.
        """
        channel = ConsentChannel(channel)
        action = ConsentAction(action)
        source = ConsentSource(source)

        customer = self.db.query(CustomerDB).filter(CustomerDB.id == customer_id).first()
        if customer is None:
            raise ConsentLedgerError(f"Customer {customer_id} not found")

        flag = CHANNEL_FLAG[channel]
        previous_value = bool(getattr(customer, flag))
        new_value = action == ConsentAction.OPT_IN

        latest = self.latest_entry(customer_id, channel)
        stamp = at or datetime.utcnow()
        if latest is not None and stamp <= latest.created_at:
            if at is not None:
                raise ConsentLedgerError(
                    f"Consent entry at {at.isoformat()} is not after the latest "
                    f"{channel.value} entry ({latest.created_at.isoformat()})"
                )
            stamp = latest.created_at + timedelta(microseconds=1)

        entry = MarketingConsentLogDB(
            id=str(uuid4()),
            customer_id=customer_id,
            channel=channel,
            action=action,
            source=source,
            previous_value=previous_value,
            new_value=new_value,
            recorded_by=recorded_by,
            created_at=stamp,
        )
        self.db.add(entry)
        setattr(customer, flag, new_value)
        self.db.flush()

        if previous_value != new_value:
            logger.info(
                f"Consent {channel.value} for customer {customer_id}: "
                f"{previous_value} -> {new_value} ({source.value})"
            )
        return entry

    def check(self, customer_id: str, channel: ConsentChannel) -> bool:
        """Return the current consent flag. Unknown customers have no consent."""
        channel = ConsentChannel(channel)
        customer = self.db.query(CustomerDB).filter(CustomerDB.id == customer_id).first()
        if customer is None or customer.deleted_at is not None:
            return False
        return bool(getattr(customer, CHANNEL_FLAG[channel]))

    def history(
        self,
        customer_id: str,
        channel: Optional[ConsentChannel] = None,
    ) -> List[MarketingConsentLogDB]:
        """Consent log for a customer, oldest first."""
        query = self.db.query(MarketingConsentLogDB).filter(
            MarketingConsentLogDB.customer_id == customer_id
        )
        if channel is not None:
            query = query.filter(MarketingConsentLogDB.channel == ConsentChannel(channel))
        return query.order_by(
            MarketingConsentLogDB.created_at.asc(),
            MarketingConsentLogDB.id.asc(),
        ).all()

    def latest_entry(
        self,
        customer_id: str,
        channel: ConsentChannel,
    ) -> Optional[MarketingConsentLogDB]:
        return (
            self.db.query(MarketingConsentLogDB)
            .filter(
                MarketingConsentLogDB.customer_id == customer_id,
                MarketingConsentLogDB.channel == ConsentChannel(channel),
            )
            .order_by(
                MarketingConsentLogDB.created_at.desc(),
                MarketingConsentLogDB.id.desc(),
            )
            .first()
        )

    def verify(self, customer_id: str) -> Dict[str, Any]:
        """
        Compare each channel flag with its most recent log entry.

        A channel with no log entries is consistent only when its flag is
        False (consent is never implied).
        """
        customer = self.db.query(CustomerDB).filter(CustomerDB.id == customer_id).first()
        if customer is None:
            raise ConsentLedgerError(f"Customer {customer_id} not found")

        channels = {}
        for channel, flag in CHANNEL_FLAG.items():
            current = bool(getattr(customer, flag))
            latest = self.latest_entry(customer_id, channel)
            expected = latest.action == ConsentAction.OPT_IN if latest else False
            channels[channel.value] = {
                "current": current,
                "logged": expected,
                "consistent": current == expected,
            }

        return {
            "customer_id": customer_id,
            "consistent": all(c["consistent"] for c in channels.values()),
            "channels": channels,
        }

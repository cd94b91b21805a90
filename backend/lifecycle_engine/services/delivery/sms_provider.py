"""
SMS Delivery Provider

Contract expected from the outbound transport:

    send(destination, body) -> SendResult(success, provider_message_id, error)

Retry/backoff is the provider's concern. A successful send() means the
provider accepted the message; delivery confirmation arrives later through
the status callback and is recorded by record_delivery_status().
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol
from uuid import uuid4
import logging

import requests
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import SmsDeliveryLogDB, LifecycleExecutionDB


logger = logging.getLogger(__name__)


class DeliveryConfigurationError(Exception):
    """Raised when provider credentials are missing."""
    pass


@dataclass
class SendResult:
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None


class DeliveryProvider(Protocol):
    def send(self, destination: str, body: str) -> SendResult:
        ...


class HttpSmsProvider:
    """
    JSON-over-HTTP SMS provider.

    POST {url} with {"to", "from", "body"} and a bearer token; the response
    body carries the provider's message id.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: int = 20,
    ):
        self.url = url if url is not None else config.SMS_PROVIDER_URL
        self.token = token if token is not None else config.SMS_PROVIDER_TOKEN
        self.from_number = from_number if from_number is not None else config.SMS_FROM_NUMBER
        self.timeout = timeout

    def check_configured(self) -> None:
        missing = [
            name for name, value in (
                ("SMS_PROVIDER_URL", self.url),
                ("SMS_PROVIDER_TOKEN", self.token),
                ("SMS_FROM_NUMBER", self.from_number),
            ) if not value
        ]
        if missing:
            raise DeliveryConfigurationError(f"Missing delivery configuration: {', '.join(missing)}")

    def send(self, destination: str, body: str) -> SendResult:
        payload = {"to": destination, "from": self.from_number, "body": body}
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            r = requests.post(self.url, headers=headers, json=payload, timeout=self.timeout)
            r.raise_for_status()
        except requests.HTTPError as e:
            body_text = e.response.text if getattr(e, "response", None) is not None else ""
            status = getattr(e.response, "status_code", "")
            logger.error(f"SMS provider POST failed: {status} {body_text[:500]}")
            return SendResult(success=False, error=f"Provider error {status}: {body_text[:200]}")
        except requests.RequestException as e:
            logger.error(f"SMS provider unreachable: {e}")
            return SendResult(success=False, error=str(e))

        # 2xx means accepted, whatever the body looks like
        try:
            data = r.json() if r.content else {}
        except ValueError:
            logger.warning(f"SMS provider accepted message with non-JSON body: {r.text[:200]}")
            data = {}
        if not isinstance(data, dict):
            data = {}
        message_id = data.get("id") or data.get("sid") or data.get("message_id")
        return SendResult(success=True, provider_message_id=message_id)


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """
    E.164-ish normalization for US numbers: keep digits, prefix +1 for
    ten-digit numbers. Anything unrecognizable returns None.
    """
    if not phone:
        return None
    digits = "".join(ch for ch in phone if ch.isdigit())
    if phone.strip().startswith("+") and 8 <= len(digits) <= 15:
        return f"+{digits}"
    if len(digits) == 10:
        return f"+1{digits}"
    if len(digits) == 11 and digits.startswith("1"):
        return f"+{digits}"
    return None


def record_delivery_status(
    db: Session,
    provider_message_id: str,
    status: str,
    error_code: Optional[str] = None,
    reported_at: Optional[datetime] = None,
) -> SmsDeliveryLogDB:
    """
    Append a delivery-status row from the provider callback.

    The execution's own status is NOT touched: sent stays sent even when the
    carrier later reports undelivered.
    """
    execution = db.query(LifecycleExecutionDB).filter(
        LifecycleExecutionDB.provider_message_id == provider_message_id
    ).first()

    entry = SmsDeliveryLogDB(
        id=str(uuid4()),
        provider_message_id=provider_message_id,
        lifecycle_execution_id=execution.id if execution else None,
        customer_id=execution.customer_id if execution else None,
        status=status.lower(),
        error_code=error_code,
        reported_at=reported_at or datetime.utcnow(),
    )
    db.add(entry)
    db.flush()
    return entry

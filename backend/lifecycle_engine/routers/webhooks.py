"""
Provider Webhooks Router

Callbacks from the SMS provider (delivery status) and the short-link
service (clicks). Both append rows; neither changes an execution's status.
"""
from datetime import datetime, timezone
from typing import Optional
import logging

from dateutil import parser as date_parser
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import verify_webhook_secret
from ..database import get_db
from ..services.delivery import record_delivery_status, record_link_click

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class SmsStatusCallback(BaseModel):
    message_id: str
    status: str
    error_code: Optional[str] = None
    timestamp: Optional[str] = None


class LinkClickCallback(BaseModel):
    short_code: Optional[str] = None
    customer_id: Optional[str] = None
    lifecycle_execution_id: Optional[str] = None
    campaign_id: Optional[str] = None
    clicked_at: Optional[str] = None


def parse_callback_time(value: Optional[str]) -> datetime:
    """Provider timestamps -> naive UTC. Missing means now."""
    if not value:
        return datetime.utcnow()
    try:
        parsed = date_parser.isoparse(value)
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid timestamp: {value}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@router.post("/sms-status")
async def sms_status_callback(
    callback: SmsStatusCallback,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_webhook_secret),
):
    """Record an asynchronous delivery status for a provider message."""
    entry = record_delivery_status(
        db,
        callback.message_id,
        callback.status,
        error_code=callback.error_code,
        reported_at=parse_callback_time(callback.timestamp),
    )
    db.commit()

    if entry.lifecycle_execution_id is None:
        logger.warning(f"Delivery status for unknown message {callback.message_id}")

    return {
        "recorded": True,
        "lifecycle_execution_id": entry.lifecycle_execution_id,
    }


@router.post("/link-click")
async def link_click_callback(
    callback: LinkClickCallback,
    db: Session = Depends(get_db),
    _: bool = Depends(verify_webhook_secret),
):
    """Record a click on a tracked short link."""
    if not (callback.short_code or callback.lifecycle_execution_id or callback.campaign_id):
        raise HTTPException(
            status_code=400,
            detail="short_code, lifecycle_execution_id or campaign_id is required",
        )

    click = record_link_click(
        db,
        clicked_at=parse_callback_time(callback.clicked_at),
        short_code=callback.short_code,
        customer_id=callback.customer_id,
        lifecycle_execution_id=callback.lifecycle_execution_id,
        campaign_id=callback.campaign_id,
    )
    db.commit()
    return {"recorded": True, "click_id": click.id}

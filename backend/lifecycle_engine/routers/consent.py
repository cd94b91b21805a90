"""
Consent Router
Record and read per-channel marketing consent through the consent ledger.
"""
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..database import get_db
from ..models.db_models import ConsentChannel, ConsentAction, ConsentSource
from ..services.lifecycle import ConsentLedger, ConsentLedgerError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/consent", tags=["consent"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class ConsentUpdateRequest(BaseModel):
    customer_id: str
    channel: ConsentChannel
    action: ConsentAction
    source: ConsentSource = ConsentSource.ADMIN_MANUAL


class ConsentLogEntry(BaseModel):
    id: str
    channel: str
    action: str
    source: str
    previous_value: Optional[bool] = None
    new_value: bool
    recorded_by: Optional[str] = None
    created_at: str


class ConsentStatusResponse(BaseModel):
    customer_id: str
    sms_consent: bool
    email_consent: bool
    consistent: bool
    history: List[ConsentLogEntry]


def _entry_to_response(entry) -> ConsentLogEntry:
    return ConsentLogEntry(
        id=entry.id,
        channel=ConsentChannel(entry.channel).value,
        action=ConsentAction(entry.action).value,
        source=ConsentSource(entry.source).value,
        previous_value=entry.previous_value,
        new_value=entry.new_value,
        recorded_by=entry.recorded_by,
        created_at=entry.created_at.isoformat(),
    )


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.post("", response_model=ConsentLogEntry)
async def update_consent(
    request: ConsentUpdateRequest,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """
    Record a consent statement.

    Appends to the consent log and sets the current flag in one commit.
    """
    ledger = ConsentLedger(db)
    try:
        entry = ledger.update(
            request.customer_id,
            request.channel,
            request.action,
            request.source,
            recorded_by=admin.get("sub"),
        )
    except ConsentLedgerError as e:
        db.rollback()
        raise HTTPException(status_code=404, detail=str(e))

    db.commit()
    return _entry_to_response(entry)


@router.get("/{customer_id}", response_model=ConsentStatusResponse)
async def get_consent(
    customer_id: str,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Current consent flags with the full consent history."""
    ledger = ConsentLedger(db)
    try:
        verification = ledger.verify(customer_id)
    except ConsentLedgerError as e:
        raise HTTPException(status_code=404, detail=str(e))

    if not verification["consistent"]:
        logger.warning(f"Consent flags for customer {customer_id} disagree with the consent log")

    return ConsentStatusResponse(
        customer_id=customer_id,
        sms_consent=verification["channels"]["sms"]["current"],
        email_consent=verification["channels"]["email"]["current"],
        consistent=verification["consistent"],
        history=[_entry_to_response(e) for e in ledger.history(customer_id)],
    )

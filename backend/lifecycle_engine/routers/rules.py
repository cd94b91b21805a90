"""
Lifecycle Rules Router
Admin CRUD for lifecycle automation rules.
"""
from decimal import Decimal
from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..database import get_db
from ..models.db_models import TriggerCondition
from ..services.lifecycle import RuleStore, RuleValidationError, RuleInUseError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/lifecycle-rules", tags=["lifecycle-rules"])


# =============================================================================
# PYDANTIC MODELS
# =============================================================================

class RuleCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    trigger_condition: TriggerCondition
    delay_days: int = 0
    delay_minutes: int = 0
    sms_template: str
    min_purchase_amount: Optional[Decimal] = None
    trigger_service_id: Optional[str] = None
    service_category: Optional[str] = None
    chain_order: int = 0
    is_active: bool = True


class RuleUpdateRequest(BaseModel):
    """Partial update; omitted fields are left unchanged."""
    name: Optional[str] = None
    description: Optional[str] = None
    trigger_condition: Optional[TriggerCondition] = None
    delay_days: Optional[int] = None
    delay_minutes: Optional[int] = None
    sms_template: Optional[str] = None
    min_purchase_amount: Optional[Decimal] = None
    trigger_service_id: Optional[str] = None
    service_category: Optional[str] = None
    chain_order: Optional[int] = None
    is_active: Optional[bool] = None


class RuleResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    trigger_condition: str
    delay_days: int
    delay_minutes: int
    total_delay_minutes: int
    sms_template: str
    min_purchase_amount: Optional[float] = None
    trigger_service_id: Optional[str] = None
    service_category: Optional[str] = None
    chain_order: int
    is_active: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


def _rule_to_response(rule) -> RuleResponse:
    return RuleResponse(
        id=rule.id,
        name=rule.name,
        description=rule.description,
        trigger_condition=TriggerCondition(rule.trigger_condition).value,
        delay_days=rule.delay_days,
        delay_minutes=rule.delay_minutes,
        total_delay_minutes=rule.total_delay_minutes,
        sms_template=rule.sms_template,
        min_purchase_amount=float(rule.min_purchase_amount) if rule.min_purchase_amount is not None else None,
        trigger_service_id=rule.trigger_service_id,
        service_category=rule.service_category,
        chain_order=rule.chain_order,
        is_active=rule.is_active,
        created_at=rule.created_at.isoformat() if rule.created_at else None,
        updated_at=rule.updated_at.isoformat() if rule.updated_at else None,
    )


def _dump(model: BaseModel, **kwargs) -> dict:
    data = model.model_dump(**kwargs)
    if isinstance(data.get("trigger_condition"), TriggerCondition):
        data["trigger_condition"] = data["trigger_condition"].value
    return data


# =============================================================================
# API ENDPOINTS
# =============================================================================

@router.get("", response_model=List[RuleResponse])
async def list_rules(
    include_inactive: bool = Query(True),
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    return [_rule_to_response(r) for r in RuleStore(db).list_rules(include_inactive=include_inactive)]


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    rule = RuleStore(db).get_rule(rule_id)
    if rule is None:
        raise HTTPException(status_code=404, detail="Rule not found")
    return _rule_to_response(rule)


@router.post("", response_model=RuleResponse, status_code=201)
async def create_rule(
    request: RuleCreateRequest,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    try:
        rule = RuleStore(db).create_rule(**_dump(request))
    except RuleValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=e.errors)

    db.commit()
    logger.info(f"Lifecycle rule {rule.id} '{rule.name}' created by {admin.get('sub')}")
    return _rule_to_response(rule)


@router.patch("/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: str,
    request: RuleUpdateRequest,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Edits apply to executions scheduled afterwards."""
    try:
        rule = RuleStore(db).update_rule(rule_id, **_dump(request, exclude_unset=True))
    except KeyError:
        raise HTTPException(status_code=404, detail="Rule not found")
    except RuleValidationError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=e.errors)

    db.commit()
    return _rule_to_response(rule)


@router.delete("/{rule_id}")
async def delete_rule(
    rule_id: str,
    db: Session = Depends(get_db),
    admin: dict = Depends(require_admin),
):
    """Delete a rule that never fired. Rules with executions must be deactivated."""
    try:
        RuleStore(db).delete_rule(rule_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Rule not found")
    except RuleInUseError as e:
        db.rollback()
        raise HTTPException(status_code=409, detail=str(e))

    db.commit()
    return {"deleted": True, "rule_id": rule_id}

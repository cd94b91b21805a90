"""
Rule Store

Holds lifecycle rules: trigger condition, delay, SMS template,
target filters and chain order.

Rules are soft-disabled through is_active. A rule with executions can
never be deleted, since executions and attribution reference it.
"""
from uuid import uuid4
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models.db_models import (
    LifecycleRuleDB,
    LifecycleExecutionDB,
    TriggerCondition,
)


class RuleStoreError(Exception):
    """Raised when rules cannot be read from storage."""
    pass


class RuleValidationError(Exception):
    """Raised when a rule definition is invalid."""

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("; ".join(errors))


class RuleInUseError(Exception):
    """Raised when deleting a rule that executions still reference."""
    pass


EDITABLE_FIELDS = (
    "name",
    "description",
    "trigger_condition",
    "delay_days",
    "delay_minutes",
    "sms_template",
    "min_purchase_amount",
    "trigger_service_id",
    "service_category",
    "chain_order",
    "is_active",
)


def validate_rule_fields(fields: Dict[str, Any]) -> List[str]:
    """
    Validate a complete set of rule fields.

    Returns a list of error strings; empty when the rule is valid.
    """
    errors = []

    if not (fields.get("name") or "").strip():
        errors.append("name is required")

    try:
        TriggerCondition(fields.get("trigger_condition"))
    except ValueError:
        valid = [t.value for t in TriggerCondition]
        errors.append(f"trigger_condition must be one of {valid}")

    delay_days = fields.get("delay_days") or 0
    delay_minutes = fields.get("delay_minutes") or 0
    if not isinstance(delay_days, int) or not isinstance(delay_minutes, int):
        errors.append("delay_days and delay_minutes must be integers")
    elif delay_days < 0 or delay_minutes < 0:
        errors.append("delay cannot be negative")

    if not (fields.get("sms_template") or "").strip():
        errors.append("sms_template is required")

    min_amount = fields.get("min_purchase_amount")
    if min_amount is not None:
        try:
            if Decimal(str(min_amount)) < 0:
                errors.append("min_purchase_amount cannot be negative")
        except InvalidOperation:
            errors.append("min_purchase_amount must be a number")

    chain_order = fields.get("chain_order", 0)
    if not isinstance(chain_order, int):
        errors.append("chain_order must be an integer")

    return errors


class RuleStore:
    """CRUD + validation for lifecycle rules."""

    def __init__(self, db: Session):
        self.db = db

    # =========================================================================
    # READS
    # =========================================================================

    def get_rule(self, rule_id: str) -> Optional[LifecycleRuleDB]:
        return self.db.query(LifecycleRuleDB).filter(LifecycleRuleDB.id == rule_id).first()

    def list_rules(self, include_inactive: bool = True) -> List[LifecycleRuleDB]:
        query = self.db.query(LifecycleRuleDB)
        if not include_inactive:
            query = query.filter(LifecycleRuleDB.is_active.is_(True))
        return query.order_by(
            LifecycleRuleDB.trigger_condition,
            LifecycleRuleDB.chain_order,
            LifecycleRuleDB.name,
        ).all()

    def list_active(self, trigger: Optional[TriggerCondition] = None) -> List[LifecycleRuleDB]:
        """
        Active rules ordered by trigger, chain order, then name.

        Storage failures are wrapped in RuleStoreError so the engine can
        abort the invocation before anything is written.
        """
        try:
            query = self.db.query(LifecycleRuleDB).filter(LifecycleRuleDB.is_active.is_(True))
            if trigger is not None:
                query = query.filter(LifecycleRuleDB.trigger_condition == TriggerCondition(trigger))
            return query.order_by(
                LifecycleRuleDB.trigger_condition,
                LifecycleRuleDB.chain_order,
                LifecycleRuleDB.name,
                LifecycleRuleDB.id,
            ).all()
        except SQLAlchemyError as e:
            raise RuleStoreError(f"Failed to load lifecycle rules: {e}") from e

    def get_rules_by_ids(self, rule_ids: List[str]) -> Dict[str, LifecycleRuleDB]:
        if not rule_ids:
            return {}
        rules = self.db.query(LifecycleRuleDB).filter(LifecycleRuleDB.id.in_(rule_ids)).all()
        return {r.id: r for r in rules}

    # =========================================================================
    # WRITES
    # =========================================================================

    def create_rule(self, **fields) -> LifecycleRuleDB:
        data = {
            "description": None,
            "delay_days": 0,
            "delay_minutes": 0,
            "min_purchase_amount": None,
            "trigger_service_id": None,
            "service_category": None,
            "chain_order": 0,
            "is_active": True,
        }
        data.update({k: v for k, v in fields.items() if k in EDITABLE_FIELDS})

        errors = validate_rule_fields(data)
        if errors:
            raise RuleValidationError(errors)

        rule = LifecycleRuleDB(
            id=str(uuid4()),
            name=data["name"].strip(),
            description=data["description"],
            trigger_condition=TriggerCondition(data["trigger_condition"]),
            delay_days=data["delay_days"] or 0,
            delay_minutes=data["delay_minutes"] or 0,
            sms_template=data["sms_template"],
            min_purchase_amount=_to_decimal(data["min_purchase_amount"]),
            trigger_service_id=data["trigger_service_id"],
            service_category=data["service_category"],
            chain_order=data["chain_order"],
            is_active=bool(data["is_active"]),
        )
        self.db.add(rule)
        self.db.flush()
        return rule

    def update_rule(self, rule_id: str, **changes) -> LifecycleRuleDB:
        """
        Apply a partial update.

        Edits only affect executions scheduled afterwards; pending executions
        keep their scheduled_for but render with the rule's current template.
        """
        rule = self.get_rule(rule_id)
        if rule is None:
            raise KeyError(rule_id)

        merged = {f: getattr(rule, f) for f in EDITABLE_FIELDS}
        if isinstance(merged["trigger_condition"], TriggerCondition):
            merged["trigger_condition"] = merged["trigger_condition"].value
        merged.update({k: v for k, v in changes.items() if k in EDITABLE_FIELDS})

        errors = validate_rule_fields(merged)
        if errors:
            raise RuleValidationError(errors)

        for key, value in changes.items():
            if key not in EDITABLE_FIELDS:
                continue
            if key == "trigger_condition":
                value = TriggerCondition(value)
            elif key == "min_purchase_amount":
                value = _to_decimal(value)
            setattr(rule, key, value)

        rule.updated_at = datetime.utcnow()
        self.db.flush()
        return rule

    def set_active(self, rule_id: str, is_active: bool) -> LifecycleRuleDB:
        return self.update_rule(rule_id, is_active=is_active)

    def delete_rule(self, rule_id: str) -> None:
        """Hard-delete a rule that has never produced an execution."""
        rule = self.get_rule(rule_id)
        if rule is None:
            raise KeyError(rule_id)

        referenced = self.db.query(LifecycleExecutionDB.id).filter(
            LifecycleExecutionDB.lifecycle_rule_id == rule_id
        ).first()
        if referenced is not None:
            raise RuleInUseError(
                f"Rule {rule_id} has executions; deactivate it instead of deleting"
            )

        self.db.delete(rule)
        self.db.flush()


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))

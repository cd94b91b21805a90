"""
Lifecycle Engine - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Text, JSON, ForeignKey,
    Enum as SQLEnum, Boolean, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS
# =============================================================================

class TriggerCondition(str, Enum):
    """Business events a lifecycle rule can watch."""
    SERVICE_COMPLETED = "service_completed"
    AFTER_TRANSACTION = "after_transaction"


class ExecutionStatus(str, Enum):
    """Status of a lifecycle execution. Everything but PENDING is terminal."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = (ExecutionStatus.SENT, ExecutionStatus.FAILED, ExecutionStatus.SKIPPED)


class ConsentChannel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class ConsentAction(str, Enum):
    OPT_IN = "opt_in"
    OPT_OUT = "opt_out"


class ConsentSource(str, Enum):
    """Where a consent change originated."""
    MANUAL = "manual"
    ADMIN_MANUAL = "admin_manual"
    CUSTOMER_PORTAL = "customer_portal"
    SMS_KEYWORD = "sms_keyword"
    BOOKING_FORM = "booking_form"
    POS = "pos"
    IMPORT = "import"
    UNSUBSCRIBE_LINK = "unsubscribe_link"


class InvocationStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# =============================================================================
# CUSTOMERS & CONSENT
# =============================================================================

class CustomerDB(Base):
    """
    Customer contact record.

    sms_consent / email_consent are the CURRENT consent flags. They are
    written only by ConsentLedger.update(), which appends the matching
    MarketingConsentLogDB row in the same transaction.
    """
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True)  # UUID
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    email = Column(String(255), nullable=True)

    # Current consent state (derived from the consent log)
    sms_consent = Column(Boolean, default=False, nullable=False)
    email_consent = Column(Boolean, default=False, nullable=False)

    deleted_at = Column(DateTime, nullable=True)  # Soft delete
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    consent_log = relationship(
        "MarketingConsentLogDB",
        back_populates="customer",
        order_by="MarketingConsentLogDB.created_at",
    )


class MarketingConsentLogDB(Base):
    """
    Append-only consent log.
    Every flag flip gets a row; rows are never updated or deleted.
    """
    __tablename__ = "marketing_consent_log"

    id = Column(String(36), primary_key=True)  # UUID
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)
    channel = Column(SQLEnum(ConsentChannel), nullable=False)
    action = Column(SQLEnum(ConsentAction), nullable=False)
    source = Column(SQLEnum(ConsentSource), nullable=False)

    previous_value = Column(Boolean, nullable=True)
    new_value = Column(Boolean, nullable=False)
    recorded_by = Column(String(36), nullable=True)  # Employee id, when manual

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    customer = relationship("CustomerDB", back_populates="consent_log")


# =============================================================================
# TRIGGER SOURCES (owned by booking / POS, read-only here)
# =============================================================================

class VehicleDB(Base):
    __tablename__ = "vehicles"

    id = Column(String(36), primary_key=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    year = Column(Integer, nullable=True)
    make = Column(String(50), nullable=True)
    model = Column(String(50), nullable=True)


class AppointmentDB(Base):
    """Booking appointment. A completed appointment is a service_completed trigger."""
    __tablename__ = "appointments"

    id = Column(String(36), primary_key=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=True)
    status = Column(String(20), nullable=False, default="scheduled")
    service_category = Column(String(100), nullable=True)
    total_amount = Column(Numeric(10, 2), nullable=True)
    completed_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    services = relationship("AppointmentServiceDB", back_populates="appointment")


class AppointmentServiceDB(Base):
    __tablename__ = "appointment_services"

    id = Column(String(36), primary_key=True)
    appointment_id = Column(String(36), ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True)
    service_id = Column(String(36), nullable=False)
    service_name = Column(String(200), nullable=True)

    appointment = relationship("AppointmentDB", back_populates="services")


class TransactionDB(Base):
    """
    Point-of-sale transaction.
    A completed transaction is both an after_transaction trigger and
    the revenue event used for attribution.
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    vehicle_id = Column(String(36), ForeignKey("vehicles.id"), nullable=True)
    status = Column(String(20), nullable=False, default="completed")
    total_amount = Column(Numeric(10, 2), nullable=False, default=0)
    transaction_date = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    items = relationship("TransactionItemDB", back_populates="transaction")


class TransactionItemDB(Base):
    __tablename__ = "transaction_items"

    id = Column(String(36), primary_key=True)
    transaction_id = Column(String(36), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, index=True)
    service_id = Column(String(36), nullable=True)
    item_name = Column(String(200), nullable=True)

    transaction = relationship("TransactionDB", back_populates="items")


# =============================================================================
# LIFECYCLE RULES & EXECUTIONS
# =============================================================================

class LifecycleRuleDB(Base):
    """
    Configured automation: trigger condition + delay + SMS template.

    chain_order is a stable tiebreak among rules sharing a trigger;
    rules never block each other.
    Never deleted while executions reference it - use is_active instead.
    """
    __tablename__ = "lifecycle_rules"

    id = Column(String(36), primary_key=True)  # UUID
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)

    trigger_condition = Column(SQLEnum(TriggerCondition), nullable=False, index=True)
    delay_days = Column(Integer, nullable=False, default=0)
    delay_minutes = Column(Integer, nullable=False, default=0)
    sms_template = Column(Text, nullable=False)

    # Target filters
    min_purchase_amount = Column(Numeric(10, 2), nullable=True)
    trigger_service_id = Column(String(36), nullable=True)
    service_category = Column(String(100), nullable=True)

    chain_order = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    executions = relationship("LifecycleExecutionDB", back_populates="rule")

    @property
    def total_delay_minutes(self) -> int:
        return (self.delay_days or 0) * 1440 + (self.delay_minutes or 0)


class LifecycleExecutionDB(Base):
    """
    One scheduled/sent instance of a rule for one customer.

    Created PENDING by the scheduler; moved to a terminal status exactly
    once by the executor. trigger_event_key identifies the business event
    (e.g. "appointment:<id>") so double-scheduling is structurally impossible.
    """
    __tablename__ = "lifecycle_executions"
    __table_args__ = (
        UniqueConstraint(
            "lifecycle_rule_id", "customer_id", "trigger_event_key",
            name="uq_lifecycle_execution_trigger",
        ),
        Index("idx_lifecycle_exec_due", "status", "scheduled_for"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    lifecycle_rule_id = Column(String(36), ForeignKey("lifecycle_rules.id"), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=False, index=True)

    # Trigger context
    trigger_event = Column(String(50), nullable=False)  # appointment_completed, transaction_completed
    trigger_event_key = Column(String(100), nullable=False)
    appointment_id = Column(String(36), nullable=True, index=True)
    transaction_id = Column(String(36), nullable=True, index=True)
    triggered_at = Column(DateTime, nullable=False)

    # Scheduling
    scheduled_for = Column(DateTime, nullable=False)
    status = Column(SQLEnum(ExecutionStatus), nullable=False, default=ExecutionStatus.PENDING)

    # Claim (prevents double-send under overlapping ticks)
    claimed_by = Column(String(36), nullable=True)
    claimed_at = Column(DateTime, nullable=True)

    # Outcome
    executed_at = Column(DateTime, nullable=True)
    provider_message_id = Column(String(100), nullable=True, index=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    rule = relationship("LifecycleRuleDB", back_populates="executions")


# =============================================================================
# DELIVERY & ENGAGEMENT
# =============================================================================

class SmsDeliveryLogDB(Base):
    """
    Asynchronous delivery status reported by the provider callback.
    Kept apart from the execution's own sent/failed status:
    a send-attempt success is not a delivery confirmation.
    """
    __tablename__ = "sms_delivery_log"

    id = Column(String(36), primary_key=True)
    provider_message_id = Column(String(100), nullable=False, index=True)
    lifecycle_execution_id = Column(String(36), ForeignKey("lifecycle_executions.id"), nullable=True, index=True)
    customer_id = Column(String(36), nullable=True)
    status = Column(String(30), nullable=False)  # queued, sent, delivered, failed, undelivered
    error_code = Column(String(50), nullable=True)
    reported_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class LinkClickDB(Base):
    """Click forwarded by the short-link service."""
    __tablename__ = "link_clicks"

    id = Column(String(36), primary_key=True)
    short_code = Column(String(50), nullable=True, index=True)
    customer_id = Column(String(36), nullable=True, index=True)
    lifecycle_execution_id = Column(String(36), ForeignKey("lifecycle_executions.id"), nullable=True, index=True)
    campaign_id = Column(String(36), nullable=True, index=True)
    clicked_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class CampaignRecipientDB(Base):
    """One-off campaign send to a customer. Read for campaign attribution."""
    __tablename__ = "campaign_recipients"

    id = Column(String(36), primary_key=True)
    campaign_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True, index=True)
    sent_at = Column(DateTime, nullable=True, index=True)
    clicked_at = Column(DateTime, nullable=True)


# =============================================================================
# SETTINGS
# =============================================================================

class BusinessSettingDB(Base):
    """Key/value business settings. Values are stored as JSON."""
    __tablename__ = "business_settings"

    key = Column(String(100), primary_key=True)
    value = Column(JSON, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class FeatureFlagDB(Base):
    __tablename__ = "feature_flags"

    key = Column(String(100), primary_key=True)
    enabled = Column(Boolean, nullable=False, default=False)
    description = Column(Text, nullable=True)


# =============================================================================
# ENGINE INVOCATIONS
# =============================================================================

class EngineInvocationDB(Base):
    """
    One row per engine tick.
    Backs the engine-health read used by operational dashboards.
    """
    __tablename__ = "engine_invocations"

    id = Column(String(36), primary_key=True)  # UUID
    started_at = Column(DateTime, nullable=False, index=True)
    completed_at = Column(DateTime, nullable=True)

    status = Column(SQLEnum(InvocationStatus), nullable=False, default=InvocationStatus.RUNNING)
    scheduled = Column(Integer, nullable=False, default=0)
    sent = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

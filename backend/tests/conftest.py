"""
Shared fixtures for lifecycle engine tests.

Every test gets a fresh in-memory SQLite database with the full schema,
a fixed clock, and MagicMock delivery / short-link services.
"""
import pytest
from datetime import datetime
from decimal import Decimal
from unittest.mock import MagicMock
from uuid import uuid4

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from lifecycle_engine.database import Base
from lifecycle_engine.models import db_models  # noqa: F401  (registers tables on Base)
from lifecycle_engine.models.db_models import (
    CustomerDB,
    AppointmentDB,
    AppointmentServiceDB,
    TransactionDB,
    LifecycleRuleDB,
    LifecycleExecutionDB,
    VehicleDB,
    BusinessSettingDB,
    FeatureFlagDB,
    ExecutionStatus,
    TriggerCondition,
)
from lifecycle_engine.services.delivery import SendResult


NOW = datetime(2024, 6, 3, 12, 0, 0)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite does not emit BEGIN itself; SAVEPOINT (begin_nested) needs it
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def provider():
    """Delivery provider that accepts every message."""
    mock = MagicMock()
    mock.send.side_effect = lambda destination, body: SendResult(
        success=True, provider_message_id=f"msg-{uuid4().hex[:8]}"
    )
    return mock


@pytest.fixture
def short_links():
    mock = MagicMock()
    mock.create.side_effect = lambda long_url: "https://sho.rt/abc"
    return mock


# =============================================================================
# FACTORIES
# =============================================================================

def make_customer(db, phone="5125550100", sms_consent=True, first_name="Dana", **kwargs):
    customer = CustomerDB(
        id=kwargs.pop("id", str(uuid4())),
        first_name=first_name,
        last_name=kwargs.pop("last_name", "Reyes"),
        phone=phone,
        sms_consent=sms_consent,
        **kwargs,
    )
    db.add(customer)
    db.commit()
    return customer


def make_rule(db, trigger=TriggerCondition.SERVICE_COMPLETED, **kwargs):
    rule = LifecycleRuleDB(
        id=kwargs.pop("id", str(uuid4())),
        name=kwargs.pop("name", "Thank you follow-up"),
        trigger_condition=trigger,
        delay_days=kwargs.pop("delay_days", 0),
        delay_minutes=kwargs.pop("delay_minutes", 60),
        sms_template=kwargs.pop("sms_template", "Hi {firstName}, thanks for choosing us for {serviceName}!"),
        is_active=kwargs.pop("is_active", True),
        chain_order=kwargs.pop("chain_order", 0),
        **kwargs,
    )
    db.add(rule)
    db.commit()
    return rule


def make_appointment(db, customer, completed_at, amount="75.00", category=None, services=None, **kwargs):
    appointment = AppointmentDB(
        id=kwargs.pop("id", str(uuid4())),
        customer_id=customer.id,
        status=kwargs.pop("status", "completed"),
        service_category=category,
        total_amount=Decimal(amount) if amount is not None else None,
        completed_at=completed_at,
        **kwargs,
    )
    db.add(appointment)
    for service_id, service_name in (services or []):
        db.add(AppointmentServiceDB(
            id=str(uuid4()),
            appointment_id=appointment.id,
            service_id=service_id,
            service_name=service_name,
        ))
    db.commit()
    return appointment


def make_transaction(db, customer, when, amount="30.00", status="completed", **kwargs):
    transaction = TransactionDB(
        id=kwargs.pop("id", str(uuid4())),
        customer_id=customer.id,
        status=status,
        total_amount=Decimal(amount),
        transaction_date=when,
        **kwargs,
    )
    db.add(transaction)
    db.commit()
    return transaction


def make_execution(db, rule, customer, scheduled_for, status=ExecutionStatus.PENDING, **kwargs):
    execution = LifecycleExecutionDB(
        id=kwargs.pop("id", str(uuid4())),
        lifecycle_rule_id=rule.id,
        customer_id=customer.id,
        trigger_event=kwargs.pop("trigger_event", "appointment_completed"),
        trigger_event_key=kwargs.pop("trigger_event_key", f"appointment:{uuid4()}"),
        triggered_at=kwargs.pop("triggered_at", scheduled_for),
        scheduled_for=scheduled_for,
        status=status,
        created_at=kwargs.pop("created_at", scheduled_for),
        **kwargs,
    )
    db.add(execution)
    db.commit()
    return execution


def make_vehicle(db, customer, year=2019, make="Honda", model="Civic"):
    vehicle = VehicleDB(id=str(uuid4()), customer_id=customer.id, year=year, make=make, model=model)
    db.add(vehicle)
    db.commit()
    return vehicle


def set_business_setting(db, key, value):
    db.add(BusinessSettingDB(key=key, value=value))
    db.commit()


def set_feature_flag(db, key, enabled):
    db.add(FeatureFlagDB(key=key, enabled=enabled))
    db.commit()

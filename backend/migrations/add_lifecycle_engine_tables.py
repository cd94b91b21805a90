"""
Migration: Add lifecycle engine tables.

Creates the tables owned by the lifecycle engine:
1. lifecycle_rules - configured automations
2. lifecycle_executions - one row per scheduled send, with claim fields
   and a unique (rule, customer, trigger_event_key) constraint
3. marketing_consent_log - append-only consent history
4. sms_delivery_log - provider delivery callbacks
5. link_clicks - short-link click callbacks
6. engine_invocations - one row per tick, read by engine health

customers, appointments, transactions, campaign_recipients,
business_settings and feature_flags belong to the surrounding platform
and are expected to exist already.
"""
from sqlalchemy import create_engine, text
import os

# Use same DB URL pattern as main app
DATABASE_URL = os.getenv(
    "DATABASE_URL",
    f"postgresql://{os.getenv('USER', 'postgres')}@localhost:5432/lifecycle_engine"
)


def table_exists(conn, table_name: str) -> bool:
    """Check if a table exists in the database."""
    result = conn.execute(text("""
        SELECT EXISTS (
            SELECT FROM information_schema.tables
            WHERE table_name = :table_name
        )
    """), {"table_name": table_name})
    return result.fetchone()[0]


def run_migration():
    """Create all lifecycle engine tables."""
    engine = create_engine(DATABASE_URL)

    with engine.connect() as conn:
        # =================================================================
        # TABLE 1: lifecycle_rules
        # =================================================================
        if table_exists(conn, "lifecycle_rules"):
            print("lifecycle_rules table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE lifecycle_rules (
                    id VARCHAR(36) PRIMARY KEY,
                    name VARCHAR(200) NOT NULL,
                    description TEXT,
                    trigger_condition VARCHAR(30) NOT NULL,
                    delay_days INTEGER NOT NULL DEFAULT 0,
                    delay_minutes INTEGER NOT NULL DEFAULT 0,
                    sms_template TEXT NOT NULL,
                    min_purchase_amount NUMERIC(10, 2),
                    trigger_service_id VARCHAR(36),
                    service_category VARCHAR(100),
                    chain_order INTEGER NOT NULL DEFAULT 0,
                    is_active BOOLEAN NOT NULL DEFAULT TRUE,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_lifecycle_rules_active ON lifecycle_rules(is_active, trigger_condition)
            """))
            print("Created lifecycle_rules table")

        # =================================================================
        # TABLE 2: lifecycle_executions
        # =================================================================
        if table_exists(conn, "lifecycle_executions"):
            print("lifecycle_executions table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE lifecycle_executions (
                    id VARCHAR(36) PRIMARY KEY,
                    lifecycle_rule_id VARCHAR(36) NOT NULL REFERENCES lifecycle_rules(id),
                    customer_id VARCHAR(36) NOT NULL REFERENCES customers(id),
                    trigger_event VARCHAR(50) NOT NULL,
                    trigger_event_key VARCHAR(100) NOT NULL,
                    appointment_id VARCHAR(36),
                    transaction_id VARCHAR(36),
                    triggered_at TIMESTAMP NOT NULL,
                    scheduled_for TIMESTAMP NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'PENDING',
                    claimed_by VARCHAR(36),
                    claimed_at TIMESTAMP,
                    executed_at TIMESTAMP,
                    provider_message_id VARCHAR(100),
                    error_message TEXT,
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    CONSTRAINT uq_lifecycle_execution_trigger
                        UNIQUE (lifecycle_rule_id, customer_id, trigger_event_key)
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_lifecycle_exec_due ON lifecycle_executions(status, scheduled_for)
            """))
            conn.execute(text("""
                CREATE INDEX idx_lifecycle_exec_customer ON lifecycle_executions(customer_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_lifecycle_exec_provider_msg ON lifecycle_executions(provider_message_id)
            """))
            print("Created lifecycle_executions table")

        # =================================================================
        # TABLE 3: marketing_consent_log
        # =================================================================
        if table_exists(conn, "marketing_consent_log"):
            print("marketing_consent_log table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE marketing_consent_log (
                    id VARCHAR(36) PRIMARY KEY,
                    customer_id VARCHAR(36) NOT NULL REFERENCES customers(id),
                    channel VARCHAR(10) NOT NULL,
                    action VARCHAR(10) NOT NULL,
                    source VARCHAR(30) NOT NULL,
                    previous_value BOOLEAN,
                    new_value BOOLEAN NOT NULL,
                    recorded_by VARCHAR(36),
                    created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_consent_log_customer ON marketing_consent_log(customer_id, channel, created_at)
            """))
            print("Created marketing_consent_log table")

        # =================================================================
        # TABLE 4: sms_delivery_log
        # =================================================================
        if table_exists(conn, "sms_delivery_log"):
            print("sms_delivery_log table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE sms_delivery_log (
                    id VARCHAR(36) PRIMARY KEY,
                    provider_message_id VARCHAR(100) NOT NULL,
                    lifecycle_execution_id VARCHAR(36) REFERENCES lifecycle_executions(id),
                    customer_id VARCHAR(36),
                    status VARCHAR(30) NOT NULL,
                    error_code VARCHAR(50),
                    reported_at TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_delivery_log_message ON sms_delivery_log(provider_message_id)
            """))
            conn.execute(text("""
                CREATE INDEX idx_delivery_log_execution ON sms_delivery_log(lifecycle_execution_id)
            """))
            print("Created sms_delivery_log table")

        # =================================================================
        # TABLE 5: link_clicks
        # =================================================================
        if table_exists(conn, "link_clicks"):
            print("link_clicks table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE link_clicks (
                    id VARCHAR(36) PRIMARY KEY,
                    short_code VARCHAR(50),
                    customer_id VARCHAR(36),
                    lifecycle_execution_id VARCHAR(36) REFERENCES lifecycle_executions(id),
                    campaign_id VARCHAR(36),
                    clicked_at TIMESTAMP NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_link_clicks_execution ON link_clicks(lifecycle_execution_id)
            """))
            print("Created link_clicks table")

        # =================================================================
        # TABLE 6: engine_invocations
        # =================================================================
        if table_exists(conn, "engine_invocations"):
            print("engine_invocations table already exists")
        else:
            conn.execute(text("""
                CREATE TABLE engine_invocations (
                    id VARCHAR(36) PRIMARY KEY,
                    started_at TIMESTAMP NOT NULL,
                    completed_at TIMESTAMP,
                    status VARCHAR(20) NOT NULL DEFAULT 'RUNNING',
                    scheduled INTEGER NOT NULL DEFAULT 0,
                    sent INTEGER NOT NULL DEFAULT 0,
                    failed INTEGER NOT NULL DEFAULT 0,
                    skipped INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    details JSON
                )
            """))
            conn.execute(text("""
                CREATE INDEX idx_engine_invocations_started ON engine_invocations(started_at)
            """))
            print("Created engine_invocations table")

        conn.commit()
        print("\nLifecycle engine migration complete!")


if __name__ == "__main__":
    run_migration()

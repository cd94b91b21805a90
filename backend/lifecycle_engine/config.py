"""
Lifecycle Engine - Runtime Configuration

All settings come from environment variables with development defaults.
Secrets default to empty strings so a misconfigured deployment is detected
at invocation time instead of silently sending with placeholder credentials.
"""
import os
from dataclasses import dataclass
from typing import List


# Shared secrets
CRON_API_KEY = os.getenv("CRON_API_KEY", "")
WEBHOOK_SECRET = os.getenv("WEBHOOK_SECRET", "")
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "lifecycle-engine-secret-key-change-in-production")

# Delivery provider
SMS_PROVIDER_URL = os.getenv("SMS_PROVIDER_URL", "")
SMS_PROVIDER_TOKEN = os.getenv("SMS_PROVIDER_TOKEN", "")
SMS_FROM_NUMBER = os.getenv("SMS_FROM_NUMBER", "")

# Short-link service
SHORT_LINK_API_URL = os.getenv("SHORT_LINK_API_URL", "")
SHORT_LINK_API_TOKEN = os.getenv("SHORT_LINK_API_TOKEN", "")


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


@dataclass
class EngineConfig:
    """
    Tunables for one engine invocation.

    lookback_hours:       how far back the scheduler scans for trigger events
    hard_cutoff_days:     trigger events older than this are never scheduled
    customer_cooldown_days: one execution per (rule, customer) in this span
    batch_size:           max executions processed per tick
    tick_budget_seconds:  wall-clock budget for the execute phase
    claim_ttl_minutes:    age after which an abandoned claim may be re-taken
    attribution_window_days: default days after a send that a purchase counts
    """
    lookback_hours: int = 24
    hard_cutoff_days: int = 30
    customer_cooldown_days: int = 30
    batch_size: int = 100
    tick_budget_seconds: int = 50
    claim_ttl_minutes: int = 15
    attribution_window_days: int = 7

    def validate(self) -> List[str]:
        """Return a list of configuration problems (empty when valid)."""
        problems = []
        if self.lookback_hours <= 0:
            problems.append("lookback_hours must be positive")
        if self.hard_cutoff_days <= 0:
            problems.append("hard_cutoff_days must be positive")
        if self.customer_cooldown_days < 0:
            problems.append("customer_cooldown_days cannot be negative")
        if self.batch_size <= 0:
            problems.append("batch_size must be positive")
        if self.tick_budget_seconds <= 0:
            problems.append("tick_budget_seconds must be positive")
        if self.claim_ttl_minutes <= 0:
            problems.append("claim_ttl_minutes must be positive")
        if self.attribution_window_days < 0:
            problems.append("attribution_window_days cannot be negative")
        return problems

    @classmethod
    def from_env(cls) -> "EngineConfig":
        return cls(
            lookback_hours=_int_env("LIFECYCLE_LOOKBACK_HOURS", 24),
            hard_cutoff_days=_int_env("LIFECYCLE_HARD_CUTOFF_DAYS", 30),
            customer_cooldown_days=_int_env("LIFECYCLE_CUSTOMER_COOLDOWN_DAYS", 30),
            batch_size=_int_env("LIFECYCLE_BATCH_SIZE", 100),
            tick_budget_seconds=_int_env("LIFECYCLE_TICK_BUDGET_SECONDS", 50),
            claim_ttl_minutes=_int_env("LIFECYCLE_CLAIM_TTL_MINUTES", 15),
            attribution_window_days=_int_env("ATTRIBUTION_WINDOW_DAYS", 7),
        )


def get_engine_config() -> EngineConfig:
    return EngineConfig.from_env()

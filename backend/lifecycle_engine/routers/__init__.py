"""Lifecycle Engine - API Routers"""
from .cron import router as cron_router
from .analytics import router as analytics_router
from .rules import router as rules_router
from .consent import router as consent_router
from .webhooks import router as webhooks_router

__all__ = [
    "cron_router",
    "analytics_router",
    "rules_router",
    "consent_router",
    "webhooks_router",
]

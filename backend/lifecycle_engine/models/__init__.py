"""Lifecycle Engine - Data Models"""
from .events import (
    # Trigger events
    ServiceCompleted, TransactionCompleted, TriggerEvent, TRIGGER_EVENT_TYPES,
    # Results
    ExecutionCounts, TickSummary, AttributionWindow, round_currency,
)

__all__ = [
    "ServiceCompleted", "TransactionCompleted", "TriggerEvent", "TRIGGER_EVENT_TYPES",
    "ExecutionCounts", "TickSummary", "AttributionWindow", "round_currency",
]

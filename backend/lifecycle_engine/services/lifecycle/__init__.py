"""
Lifecycle Automation Services

Trigger Event → Scheduled Execution → Send → Attribution

- LifecycleScheduler: Phase 1, trigger events to PENDING executions
- LifecycleExecutor: Phase 2, consent-gated sends of due executions
- LifecycleEngine: one tick of both phases under a wall-clock budget
- ConsentLedger: append-only consent history per channel
- AttributionCalculator: revenue inside post-send windows
- LifecycleAnalytics: per-rule dashboards and engine health
"""

from .rule_store import RuleStore, RuleStoreError, RuleValidationError, RuleInUseError
from .consent_ledger import ConsentLedger, ConsentLedgerError
from .trigger_source import TriggerSource
from .scheduler import LifecycleScheduler, rule_matches_event, compute_scheduled_for
from .template_renderer import render_template, template_variables, STOP_FOOTER
from .executor import LifecycleExecutor
from .engine import LifecycleEngine, EngineConfigurationError
from .attribution import AttributionCalculator
from .analytics import LifecycleAnalytics, period_bounds

__all__ = [
    'RuleStore',
    'RuleStoreError',
    'RuleValidationError',
    'RuleInUseError',
    'ConsentLedger',
    'ConsentLedgerError',
    'TriggerSource',
    'LifecycleScheduler',
    'rule_matches_event',
    'compute_scheduled_for',
    'render_template',
    'template_variables',
    'STOP_FOOTER',
    'LifecycleExecutor',
    'LifecycleEngine',
    'EngineConfigurationError',
    'AttributionCalculator',
    'LifecycleAnalytics',
    'period_bounds',
]

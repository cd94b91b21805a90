"""
Lifecycle Engine - Tick Orchestration

One invocation (tick) of the engine:
1. Validate configuration (abort before writing anything)
2. Phase 1: LifecycleScheduler turns new trigger events into PENDING rows
3. Phase 2: LifecycleExecutor sends due rows within the wall-clock budget
4. Record the invocation for the engine-health read

Ticks are safe to invoke at-least-once: a re-run schedules nothing new and
finds no due rows it has not already finished.
"""
from datetime import datetime
from typing import Optional
from uuid import uuid4
import logging
import time

from sqlalchemy.orm import Session

from ...config import EngineConfig
from ...models.db_models import EngineInvocationDB, InvocationStatus
from ...models.events import ExecutionCounts, TickSummary
from ..delivery import DeliveryProvider, ShortLinkService, DeliveryConfigurationError
from .executor import LifecycleExecutor
from .scheduler import LifecycleScheduler


logger = logging.getLogger(__name__)


class EngineConfigurationError(Exception):
    """Raised when the engine cannot run with its current configuration."""
    pass


class LifecycleEngine:
    """
    Usage:
        engine = LifecycleEngine(db, HttpSmsProvider(), HttpShortLinkService())
        summary = engine.tick()
    """

    def __init__(
        self,
        db: Session,
        provider: DeliveryProvider,
        short_links: Optional[ShortLinkService] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.db = db
        self.provider = provider
        self.short_links = short_links
        self.config = config or EngineConfig()

    def check_configuration(self) -> None:
        problems = self.config.validate()
        check = getattr(self.provider, "check_configured", None)
        if check is not None:
            try:
                check()
            except DeliveryConfigurationError as e:
                problems.append(str(e))
        if problems:
            raise EngineConfigurationError("; ".join(problems))

    def tick(self, now: Optional[datetime] = None) -> TickSummary:
        """
        Run both phases once.

        Raises:
            EngineConfigurationError: before anything is written
            RuleStoreError: rules could not be loaded; invocation marked failed
        """
        self.check_configuration()

        now = now or datetime.utcnow()
        deadline = time.monotonic() + self.config.tick_budget_seconds

        invocation = EngineInvocationDB(
            id=str(uuid4()),
            started_at=now,
            status=InvocationStatus.RUNNING,
        )
        self.db.add(invocation)
        self.db.commit()
        invocation_id = invocation.id

        summary = TickSummary()
        counts = ExecutionCounts()
        try:
            summary.scheduled = LifecycleScheduler(self.db, self.config).run(now)

            executor = LifecycleExecutor(
                self.db, self.provider, self.short_links, self.config,
                worker_id=invocation_id,
            )
            counts = executor.run(now, deadline=deadline)
            summary.sent = counts.sent
            summary.failed = counts.failed
            summary.skipped = counts.skipped
        except Exception as e:
            self.db.rollback()
            logger.error(f"Lifecycle tick {invocation_id} failed: {e}")
            self._finish(invocation_id, InvocationStatus.FAILED, summary, counts, error=str(e))
            raise

        self._finish(invocation_id, InvocationStatus.COMPLETED, summary, counts)
        logger.info(
            f"Lifecycle tick {invocation_id}: scheduled={summary.scheduled} sent={summary.sent} "
            f"failed={summary.failed} skipped={summary.skipped}"
        )
        return summary

    def _finish(
        self,
        invocation_id: str,
        status: InvocationStatus,
        summary: TickSummary,
        counts: ExecutionCounts,
        error: Optional[str] = None,
    ) -> None:
        invocation = self.db.query(EngineInvocationDB).filter(
            EngineInvocationDB.id == invocation_id
        ).first()
        if invocation is None:
            return

        invocation.status = status
        invocation.completed_at = datetime.utcnow()
        invocation.scheduled = summary.scheduled
        invocation.sent = summary.sent
        invocation.failed = summary.failed
        invocation.skipped = summary.skipped
        invocation.error_message = error[:1000] if error else None
        invocation.details = {
            "claimed_elsewhere": counts.claimed_elsewhere,
            "deferred": counts.deferred,
        }
        self.db.commit()

#!/usr/bin/env python3
"""
Lifecycle Tick Script
Runs one lifecycle engine tick against the configured database.

For hosts that schedule with cron instead of calling the HTTP endpoint.

Usage:
    python -m scripts.run_lifecycle_tick [--dry-run]

Example crontab (every 5 minutes):
    */5 * * * * cd /srv/lifecycle/backend && python -m scripts.run_lifecycle_tick
"""
import sys
import os
import json
import logging

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime

from lifecycle_engine.config import EngineConfig
from lifecycle_engine.database import SessionLocal
from lifecycle_engine.services.delivery import HttpSmsProvider, HttpShortLinkService
from lifecycle_engine.services.lifecycle import (
    LifecycleEngine,
    LifecycleScheduler,
    EngineConfigurationError,
    RuleStoreError,
)


def run_tick() -> int:
    config = EngineConfig.from_env()
    short_links = HttpShortLinkService()

    db = SessionLocal()
    try:
        engine = LifecycleEngine(
            db,
            HttpSmsProvider(),
            short_links if short_links.api_url else None,
            config,
        )
        summary = engine.tick()
    except (EngineConfigurationError, RuleStoreError) as e:
        print(f"Error: {e}")
        return 1
    finally:
        db.close()

    print(json.dumps(summary.to_dict()))
    return 0


def dry_run() -> int:
    """Print what the scheduler would create, without writing."""
    db = SessionLocal()
    try:
        preview = LifecycleScheduler(db, EngineConfig.from_env()).preview(datetime.utcnow())
    finally:
        db.close()

    print(f"{len(preview)} executions would be scheduled")
    for item in preview:
        print(json.dumps(item, default=str))
    return 0


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if "--dry-run" in sys.argv[1:]:
        sys.exit(dry_run())
    sys.exit(run_tick())

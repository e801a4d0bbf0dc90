"""
Background expiration of subscriptions.

Runs once when the process starts and then every SWEEP_INTERVAL_HOURS.
APScheduler keeps at most one sweep running at a time; a tick that fires while
a sweep is still running is coalesced away.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import config
from .app_api import AppAPI
from .database import DB_FILE, connect

JOB_ID = "expire-subscriptions"


def sweep_expired(db_path: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, int]:
    """Opens its own connection (the scheduler thread must not share the request ones)."""
    app_api = AppAPI(connection=connect(db_path or DB_FILE))
    try:
        return app_api.sweep_expired(now)
    finally:
        app_api.close()


def run_sweep_safely(db_path: Optional[str] = None) -> Optional[Dict[str, int]]:
    """Scheduler entry point. Failures are logged; the next tick retries."""
    try:
        return sweep_expired(db_path)
    except Exception as e:
        logging.error(f"Error checking subscriptions: {e}", exc_info=True)
        return None


class ExpirationSweeper:
    def __init__(
        self,
        db_path: Optional[str] = None,
        interval_hours: Optional[int] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.db_path = db_path or DB_FILE
        self.interval_hours = interval_hours or config.SWEEP_INTERVAL_HOURS
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")

    def start(self) -> None:
        self.scheduler.add_job(
            run_sweep_safely,
            trigger=IntervalTrigger(hours=self.interval_hours),
            args=[self.db_path],
            id=JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self.scheduler.start()
        logging.info(f"Expiration sweeper started (every {self.interval_hours}h) on {self.db_path}.")

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logging.info("Expiration sweeper stopped.")

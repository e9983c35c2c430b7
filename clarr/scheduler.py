#!/usr/bin/env python3
"""
scheduler.py — Cron-driven cleanup runs (APScheduler)
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .settings_manager import ConfigurationError

LOG = logging.getLogger("clarr.scheduler")

JOB_ID = "clarr-cleanup"


def parse_cron(expression: str, timezone=None) -> CronTrigger:
    """Standard 5-field crontab. Raises ConfigurationError when invalid."""
    try:
        return CronTrigger.from_crontab(expression, timezone=timezone)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(f"invalid cron schedule {expression!r}: {e}") from e


class CleanupScheduler:
    def __init__(self, cron_expression: str, task: Callable[[], object], timezone=None):
        self.cron_expression = cron_expression
        self.trigger = parse_cron(cron_expression, timezone)
        self.task = task
        self._scheduler = BackgroundScheduler(timezone=timezone) if timezone else BackgroundScheduler()
        self._scheduler.add_job(
            func=self._fire,
            trigger=self.trigger,
            id=JOB_ID,
            name="cleanup",
            max_instances=1,
            coalesce=True,
        )

    def _fire(self):
        LOG.info("Scheduled cleanup starting")
        try:
            self.task()
        except Exception as e:
            LOG.exception(f"Scheduled cleanup could not start: {e}")

    @property
    def running(self) -> bool:
        return self._scheduler.running

    @property
    def next_run_time(self) -> Optional[str]:
        job = self._scheduler.get_job(JOB_ID)
        next_run = getattr(job, "next_run_time", None) if job else None
        return next_run.isoformat() if next_run else None

    def start(self):
        self._scheduler.start()
        LOG.info(f"Cleanup scheduled: '{self.cron_expression}' (next run: {self.next_run_time})")

    def shutdown(self):
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            LOG.info("Scheduler stopped")

"""
Cron Scheduler Service for reconcile and status-sweep jobs.
Uses APScheduler's asyncio scheduler so jobs run on the application loop.
"""

import logging
from typing import Dict, List, Optional, Any

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from core.engine import ALL_SOURCES_JOB

logger = logging.getLogger(__name__)


def cron_trigger(expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Build a trigger from a 5-field or 6-field (leading seconds) cron expression.

    Day-of-week uses APScheduler semantics (mon-sun / 0 = Monday).
    """
    parts = expression.split()
    if len(parts) == 5:
        parts = ["0"] + parts
    if len(parts) != 6:
        raise ValueError(f"Invalid cron expression: {expression}")

    second, minute, hour, day, month, day_of_week = parts
    return CronTrigger(
        second=second,
        minute=minute,
        hour=hour,
        day=day,
        month=month,
        day_of_week=day_of_week,
        timezone=timezone,
    )


class JobScheduler:
    """
    Schedules the reconcile cycle plus the status sweep.

    Sources without their own cron are reconciled one after another by a
    single ``reconcile:all`` job on the default schedule. A source with its
    own cron gets a dedicated job instead.

    Overlapping runs of the same job are prevented twice: APScheduler's
    ``max_instances=1`` and the engine's per-job run guard.
    """

    def __init__(self, engine, sweep_cron: Optional[str] = None, default_source_cron: str = "0 0 3 * * *",
                 timezone: Optional[str] = None):
        self.engine = engine
        self.sweep_cron = sweep_cron
        self.default_source_cron = default_source_cron
        self.timezone = timezone
        self.scheduler = AsyncIOScheduler(timezone=timezone) if timezone else AsyncIOScheduler()
        self.scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)

    @classmethod
    def from_config(cls, engine, app_config) -> "JobScheduler":
        return cls(
            engine,
            sweep_cron=app_config.CRON_STATUS_SWEEP or None,
            default_source_cron=app_config.DEFAULT_SOURCE_CRON,
        )

    def schedule_jobs(self):
        shared: List[str] = []
        for source_tag, extractor in self.engine.extractors.items():
            expression = getattr(extractor, "cron", None)
            if not expression:
                shared.append(source_tag)
                continue
            self.scheduler.add_job(
                self.engine.reconcile_source,
                trigger=cron_trigger(expression, self.timezone),
                args=[source_tag],
                id=f"reconcile:{source_tag}",
                name=f"Reconcile {source_tag}",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"[Scheduler] reconcile:{source_tag} scheduled at '{expression}'")

        if shared:
            self.scheduler.add_job(
                self.engine.reconcile_all,
                trigger=cron_trigger(self.default_source_cron, self.timezone),
                args=[shared],
                id=ALL_SOURCES_JOB,
                name="Reconcile sources in sequence",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(
                f"[Scheduler] {ALL_SOURCES_JOB} scheduled at '{self.default_source_cron}' for {', '.join(shared)}"
            )

        if self.sweep_cron:
            self.scheduler.add_job(
                self.engine.sweep_statuses,
                trigger=cron_trigger(self.sweep_cron, self.timezone),
                id="status-sweep",
                name="Status sweep",
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info(f"[Scheduler] status-sweep scheduled at '{self.sweep_cron}'")

    def start(self):
        """Schedule jobs and start the scheduler. Must be called from a running event loop."""
        logger.info("[Scheduler] Starting...")
        self.schedule_jobs()
        self.scheduler.start()
        logger.info(f"[Scheduler] Started with {len(self.scheduler.get_jobs())} job(s)")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("[Scheduler] Stopped")

    def get_jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": job.id,
                "name": job.name,
                "next_run_time": job.next_run_time.isoformat() if getattr(job, "next_run_time", None) else None,
            }
            for job in self.scheduler.get_jobs()
        ]

    def _on_job_event(self, event):
        if event.exception:
            logger.error(f"[Scheduler] Job {event.job_id} failed: {event.exception}")
        else:
            logger.info(f"[Scheduler] Job {event.job_id} finished")

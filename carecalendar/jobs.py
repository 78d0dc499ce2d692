"""
Background jobs: rolling slot materialization, reminders and retention.

Each job is a plain function over a ``SchedulingService`` so it can be run
once from the CLI or on a cadence by APScheduler.
"""

from __future__ import annotations

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from .config import JobsConfig
from .services.scheduling import SchedulingService

logger = logging.getLogger(__name__)

# Scheduler job IDs
MATERIALIZATION_JOB_ID = "slot_materialization"
REMINDER_JOB_ID = "appointment_reminders"
RETENTION_JOB_ID = "retention_purge"


def run_materialization_job(service: SchedulingService) -> int:
    """Extend every active rule's window. Returns the number of slots created."""
    try:
        reports = service.run_materialization()
    except Exception:
        logger.exception("Materialization job failed")
        return 0
    created = sum(report.created for report in reports)
    logger.info("Materialization job: %d rules checked, %d slots created", len(reports), created)
    return created


def run_reminder_job(service: SchedulingService) -> int:
    try:
        reminded = service.collect_due_reminders()
    except Exception:
        logger.exception("Reminder job failed")
        return 0
    if reminded:
        logger.info("Reminder job: %d reminders due", len(reminded))
    return len(reminded)


def run_retention_job(service: SchedulingService) -> tuple[int, int]:
    """Purge old cancelled slots and expired rules. Returns (slots, rules) removed."""
    try:
        slots = service.purge_cancelled_slots()
        rules = service.purge_expired_rules()
    except Exception:
        logger.exception("Retention job failed")
        return 0, 0
    logger.info("Retention job: purged %d cancelled slots and %d expired rules", slots, len(rules))
    return slots, len(rules)


def build_scheduler(service: SchedulingService, jobs: JobsConfig | None = None) -> BackgroundScheduler:
    """Create (but do not start) a scheduler with all maintenance jobs registered."""
    jobs = jobs or service.config.jobs
    scheduler = BackgroundScheduler(timezone=service.config.default_timezone)
    scheduler.add_job(
        run_materialization_job,
        "interval",
        minutes=jobs.materialization_interval_minutes,
        args=[service],
        id=MATERIALIZATION_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_reminder_job,
        "interval",
        minutes=jobs.reminder_interval_minutes,
        args=[service],
        id=REMINDER_JOB_ID,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        run_retention_job,
        "cron",
        hour=jobs.retention_hour,
        minute=0,
        args=[service],
        id=RETENTION_JOB_ID,
    )
    return scheduler

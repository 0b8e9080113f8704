# booking_service/scheduler.py
"""
Background task scheduler for the booking lifecycle.

Uses APScheduler to run periodic jobs for:
- Releasing spots held by abandoned checkouts
- Materializing upcoming instances of recurring sessions
- Retrying payment webhook events that failed with a retriable error
"""

import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MISSED

from booking_service.background_tasks.booking_tasks import (
    expire_abandoned_bookings,
    generate_upcoming_instances,
    retry_failed_webhook_events,
)

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = None


def _on_job_error(event):
    """Log scheduler job errors with full context."""
    exc = event.exception
    logger.error(
        "Scheduled job FAILED: job_id=%s error=%s",
        event.job_id, exc,
        exc_info=(type(exc), exc, None) if exc else None,
    )
    if event.traceback:
        logger.error("Traceback for job %s:\n%s", event.job_id, event.traceback)


def _on_job_missed(event):
    """Log when a scheduled job misses its execution window."""
    logger.warning(
        "Scheduled job MISSED: job_id=%s scheduled_run_time=%s",
        event.job_id,
        event.scheduled_run_time,
    )


def init_scheduler():
    """
    Initialize the background scheduler with all periodic tasks.

    Called once when the application starts up.
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already initialized")
        return scheduler

    scheduler = BackgroundScheduler(
        timezone="UTC",
        job_defaults={
            'coalesce': True,  # Combine missed executions
            'max_instances': 1,  # Only one instance of each job at a time
            'misfire_grace_time': 60
        }
    )

    # Job 1: Release spots of abandoned checkouts
    scheduler.add_job(
        func=expire_abandoned_bookings,
        trigger=IntervalTrigger(minutes=5),
        id='expire_abandoned_bookings',
        name='Expire Abandoned Pending Bookings',
        replace_existing=True
    )
    logger.info("Scheduled job: expire_abandoned_bookings (every 5 minutes)")

    # Job 2: Materialize upcoming instances of recurring templates
    scheduler.add_job(
        func=generate_upcoming_instances,
        trigger=CronTrigger(hour=3, minute=0),
        id='generate_upcoming_instances',
        name='Generate Upcoming Session Instances',
        replace_existing=True
    )
    logger.info("Scheduled job: generate_upcoming_instances (daily at 3 AM UTC)")

    # Job 3: Retry failed webhook events with backoff
    scheduler.add_job(
        func=retry_failed_webhook_events,
        trigger=IntervalTrigger(minutes=1),
        id='retry_failed_webhook_events',
        name='Retry Failed Payment Webhook Events',
        replace_existing=True
    )
    logger.info("Scheduled job: retry_failed_webhook_events (every 1 minute)")

    scheduler.add_listener(_on_job_error, EVENT_JOB_ERROR)
    scheduler.add_listener(_on_job_missed, EVENT_JOB_MISSED)

    scheduler.start()
    logger.info("Background scheduler started successfully")
    return scheduler


def shutdown_scheduler():
    """Gracefully shutdown the scheduler on application shutdown."""
    global scheduler
    if scheduler is not None:
        scheduler.shutdown(wait=True)
        logger.info("Background scheduler shutdown complete")
        scheduler = None


def get_scheduler_status():
    """Current status of all scheduled jobs."""
    if scheduler is None:
        return {"status": "not_initialized", "jobs": []}

    jobs = []
    for job in scheduler.get_jobs():
        jobs.append({
            "id": job.id,
            "name": job.name,
            "next_run_time": job.next_run_time.isoformat() if job.next_run_time else None,
            "trigger": str(job.trigger)
        })
    return {"status": "running" if scheduler.running else "stopped", "jobs": jobs}

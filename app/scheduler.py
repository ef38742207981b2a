"""
APScheduler Background Jobs

Periodic jobs: enqueue due discovery sweeps onto the Dramatiq queue, and
fail sweeps a dead worker left pending or running.
Jobs run via BackgroundScheduler in FastAPI process; schedules are in UTC.
"""

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = structlog.get_logger(__name__)


def run_due_sweep_enqueue():
    """
    Wrapper function for the scheduled sweep job.

    Called by APScheduler every scheduler_interval_minutes to enqueue a sweep
    for each profile whose next_run_at has passed.
    """
    try:
        from app.actors import enqueue_due_sweeps

        enqueued = enqueue_due_sweeps()
        logger.info("due_sweeps_enqueued", count=enqueued)

    except Exception as e:
        logger.error("due_sweep_enqueue_crashed", error=str(e), exc_info=True)


def run_stale_sweep_reaper():
    """
    Wrapper function for the stale sweep job.

    Called by APScheduler every scheduler_interval_minutes.
    """
    try:
        from app.services.discovery.orchestrator import get_orchestrator

        reaped = get_orchestrator().reap_stale_sweeps()
        if reaped:
            logger.warning("stale_sweeps_reaped", count=reaped)

    except Exception as e:
        logger.error("stale_sweep_reaper_crashed", error=str(e), exc_info=True)


def start_scheduler(environment: str = "production", interval_minutes: int = 15) -> BackgroundScheduler:
    """
    Start background scheduler with all jobs.

    Args:
        environment: Current environment (skip scheduler in testing)
        interval_minutes: Minutes between due-sweep checks

    Returns:
        BackgroundScheduler instance
    """
    scheduler = BackgroundScheduler(timezone="UTC")

    if environment == "testing":
        logger.info("scheduler_skipped", reason="testing_environment")
        return scheduler

    scheduler.add_job(
        run_due_sweep_enqueue,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="discovery_sweep_enqueue",
        name="Enqueue Due Discovery Sweeps",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    logger.info("job_registered", job="discovery_sweep_enqueue", interval_minutes=interval_minutes)

    scheduler.add_job(
        run_stale_sweep_reaper,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="stale_sweep_reaper",
        name="Fail Abandoned Discovery Sweeps",
        replace_existing=True,
        max_instances=1,
        coalesce=True
    )
    logger.info("job_registered", job="stale_sweep_reaper", interval_minutes=interval_minutes)

    scheduler.start()
    logger.info("scheduler_started", jobs=["discovery_sweep_enqueue", "stale_sweep_reaper"])

    return scheduler


def stop_scheduler(scheduler: BackgroundScheduler):
    """
    Stop background scheduler gracefully.

    Args:
        scheduler: BackgroundScheduler instance to stop
    """
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("scheduler_stopped")


__all__ = [
    "start_scheduler",
    "stop_scheduler",
    "run_due_sweep_enqueue",
    "run_stale_sweep_reaper",
]

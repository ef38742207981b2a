"""
Discovery Sweep Actor
Dramatiq actor that runs scheduled and queued discovery sweeps
"""

from datetime import datetime
from typing import Optional

import dramatiq
import structlog

from app.config import settings

logger = structlog.get_logger()


@dramatiq.actor(
    # Failed sweeps are final; the next run is a new sweep record
    max_retries=0,
    # Backstop above the orchestrator's own deadline
    time_limit=(settings.sweep_timeout_seconds + 120) * 1000,
    queue_name="discovery_sweeps"
)
def run_discovery_sweep(
    company_id: str,
    user_id: Optional[str] = None,
    correlation_id: Optional[str] = None
) -> None:
    """
    Execute one discovery sweep for a company.

    The orchestrator never raises for sweep failures; the outcome is logged
    and already persisted on the sweep record. When the time_limit below
    interrupts a sweep, the orchestrator records it as failed and the
    interrupt propagates to the worker.

    Args:
        company_id: Company whose discovery profile drives the sweep
        user_id: Triggering user for queued manual sweeps, None for scheduled runs
        correlation_id: Request id of the call that queued the sweep
    """
    from app.services.discovery.orchestrator import get_orchestrator

    log = logger.bind(company_id=company_id, actor="run_discovery_sweep")
    log.info("discovery_sweep_job_started")

    outcome = get_orchestrator().execute_sweep(
        company_id,
        user_id=user_id,
        correlation_id=correlation_id
    )

    if outcome.success:
        log.info("discovery_sweep_job_completed", sweep_id=outcome.sweep_id, leads=outcome.leads_found)
    else:
        log.warning(
            "discovery_sweep_job_unsuccessful",
            sweep_id=outcome.sweep_id,
            error=outcome.error,
            error_code=outcome.error_code
        )


def enqueue_due_sweeps(now: Optional[datetime] = None, repository=None) -> int:
    """
    Enqueue a sweep for every profile whose schedule is due.

    Each enqueued profile's next_run_at is advanced right away, so a sweep
    that is denied or fails is not re-enqueued on every scheduler tick.
    Companies with a pending or running sweep are skipped.

    Args:
        now: Current time (defaults to UTC now)
        repository: DiscoveryRepository (defaults to the process-wide store)

    Returns:
        Number of sweeps enqueued
    """
    from app.models.discovery import utc_now
    from app.services.discovery.repository import DiscoveryRepository
    from app.services.discovery.schedule import calculate_next_run_time
    from app.services.store import get_store

    repository = repository or DiscoveryRepository(get_store())
    now = now or utc_now()

    enqueued = 0
    for profile in repository.find_due_profiles(now):
        company_id = profile.company_id
        if repository.has_active_sweep(company_id):
            logger.info("scheduled_sweep_skipped", company_id=company_id, reason="sweep_in_progress")
            continue

        schedule = profile.schedule
        next_run_at = calculate_next_run_time(
            schedule.frequency, schedule.preferred_time, schedule.custom_days, now=now
        )
        repository.set_next_run_at(company_id, next_run_at)
        run_discovery_sweep.send(company_id)
        enqueued += 1
        logger.info("scheduled_sweep_enqueued", company_id=company_id, next_run_at=next_run_at.isoformat())

    return enqueued

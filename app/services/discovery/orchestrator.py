"""
Sweep Orchestrator

Runs one discovery sweep end to end:

    1. Load and validate the company's discovery profile
    2. Ask the limit policy whether the sweep may run
    3. Check the sweep circuit breaker
    4. Reserve a daily sweep slot and create the pending sweep record
    5. Mark it running and execute the pipeline under a token budget and deadline
    6. Commit results (success) or record the error (failure)

Every sweep that got a record ends in exactly one ledger update and exactly
one breaker outcome, whichever way it ends. Denials before the record exists
touch neither. Errors never escape execute_sweep; callers get a SweepOutcome.
Worker interrupts (the actor's time limit, shutdown) are recorded as a failed
sweep and then re-raised. reap_stale_sweeps fails records that a dead worker
left pending or running.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

import structlog
from dramatiq.middleware import TimeLimitExceeded

from app.config import settings
from app.models.discovery import (
    DiscoveryProfile,
    DiscoverySweep,
    SweepError,
    SweepStatus,
    SweepTrigger,
    TokenUsage,
    utc_now,
)
from app.services.discovery.deadline import SweepDeadline
from app.services.discovery.errors import ConfigurationError, SweepTimeoutError
from app.services.discovery.notifications import SweepNotifier
from app.services.discovery.pipeline import SweepPipeline
from app.services.discovery.repository import DiscoveryRepository
from app.services.discovery.schedule import calculate_next_run_time
from app.services.monitoring.error_tracking import add_breadcrumb, capture_exception, set_sweep_context
from app.services.token_safety.circuit_breaker import CircuitOpenError, SweepCircuitBreaker
from app.services.token_safety.policy import LimitPolicyEvaluator, TokenSafetyConfig
from app.services.token_safety.token_budget import TokenBudgetTracker
from app.services.token_safety.usage_ledger import DailyUsageLedger, validate_company_id

logger = structlog.get_logger(__name__)

# SweepOutcome.error_code values
ERROR_CONFIGURATION = "configuration"
ERROR_QUOTA_EXCEEDED = "quota_exceeded"
ERROR_CIRCUIT_OPEN = "circuit_open"
ERROR_EXECUTION_FAILED = "execution_failed"
ERROR_TIMEOUT = "timeout"


@dataclass
class SweepOutcome:
    """Result of execute_sweep. sweep_id is None when the sweep was refused before a record existed."""
    success: bool
    sweep_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    leads_found: int = 0


def validate_profile(company_id: str, profile: Optional[DiscoveryProfile]) -> DiscoveryProfile:
    """
    Check that a profile exists and carries the configuration a sweep needs.

    Raises:
        ConfigurationError: If the profile is missing, has no business
            description or targets no industry
    """
    if profile is None:
        raise ConfigurationError(company_id)
    missing = profile.missing_configuration()
    if missing:
        raise ConfigurationError(company_id, missing_field=missing)
    return profile


class SweepOrchestrator:
    """
    Usage:
        orchestrator = get_orchestrator()
        outcome = orchestrator.execute_sweep(company_id, user_id=user_id)
        if not outcome.success:
            print(outcome.error_code, outcome.error)
    """

    def __init__(
        self,
        repository: DiscoveryRepository,
        ledger: DailyUsageLedger,
        evaluator: LimitPolicyEvaluator,
        breaker: SweepCircuitBreaker,
        pipeline: SweepPipeline,
        config: TokenSafetyConfig,
        notifier: Optional[SweepNotifier] = None,
        timeout_seconds: Optional[float] = None,
        stale_grace_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = utc_now,
        deadline_clock: Callable[[], float] = time.monotonic
    ):
        self.repository = repository
        self.ledger = ledger
        self.evaluator = evaluator
        self.breaker = breaker
        self.pipeline = pipeline
        self.config = config
        self.notifier = notifier
        self.timeout_seconds = timeout_seconds or settings.sweep_timeout_seconds
        self.stale_grace_seconds = (
            stale_grace_seconds if stale_grace_seconds is not None else settings.stale_sweep_grace_seconds
        )
        self.clock = clock
        self.deadline_clock = deadline_clock

    def execute_sweep(
        self,
        company_id: str,
        user_id: Optional[str] = None,
        triggered_by: Optional[SweepTrigger] = None,
        correlation_id: Optional[str] = None
    ) -> SweepOutcome:
        """
        Run one sweep for a company.

        Args:
            company_id: Tenant whose profile drives the sweep
            user_id: Triggering user; None for scheduled runs
            triggered_by: Overrides the trigger derived from user_id
            correlation_id: Request id carried into logs and Sentry

        Returns:
            SweepOutcome; failures carry error and error_code instead of raising
        """
        if triggered_by is None:
            triggered_by = SweepTrigger.manual if user_id else SweepTrigger.schedule
        triggered_by = SweepTrigger(triggered_by)
        log = logger.bind(company_id=company_id, triggered_by=triggered_by.value)
        set_sweep_context(None, company_id, triggered_by.value, correlation_id)

        # Configuration
        try:
            validate_company_id(company_id)
            profile = validate_profile(company_id, self.repository.get_profile(company_id))
        except ValueError as e:
            return SweepOutcome(success=False, error=str(e), error_code=ERROR_CONFIGURATION)
        except ConfigurationError as e:
            log.info("sweep_rejected", reason="configuration", missing_field=e.missing_field)
            return SweepOutcome(success=False, error=str(e), error_code=ERROR_CONFIGURATION)

        # Limits
        decision = self.evaluator.can_run_sweep(company_id)
        if not decision.allowed:
            log.info("sweep_rejected", reason="limit", limit=decision.limit)
            return SweepOutcome(success=False, error=decision.reason, error_code=ERROR_QUOTA_EXCEEDED)

        try:
            self.breaker.ensure_circuit_closed()
        except CircuitOpenError as e:
            log.warning("sweep_rejected", reason="circuit_open", retry_after=e.retry_after)
            return SweepOutcome(success=False, error=str(e), error_code=ERROR_CIRCUIT_OPEN)

        # The slot reservation closes the race between concurrent triggers
        # that both passed the daily sweep check above.
        max_sweeps = self.config.max_sweeps_per_company_per_day
        if not self.ledger.reserve_sweep_slot(company_id, max_sweeps):
            log.info("sweep_rejected", reason="limit", limit="company_daily_sweeps")
            return SweepOutcome(
                success=False,
                error=f"Daily sweep limit reached ({max_sweeps}/{max_sweeps}). Try again tomorrow.",
                error_code=ERROR_QUOTA_EXCEEDED
            )

        sweep = DiscoverySweep(
            company_id=company_id,
            discovery_profile_id=profile.id,
            status=SweepStatus.pending,
            started_at=self.clock(),
            triggered_by=triggered_by,
            triggered_by_user_id=user_id
        )
        try:
            sweep_id = self.repository.create_sweep(sweep)
        except Exception as e:
            self.ledger.release_sweep_slot(company_id)
            log.error("sweep_create_failed", error=str(e), exc_info=True)
            capture_exception(e)
            return SweepOutcome(
                success=False,
                error=f"Failed to create sweep record: {e}",
                error_code=ERROR_EXECUTION_FAILED
            )

        log = log.bind(sweep_id=sweep_id)
        set_sweep_context(sweep_id, company_id, triggered_by.value, correlation_id)
        return self._run(profile, sweep_id, log)

    def _run(self, profile: DiscoveryProfile, sweep_id: str, log) -> SweepOutcome:
        company_id = profile.company_id
        tracker = TokenBudgetTracker(sweep_id, self.config)
        deadline = SweepDeadline(self.timeout_seconds, clock=self.deadline_clock)
        pipeline_errors: List[SweepError] = []

        try:
            self.repository.update_sweep(sweep_id, {"status": SweepStatus.running.value})
            log.info("sweep_started", timeout_seconds=self.timeout_seconds)
            add_breadcrumb("sweep", "Sweep started", data={"sweep_id": sweep_id})

            result = self.pipeline.run(profile, sweep_id, tracker, deadline)
            pipeline_errors = result.errors
            add_breadcrumb("sweep", "Pipeline finished", data=result.results.model_dump())
            usage = tracker.get_usage()

            schedule = profile.schedule
            next_run_at = None
            if schedule.enabled:
                next_run_at = calculate_next_run_time(
                    schedule.frequency, schedule.preferred_time, schedule.custom_days, now=self.clock()
                )

            self.repository.complete_sweep(
                profile,
                sweep_id,
                result.leads,
                {
                    "status": SweepStatus.completed.value,
                    "completed_at": self.clock(),
                    "token_usage": usage.model_dump(),
                    "results": result.results.model_dump(),
                    "errors": [error.model_dump() for error in result.errors],
                },
                next_run_at
            )
        except SweepTimeoutError as e:
            return self._fail(company_id, sweep_id, tracker, pipeline_errors, e, "timeout", ERROR_TIMEOUT, log)
        except Exception as e:
            return self._fail(
                company_id, sweep_id, tracker, pipeline_errors, e, "orchestrator", ERROR_EXECUTION_FAILED, log
            )
        except TimeLimitExceeded as e:
            self._fail(
                company_id, sweep_id, tracker, pipeline_errors, e, "timeout", ERROR_TIMEOUT, log,
                message="Sweep exceeded the worker time limit"
            )
            raise
        except BaseException as e:
            self._fail(
                company_id, sweep_id, tracker, pipeline_errors, e, "orchestrator", ERROR_EXECUTION_FAILED, log,
                message=f"Sweep interrupted: {type(e).__name__}"
            )
            raise

        self._record_outcome(company_id, usage, success=True, log=log)
        log.info(
            "sweep_completed",
            leads=len(result.leads),
            tokens_used=usage.tokens_used,
            api_calls=usage.api_calls,
            cost_usd=usage.estimated_cost_usd,
            model=result.model
        )

        if self.notifier is not None and result.leads:
            self._notify(profile, sweep_id, result.leads, log)

        return SweepOutcome(success=True, sweep_id=sweep_id, leads_found=len(result.leads))

    def _fail(
        self,
        company_id: str,
        sweep_id: str,
        tracker: TokenBudgetTracker,
        pipeline_errors: List[SweepError],
        error: BaseException,
        source: str,
        error_code: str,
        log,
        message: Optional[str] = None
    ) -> SweepOutcome:
        message = message or str(error)
        usage = tracker.get_usage()
        log.error("sweep_failed", error=message, error_code=error_code, exc_info=True)
        capture_exception(error)

        errors = pipeline_errors + [SweepError(source=source, error=message, timestamp=self.clock())]
        try:
            # A commit that failed part way may have written leads
            self.repository.delete_sweep_leads(sweep_id)
        except Exception as e:
            log.error("sweep_leads_cleanup_failed", error=str(e), exc_info=True)

        try:
            self.repository.update_sweep(sweep_id, {
                "status": SweepStatus.failed.value,
                "completed_at": self.clock(),
                "token_usage": usage.model_dump(),
                "errors": [e.model_dump() for e in errors],
            })
        except Exception as e:
            log.error("sweep_failure_record_failed", error=str(e), exc_info=True)

        self._record_outcome(company_id, usage, success=False, log=log, error=message)
        return SweepOutcome(success=False, sweep_id=sweep_id, error=message, error_code=error_code)

    def reap_stale_sweeps(self, now: Optional[datetime] = None) -> int:
        """
        Fail sweeps still pending or running well past their deadline.

        A worker that dies mid-sweep leaves its record active, which would
        count against the concurrency limit and block the company's
        schedule forever. Records started more than timeout plus grace
        seconds ago are marked failed and get their ledger update and
        breaker outcome.

        Returns:
            Number of sweeps reaped
        """
        now = now or self.clock()
        cutoff = now - timedelta(seconds=self.timeout_seconds + self.stale_grace_seconds)
        reaped = 0

        for sweep in self.repository.find_stale_sweeps(cutoff):
            if not self.repository.is_sweep_active(sweep.id):
                continue
            log = logger.bind(sweep_id=sweep.id, company_id=sweep.company_id)
            message = f"Sweep abandoned: no outcome recorded since {sweep.started_at.isoformat()}"
            errors = list(sweep.errors) + [SweepError(source="timeout", error=message, timestamp=now)]

            self.repository.delete_sweep_leads(sweep.id)
            self.repository.update_sweep(sweep.id, {
                "status": SweepStatus.failed.value,
                "completed_at": now,
                "errors": [e.model_dump() for e in errors],
            })
            self._record_outcome(sweep.company_id, sweep.token_usage, success=False, log=log, error=message)
            log.warning("stale_sweep_reaped", started_at=sweep.started_at.isoformat())
            reaped += 1

        return reaped

    def _record_outcome(
        self,
        company_id: str,
        usage: TokenUsage,
        success: bool,
        log,
        error: Optional[str] = None
    ) -> None:
        """Exactly one ledger update and one breaker outcome per recorded sweep."""
        try:
            self.ledger.update_daily_usage(company_id, usage, success=success)
        except Exception as e:
            log.error("usage_ledger_update_failed", error=str(e), exc_info=True)

        try:
            if success:
                self.breaker.record_success()
            else:
                self.breaker.record_failure(error)
        except Exception as e:
            log.error("sweep_circuit_update_failed", error=str(e), exc_info=True)

    def _notify(self, profile: DiscoveryProfile, sweep_id: str, leads, log) -> None:
        try:
            sent = self.notifier.notify(profile, sweep_id, leads)
            if sent.discord or sent.email:
                self.repository.update_sweep(sweep_id, {"notifications_sent": sent.model_dump()})
        except Exception as e:
            log.warning("sweep_notification_failed", error=str(e))


def get_orchestrator() -> SweepOrchestrator:
    """Orchestrator wired to the process-wide store, breaker and collectors."""
    from app.services.discovery.analyzer import LeadAnalyzer
    from app.services.discovery.collectors import get_default_collectors
    from app.services.store import get_store
    from app.services.token_safety.circuit_breaker import get_sweep_circuit_breaker

    store = get_store()
    repository = DiscoveryRepository(store)
    ledger = DailyUsageLedger(store)
    config = TokenSafetyConfig.from_settings()

    return SweepOrchestrator(
        repository=repository,
        ledger=ledger,
        evaluator=LimitPolicyEvaluator(ledger, repository.count_active_sweeps, config),
        breaker=get_sweep_circuit_breaker(),
        pipeline=SweepPipeline(
            get_default_collectors(),
            LeadAnalyzer(),
            config,
            max_results_per_source=settings.sweep_max_results_per_source
        ),
        config=config,
        notifier=SweepNotifier()
    )

"""
Tests for the sweep orchestrator: admission, execution and the single
ledger/breaker outcome recorded per sweep.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from dramatiq.middleware import TimeLimitExceeded

from app.models.discovery import DiscoverySweep, NotificationsSent, SweepStatus
from app.services.discovery.analyzer import LeadAnalyzer
from app.services.discovery.errors import PROFILE_INCOMPLETE_MESSAGE, PROFILE_NOT_FOUND_MESSAGE
from app.services.discovery.orchestrator import (
    ERROR_CIRCUIT_OPEN,
    ERROR_CONFIGURATION,
    ERROR_EXECUTION_FAILED,
    ERROR_QUOTA_EXCEEDED,
    ERROR_TIMEOUT,
    SweepOrchestrator,
)
from app.services.discovery.pipeline import SweepPipeline
from app.services.discovery.repository import (
    LEADS_COLLECTION,
    PROFILES_COLLECTION,
    SWEEPS_COLLECTION,
    DiscoveryRepository,
)
from app.services.token_safety.circuit_breaker import MemoryBreakerState, SweepCircuitBreaker
from app.services.token_safety.policy import LimitPolicyEvaluator, TokenSafetyConfig
from app.services.token_safety.usage_ledger import DailyUsageLedger
from tests.conftest import StaticCollector

SWEEP_TIMEOUT = 120
STALE_GRACE = 60


class SlowCollector(StaticCollector):
    """Burns the whole sweep deadline before searching."""

    def __init__(self, monotonic, **kwargs):
        super().__init__(**kwargs)
        self.monotonic = monotonic

    def search(self, criteria, max_results, max_queries=3, deadline=None):
        self.monotonic.advance(SWEEP_TIMEOUT + 1)
        return super().search(criteria, max_results, max_queries, deadline)


class InterruptingCollector(StaticCollector):
    """Raises a worker interrupt in the middle of collection."""

    def __init__(self, interrupt, **kwargs):
        super().__init__(**kwargs)
        self.interrupt = interrupt

    def search(self, criteria, max_results, max_queries=3, deadline=None):
        raise self.interrupt


class ProfileDeletingCollector(StaticCollector):
    """Deletes the company's profile while the sweep is collecting."""

    def __init__(self, store, **kwargs):
        super().__init__(**kwargs)
        self.store = store

    def search(self, criteria, max_results, max_queries=3, deadline=None):
        self.store.delete(PROFILES_COLLECTION, "acme")
        return super().search(criteria, max_results, max_queries, deadline)


def rule_based_analyzer():
    analyzer = LeadAnalyzer(client=None)
    analyzer.client = None
    return analyzer


@pytest.fixture(autouse=True)
def no_alert_email():
    with patch("app.services.token_safety.circuit_breaker.send_admin_alert") as alert:
        yield alert


@pytest.fixture
def repository(store, clock):
    return DiscoveryRepository(store, clock=clock)


@pytest.fixture
def ledger(store, clock):
    return DailyUsageLedger(store, clock=clock)


@pytest.fixture
def breaker(monotonic):
    return SweepCircuitBreaker(state=MemoryBreakerState(), fail_max=5, cooldown_seconds=300, clock=monotonic)


@pytest.fixture
def saved_profile(store, profile):
    store.set(PROFILES_COLLECTION, profile.company_id, profile.model_dump())
    return profile


def build_orchestrator(
    repository,
    ledger,
    breaker,
    clock,
    monotonic,
    collectors,
    config=None,
    notifier=None
):
    config = config or TokenSafetyConfig()
    evaluator = LimitPolicyEvaluator(
        ledger, repository.count_active_sweeps, config, alert_sender=MagicMock(return_value=True)
    )
    pipeline = SweepPipeline(collectors, rule_based_analyzer(), config, clock=clock)
    return SweepOrchestrator(
        repository=repository,
        ledger=ledger,
        evaluator=evaluator,
        breaker=breaker,
        pipeline=pipeline,
        config=config,
        notifier=notifier,
        timeout_seconds=SWEEP_TIMEOUT,
        stale_grace_seconds=STALE_GRACE,
        clock=clock,
        deadline_clock=monotonic
    )


@pytest.fixture
def make_orchestrator(repository, ledger, breaker, clock, monotonic):
    def factory(collectors, **kwargs):
        return build_orchestrator(repository, ledger, breaker, clock, monotonic, collectors, **kwargs)
    return factory


class TestSuccessfulSweep:

    def test_commits_leads_sweep_and_stats(self, make_orchestrator, saved_profile, businesses,
                                           store, repository, ledger, breaker):
        outcome = make_orchestrator([StaticCollector(businesses)]).execute_sweep("acme")

        assert outcome.success is True
        assert outcome.error_code is None
        assert outcome.leads_found == 3

        sweep = repository.get_sweep("acme", outcome.sweep_id)
        assert sweep.status == SweepStatus.completed.value
        assert sweep.completed_at is not None
        assert sweep.results.final_leads_count == 3
        assert sweep.results.is_monotonic()
        assert sweep.token_usage.api_calls == 1
        assert sweep.token_usage.estimated_cost_usd == pytest.approx(0.032)

        leads = store.query(LEADS_COLLECTION, [("sweep_id", "==", outcome.sweep_id)])
        assert len(leads) == 3

        stored_profile = repository.get_profile("acme")
        assert stored_profile.stats.total_leads_found == 3
        assert stored_profile.stats.last_sweep_leads_count == 3

        company = ledger.get_company_daily_usage("acme")
        assert company.sweeps == 1
        assert company.failed_sweeps == 0
        assert breaker.get_status()["failures"] == 0

    def test_leads_sorted_by_score(self, make_orchestrator, saved_profile, businesses, repository):
        outcome = make_orchestrator([StaticCollector(businesses)]).execute_sweep("acme")
        scores = [lead.ai_analysis.match_score for lead in repository.get_leads("acme")]
        assert len(scores) == outcome.leads_found
        assert max(scores) == 100

    def test_scheduled_sweep_advances_schedule(self, make_orchestrator, store, profile, businesses,
                                               repository, clock):
        profile.schedule.enabled = True
        profile.schedule.frequency = "weekly"
        profile.schedule.preferred_time = "09:00"
        store.set(PROFILES_COLLECTION, "acme", profile.model_dump())

        outcome = make_orchestrator([StaticCollector(businesses)]).execute_sweep("acme")

        sweep = repository.get_sweep("acme", outcome.sweep_id)
        assert sweep.triggered_by == "schedule"
        schedule = repository.get_profile("acme").schedule
        assert schedule.last_run_at == clock.now
        assert schedule.next_run_at == datetime(2026, 3, 9, 9, 0, tzinfo=timezone.utc)

    def test_manual_trigger_records_user(self, make_orchestrator, saved_profile, businesses, repository):
        outcome = make_orchestrator([StaticCollector(businesses)]).execute_sweep("acme", user_id="user-7")

        sweep = repository.get_sweep("acme", outcome.sweep_id)
        assert sweep.triggered_by == "manual"
        assert sweep.triggered_by_user_id == "user-7"

    def test_partial_collector_failure_is_recorded(self, make_orchestrator, saved_profile, businesses,
                                                   repository):
        collectors = [StaticCollector(businesses), StaticCollector(fail_with="rate limited")]
        outcome = make_orchestrator(collectors).execute_sweep("acme")

        assert outcome.success is True
        sweep = repository.get_sweep("acme", outcome.sweep_id)
        assert any("rate limited" in error.error for error in sweep.errors)
        assert sweep.token_usage.api_calls == 2


class TestRejectedSweeps:

    def test_missing_profile(self, make_orchestrator, store, ledger):
        outcome = make_orchestrator([StaticCollector()]).execute_sweep("acme")

        assert outcome.success is False
        assert outcome.sweep_id is None
        assert outcome.error_code == ERROR_CONFIGURATION
        assert outcome.error == PROFILE_NOT_FOUND_MESSAGE
        assert store.count(SWEEPS_COLLECTION) == 0
        assert ledger.get_daily_usage().sweep_count == 0
        assert ledger.get_reserved_slots("acme") == 0

    def test_incomplete_profile(self, make_orchestrator, store, profile):
        profile.targeting_criteria.industries = []
        store.set(PROFILES_COLLECTION, "acme", profile.model_dump())

        outcome = make_orchestrator([StaticCollector()]).execute_sweep("acme")

        assert outcome.error_code == ERROR_CONFIGURATION
        assert outcome.error == PROFILE_INCOMPLETE_MESSAGE
        assert store.count(SWEEPS_COLLECTION) == 0

    def test_unsafe_company_id(self, make_orchestrator, store):
        outcome = make_orchestrator([StaticCollector()]).execute_sweep("acme.corp")
        assert outcome.error_code == ERROR_CONFIGURATION
        assert store.count(SWEEPS_COLLECTION) == 0

    def test_fourth_sweep_after_three_failures_is_denied(self, make_orchestrator, saved_profile,
                                                         store, ledger, breaker):
        orchestrator = make_orchestrator([StaticCollector(fail_with="upstream quota exceeded")])

        for _ in range(3):
            outcome = orchestrator.execute_sweep("acme")
            assert outcome.error_code == ERROR_EXECUTION_FAILED
            assert outcome.sweep_id is not None

        denied = orchestrator.execute_sweep("acme")

        assert denied.success is False
        assert denied.sweep_id is None
        assert denied.error_code == ERROR_QUOTA_EXCEEDED
        assert denied.error == "Daily sweep limit reached (3/3). Try again tomorrow."
        assert store.count(SWEEPS_COLLECTION) == 3
        assert ledger.get_company_daily_usage("acme").failed_sweeps == 3
        assert breaker.get_status()["failures"] == 3

    def test_denial_leaves_usage_untouched(self, make_orchestrator, saved_profile, store, ledger):
        orchestrator = make_orchestrator(
            [StaticCollector()], config=TokenSafetyConfig(max_sweeps_per_company_per_day=1)
        )
        orchestrator.execute_sweep("acme")
        before = ledger.get_daily_usage()

        outcome = orchestrator.execute_sweep("acme")

        assert outcome.error_code == ERROR_QUOTA_EXCEEDED
        assert ledger.get_daily_usage() == before
        assert store.count(SWEEPS_COLLECTION) == 1

    def test_concurrent_sweep_limit(self, make_orchestrator, saved_profile, store):
        store.set(SWEEPS_COLLECTION, "other", {"company_id": "globex", "status": "running"})
        orchestrator = make_orchestrator([StaticCollector()], config=TokenSafetyConfig(max_concurrent_sweeps=1))

        outcome = orchestrator.execute_sweep("acme")

        assert outcome.error_code == ERROR_QUOTA_EXCEEDED
        assert outcome.error.startswith("Too many discovery sweeps are running right now (1/1)")

    def test_open_circuit(self, make_orchestrator, saved_profile, store, ledger, breaker):
        for _ in range(5):
            breaker.record_failure("boom")

        outcome = make_orchestrator([StaticCollector()]).execute_sweep("acme")

        assert outcome.error_code == ERROR_CIRCUIT_OPEN
        assert outcome.sweep_id is None
        assert store.count(SWEEPS_COLLECTION) == 0
        assert ledger.get_reserved_slots("acme") == 0
        assert ledger.get_daily_usage().sweep_count == 0

    def test_create_failure_releases_slot(self, make_orchestrator, saved_profile, repository, ledger):
        orchestrator = make_orchestrator([StaticCollector()])

        with patch.object(repository, "create_sweep", side_effect=RuntimeError("store down")):
            outcome = orchestrator.execute_sweep("acme")

        assert outcome.error_code == ERROR_EXECUTION_FAILED
        assert outcome.sweep_id is None
        assert "store down" in outcome.error
        assert ledger.get_reserved_slots("acme") == 0
        assert ledger.get_daily_usage().sweep_count == 0


class TestFailedSweeps:

    def test_execution_failure_marks_sweep_failed(self, make_orchestrator, saved_profile, repository, ledger):
        outcome = make_orchestrator([StaticCollector(fail_with="HTTP 500")]).execute_sweep("acme")

        assert outcome.success is False
        assert "All data collectors failed" in outcome.error

        sweep = repository.get_sweep("acme", outcome.sweep_id)
        assert sweep.status == SweepStatus.failed.value
        assert sweep.completed_at is not None
        assert sweep.errors[-1].source == "orchestrator"
        # Calls spent before the failure are still accounted
        assert sweep.token_usage.api_calls == 1
        assert ledger.get_company_daily_usage("acme").failed_sweeps == 1

    def test_timeout(self, make_orchestrator, saved_profile, businesses, monotonic, repository, ledger, breaker):
        outcome = make_orchestrator([SlowCollector(monotonic, businesses=businesses)]).execute_sweep("acme")

        assert outcome.success is False
        assert outcome.error_code == ERROR_TIMEOUT
        sweep = repository.get_sweep("acme", outcome.sweep_id)
        assert sweep.status == SweepStatus.failed.value
        assert sweep.errors[-1].source == "timeout"
        assert ledger.get_company_daily_usage("acme").failed_sweeps == 1
        assert breaker.get_status()["failures"] == 1

    def test_no_sweep_left_running(self, make_orchestrator, saved_profile, repository):
        make_orchestrator([StaticCollector(fail_with="boom")]).execute_sweep("acme")
        assert repository.count_active_sweeps() == 0


class TestOutcomeRecordedOnce:

    @pytest.mark.parametrize("fail_with", [None, "boom"])
    def test_one_ledger_update_and_one_breaker_outcome(self, repository, ledger, breaker, clock, monotonic,
                                                       saved_profile, businesses, fail_with):
        ledger_spy = MagicMock(wraps=ledger)
        breaker_spy = MagicMock(wraps=breaker)
        orchestrator = build_orchestrator(
            repository, ledger_spy, breaker_spy, clock, monotonic,
            [StaticCollector(businesses, fail_with=fail_with)]
        )

        outcome = orchestrator.execute_sweep("acme")

        assert ledger_spy.update_daily_usage.call_count == 1
        assert ledger_spy.update_daily_usage.call_args.kwargs["success"] is outcome.success
        outcomes = breaker_spy.record_success.call_count + breaker_spy.record_failure.call_count
        assert outcomes == 1

    def test_ledger_failure_does_not_fail_sweep(self, repository, ledger, breaker, clock, monotonic,
                                                saved_profile, businesses):
        ledger_spy = MagicMock(wraps=ledger)
        ledger_spy.update_daily_usage.side_effect = RuntimeError("ledger down")
        orchestrator = build_orchestrator(
            repository, ledger_spy, breaker, clock, monotonic, [StaticCollector(businesses)]
        )

        outcome = orchestrator.execute_sweep("acme")

        assert outcome.success is True
        assert repository.get_sweep("acme", outcome.sweep_id).status == SweepStatus.completed.value


class TestNotifications:

    def test_sent_flags_recorded(self, make_orchestrator, saved_profile, businesses, repository):
        notifier = MagicMock()
        notifier.notify.return_value = NotificationsSent(email=True)

        outcome = make_orchestrator([StaticCollector(businesses)], notifier=notifier).execute_sweep("acme")

        notifier.notify.assert_called_once()
        sweep = repository.get_sweep("acme", outcome.sweep_id)
        assert sweep.notifications_sent.email is True
        assert sweep.notifications_sent.discord is False

    def test_notifier_error_keeps_success(self, make_orchestrator, saved_profile, businesses):
        notifier = MagicMock()
        notifier.notify.side_effect = RuntimeError("smtp exploded")

        outcome = make_orchestrator([StaticCollector(businesses)], notifier=notifier).execute_sweep("acme")

        assert outcome.success is True

    def test_no_leads_no_notification(self, make_orchestrator, saved_profile):
        notifier = MagicMock()
        outcome = make_orchestrator([StaticCollector([])], notifier=notifier).execute_sweep("acme")

        assert outcome.success is True
        assert outcome.leads_found == 0
        notifier.notify.assert_not_called()


class TestWorkerInterrupts:

    def test_time_limit_records_failure_and_reraises(self, make_orchestrator, saved_profile, store,
                                                     repository, ledger, breaker):
        orchestrator = make_orchestrator([InterruptingCollector(TimeLimitExceeded())])

        with pytest.raises(TimeLimitExceeded):
            orchestrator.execute_sweep("acme")

        sweeps = store.query(SWEEPS_COLLECTION)
        assert len(sweeps) == 1
        assert sweeps[0]["status"] == SweepStatus.failed.value
        assert sweeps[0]["completed_at"] is not None
        assert sweeps[0]["errors"][-1]["source"] == "timeout"
        assert sweeps[0]["errors"][-1]["error"] == "Sweep exceeded the worker time limit"
        assert repository.count_active_sweeps() == 0
        assert repository.has_active_sweep("acme") is False

        company = ledger.get_company_daily_usage("acme")
        assert company.sweeps == 1
        assert company.failed_sweeps == 1
        assert breaker.get_status()["failures"] == 1

    def test_other_interrupts_record_failure_and_reraise(self, make_orchestrator, saved_profile, store,
                                                         repository, ledger):
        orchestrator = make_orchestrator([InterruptingCollector(KeyboardInterrupt())])

        with pytest.raises(KeyboardInterrupt):
            orchestrator.execute_sweep("acme")

        sweep = store.query(SWEEPS_COLLECTION)[0]
        assert sweep["status"] == SweepStatus.failed.value
        assert sweep["errors"][-1]["error"] == "Sweep interrupted: KeyboardInterrupt"
        assert repository.count_active_sweeps() == 0
        assert ledger.get_company_daily_usage("acme").failed_sweeps == 1


class TestFailedCommit:

    def test_profile_deleted_mid_sweep_leaves_no_leads(self, make_orchestrator, saved_profile, businesses,
                                                       store, repository, ledger, breaker):
        orchestrator = make_orchestrator([ProfileDeletingCollector(store, businesses=businesses)])

        outcome = orchestrator.execute_sweep("acme")

        assert outcome.success is False
        assert outcome.error_code == ERROR_EXECUTION_FAILED
        assert store.query(LEADS_COLLECTION, [("sweep_id", "==", outcome.sweep_id)]) == []
        sweep = store.get(SWEEPS_COLLECTION, outcome.sweep_id)
        assert sweep["status"] == SweepStatus.failed.value
        assert ledger.get_company_daily_usage("acme").failed_sweeps == 1
        assert breaker.get_status()["failures"] == 1

    def test_failure_removes_leads_already_written(self, make_orchestrator, saved_profile, businesses,
                                                   store, repository):
        orchestrator = make_orchestrator([StaticCollector(businesses)])

        def commit_then_fail(profile, sweep_id, leads, sweep_fields, next_run_at):
            for lead in leads:
                store.set(LEADS_COLLECTION, lead.id, lead.model_dump())
            raise RuntimeError("sweep update lost")

        with patch.object(repository, "complete_sweep", side_effect=commit_then_fail):
            outcome = orchestrator.execute_sweep("acme")

        assert outcome.success is False
        assert store.query(LEADS_COLLECTION, [("sweep_id", "==", outcome.sweep_id)]) == []


class TestStaleSweepReaper:

    def make_sweep(self, repository, clock, age_seconds, status=SweepStatus.running):
        return repository.create_sweep(DiscoverySweep(
            company_id="acme",
            status=status,
            started_at=clock.now - timedelta(seconds=age_seconds),
            triggered_by="schedule"
        ))

    def test_abandoned_sweep_is_failed_once(self, make_orchestrator, repository, ledger, breaker, clock):
        sweep_id = self.make_sweep(repository, clock, SWEEP_TIMEOUT + STALE_GRACE + 1)
        orchestrator = make_orchestrator([StaticCollector()])

        assert orchestrator.reap_stale_sweeps() == 1
        assert orchestrator.reap_stale_sweeps() == 0

        sweep = repository.get_sweep("acme", sweep_id)
        assert sweep.status == SweepStatus.failed.value
        assert sweep.completed_at == clock.now
        assert sweep.errors[-1].source == "timeout"
        assert repository.count_active_sweeps() == 0
        assert ledger.get_company_daily_usage("acme").failed_sweeps == 1
        assert breaker.get_status()["failures"] == 1

    def test_pending_sweep_is_reaped(self, make_orchestrator, repository, clock):
        self.make_sweep(repository, clock, SWEEP_TIMEOUT + STALE_GRACE + 1, status=SweepStatus.pending)
        assert make_orchestrator([StaticCollector()]).reap_stale_sweeps() == 1
        assert repository.has_active_sweep("acme") is False

    def test_recent_and_finished_sweeps_untouched(self, make_orchestrator, repository, ledger, clock):
        running_id = self.make_sweep(repository, clock, SWEEP_TIMEOUT)
        completed_id = self.make_sweep(repository, clock, 10_000, status=SweepStatus.completed)

        assert make_orchestrator([StaticCollector()]).reap_stale_sweeps() == 0

        assert repository.get_sweep("acme", running_id).status == SweepStatus.running.value
        assert repository.get_sweep("acme", completed_id).status == SweepStatus.completed.value
        assert ledger.get_daily_usage().sweep_count == 0

"""
Tests for the daily usage ledger: additivity, failed-sweep accounting,
hourly buckets and sweep slot reservations.
"""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.models.discovery import TokenUsage
from app.services.token_safety.usage_ledger import (
    DAILY_USAGE_COLLECTION,
    DailyUsageLedger,
    validate_company_id,
)


@pytest.fixture
def ledger(store, clock):
    return DailyUsageLedger(store, clock=clock)


def usage(tokens: int, cost: float, calls: int = 1) -> TokenUsage:
    return TokenUsage(tokens_used=tokens, api_calls=calls, estimated_cost_usd=cost)


class TestUpdateDailyUsage:

    def test_first_update_creates_record(self, ledger):
        record = ledger.update_daily_usage("acme", usage(1_200, 0.05), success=True)

        assert record.date == "2026-03-02"
        assert record.total_tokens == 1_200
        assert record.total_cost_usd == pytest.approx(0.05)
        assert record.sweep_count == 1
        assert record.failed_sweep_count == 0
        assert record.by_company["acme"].tokens == 1_200
        assert record.by_company["acme"].sweeps == 1

    def test_updates_are_additive(self, ledger):
        ledger.update_daily_usage("acme", usage(1_000, 0.10), success=True)
        ledger.update_daily_usage("acme", usage(2_500, 0.25), success=False)
        ledger.update_daily_usage("globex", usage(400, 0.04), success=True)

        record = ledger.get_daily_usage()
        assert record.total_tokens == 3_900
        assert record.total_cost_usd == pytest.approx(0.39)
        assert record.sweep_count == 3
        assert record.by_company["acme"].tokens == 3_500
        assert record.by_company["acme"].cost_usd == pytest.approx(0.35)
        assert record.by_company["acme"].sweeps == 2
        assert record.by_company["globex"].sweeps == 1

    def test_totals_equal_sum_of_companies(self, ledger):
        for index, company in enumerate(["a", "b", "c", "a", "b"]):
            ledger.update_daily_usage(company, usage(100 * (index + 1), 0.01 * (index + 1)), success=index % 2 == 0)

        record = ledger.get_daily_usage()
        assert record.total_tokens == sum(c.tokens for c in record.by_company.values())
        assert record.total_cost_usd == pytest.approx(sum(c.cost_usd for c in record.by_company.values()))
        assert record.sweep_count == sum(c.sweeps for c in record.by_company.values())

    def test_failed_sweeps_count_against_quota(self, ledger):
        ledger.update_daily_usage("acme", usage(0, 0.0, calls=0), success=False)

        company = ledger.get_company_daily_usage("acme")
        assert company.sweeps == 1
        assert company.failed_sweeps == 1
        assert ledger.get_daily_usage().failed_sweep_count == 1

    def test_new_day_starts_fresh(self, ledger, clock):
        ledger.update_daily_usage("acme", usage(1_000, 0.1), success=True)
        clock.now = clock.now + timedelta(days=1)

        assert ledger.get_company_daily_usage("acme").sweeps == 0
        assert ledger.get_daily_usage().date == "2026-03-03"
        assert ledger.get_daily_usage("2026-03-02").sweep_count == 1

    def test_concurrent_updates_lose_nothing(self, ledger):
        def worker():
            for _ in range(25):
                ledger.update_daily_usage("acme", usage(10, 0.001), success=True)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        record = ledger.get_daily_usage()
        assert record.sweep_count == 200
        assert record.total_tokens == 2_000
        assert record.by_company["acme"].sweeps == 200

    def test_record_document_keyed_by_date(self, ledger, store):
        ledger.update_daily_usage("acme", usage(10, 0.001), success=True)
        assert store.get(DAILY_USAGE_COLLECTION, "2026-03-02") is not None


class TestHourlyUsage:

    def test_hourly_bucket_tracks_current_hour(self, ledger, clock):
        ledger.update_daily_usage("acme", usage(1_000, 0.1), success=True)
        clock.now = clock.now + timedelta(hours=1)
        ledger.update_daily_usage("acme", usage(300, 0.03), success=True)

        assert ledger.get_hourly_usage().total_tokens == 300
        assert ledger.get_hourly_usage("2026-03-02T10").total_tokens == 1_000

    def test_empty_hour(self, ledger):
        hourly = ledger.get_hourly_usage()
        assert hourly.hour == "2026-03-02T10"
        assert hourly.total_tokens == 0


class TestSweepSlots:

    def test_reserve_up_to_limit(self, ledger):
        assert ledger.reserve_sweep_slot("acme", 2) is True
        assert ledger.reserve_sweep_slot("acme", 2) is True
        assert ledger.reserve_sweep_slot("acme", 2) is False
        assert ledger.get_reserved_slots("acme") == 2

    def test_release_returns_slot(self, ledger):
        ledger.reserve_sweep_slot("acme", 1)
        ledger.release_sweep_slot("acme")
        assert ledger.get_reserved_slots("acme") == 0
        assert ledger.reserve_sweep_slot("acme", 1) is True

    def test_slots_are_per_company_and_day(self, ledger, clock):
        assert ledger.reserve_sweep_slot("acme", 1) is True
        assert ledger.reserve_sweep_slot("globex", 1) is True
        clock.now = datetime(2026, 3, 3, 0, 5, tzinfo=timezone.utc)
        assert ledger.reserve_sweep_slot("acme", 1) is True

    def test_racing_reservations_never_exceed_limit(self, ledger):
        results = []
        lock = threading.Lock()

        def worker():
            reserved = ledger.reserve_sweep_slot("acme", 3)
            with lock:
                results.append(reserved)

        threads = [threading.Thread(target=worker) for _ in range(12)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 3
        assert ledger.get_reserved_slots("acme") == 3


class TestCompanyIdValidation:

    @pytest.mark.parametrize("company_id", ["", "acme.corp", "$where"])
    def test_rejects_unsafe_ids(self, company_id):
        with pytest.raises(ValueError):
            validate_company_id(company_id)

    def test_ledger_rejects_unsafe_id(self, ledger):
        with pytest.raises(ValueError):
            ledger.update_daily_usage("acme.corp", usage(1, 0.0), success=True)

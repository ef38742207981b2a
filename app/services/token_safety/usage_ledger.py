"""
Daily Usage Ledger

Durable per-day, per-company usage counters used for quota enforcement.

Every write is a single atomic increment in the document store, so
concurrent sweep completions never lose updates, and the platform totals and
the company's bucket are bumped by the same update (totals always equal the
sum of the by_company buckets).

Collections:
    dailyUsage         doc id YYYY-MM-DD
    hourlyUsage        doc id YYYY-MM-DDTHH (platform-wide hourly token cap)
    sweepReservations  doc id YYYY-MM-DD:{company_id} (admission slots)
"""

from datetime import datetime
from typing import Callable, Dict, Optional

import structlog

from app.models.discovery import (
    CompanyUsage,
    DailyUsageRecord,
    HourlyUsageRecord,
    TokenUsage,
    utc_now,
)
from app.services.store.base import DocumentStore

logger = structlog.get_logger(__name__)

DAILY_USAGE_COLLECTION = "dailyUsage"
HOURLY_USAGE_COLLECTION = "hourlyUsage"
RESERVATIONS_COLLECTION = "sweepReservations"


def date_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def hour_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H")


def validate_company_id(company_id: str) -> str:
    """
    Reject company ids that cannot be used as a by_company map key.

    Raises:
        ValueError: If the id is empty, contains "." or starts with "$"
    """
    if not company_id or "." in company_id or company_id.startswith("$"):
        raise ValueError(f"Invalid company id for usage ledger: {company_id!r}")
    return company_id


class DailyUsageLedger:
    """
    Usage:
        ledger = DailyUsageLedger(get_store())

        # Once per sweep outcome
        ledger.update_daily_usage(company_id, tracker.get_usage(), success=True)

        # Admission
        usage = ledger.get_company_daily_usage(company_id)
        hourly = ledger.get_hourly_usage()
    """

    def __init__(self, store: DocumentStore, clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            store: Document store holding the ledger collections
            clock: Returns the current UTC datetime; injectable for tests
        """
        self.store = store
        self.clock = clock or utc_now

    def update_daily_usage(self, company_id: str, usage: TokenUsage, success: bool) -> DailyUsageRecord:
        """
        Add one sweep outcome to today's ledger.

        Not idempotent: call exactly once per sweep outcome. The sweep counters
        are incremented whether or not the sweep succeeded, so failed sweeps
        still count against the daily sweep quota.

        Args:
            company_id: Owning company
            usage: Final usage snapshot of the sweep
            success: Whether the sweep completed

        Returns:
            Today's record after the update
        """
        validate_company_id(company_id)
        now = self.clock()
        today = date_key(now)
        bucket = f"by_company.{company_id}"
        failed = 0 if success else 1

        deltas: Dict[str, float] = {
            "total_tokens": usage.tokens_used,
            "total_cost_usd": usage.estimated_cost_usd,
            "sweep_count": 1,
            "failed_sweep_count": failed,
            f"{bucket}.tokens": usage.tokens_used,
            f"{bucket}.cost_usd": usage.estimated_cost_usd,
            f"{bucket}.sweeps": 1,
            f"{bucket}.failed_sweeps": failed,
        }
        doc = self.store.increment(DAILY_USAGE_COLLECTION, today, deltas, defaults={"date": today})

        hour = hour_key(now)
        self.store.increment(
            HOURLY_USAGE_COLLECTION,
            hour,
            {"total_tokens": usage.tokens_used, "total_cost_usd": usage.estimated_cost_usd},
            defaults={"hour": hour}
        )

        record = DailyUsageRecord.model_validate(doc)
        logger.info(
            "daily_usage_updated",
            company_id=company_id,
            date=today,
            success=success,
            tokens=usage.tokens_used,
            cost_usd=usage.estimated_cost_usd,
            total_cost_usd=round(record.total_cost_usd, 4),
            sweep_count=record.sweep_count
        )
        return record

    def get_daily_usage(self, date: Optional[str] = None) -> DailyUsageRecord:
        """Platform record for a date (default today); zeroed if nothing was recorded."""
        day = date or date_key(self.clock())
        doc = self.store.get(DAILY_USAGE_COLLECTION, day)
        if doc is None:
            return DailyUsageRecord(date=day)
        return DailyUsageRecord.model_validate(doc)

    def get_company_daily_usage(self, company_id: str, date: Optional[str] = None) -> CompanyUsage:
        """Today's usage bucket for one company."""
        validate_company_id(company_id)
        record = self.get_daily_usage(date)
        return record.by_company.get(company_id, CompanyUsage())

    def get_hourly_usage(self, hour: Optional[str] = None) -> HourlyUsageRecord:
        """Platform usage for an hour (default the current UTC hour)."""
        key = hour or hour_key(self.clock())
        doc = self.store.get(HOURLY_USAGE_COLLECTION, key)
        if doc is None:
            return HourlyUsageRecord(hour=key)
        return HourlyUsageRecord.model_validate(doc)

    def _reservation_id(self, company_id: str) -> str:
        return f"{date_key(self.clock())}:{validate_company_id(company_id)}"

    def reserve_sweep_slot(self, company_id: str, limit: int) -> bool:
        """
        Atomically claim one of today's sweep slots for a company.

        Two triggers racing for the last slot cannot both win: the claim is a
        conditional increment that only applies while the count is below limit.

        Returns:
            True if a slot was reserved, False if the daily limit is reached
        """
        reservation_id = self._reservation_id(company_id)
        reserved = self.store.increment_if_below(RESERVATIONS_COLLECTION, reservation_id, "count", limit)
        logger.debug("sweep_slot_reservation", company_id=company_id, reserved=reserved, limit=limit)
        return reserved

    def release_sweep_slot(self, company_id: str) -> None:
        """Give back a slot claimed by reserve_sweep_slot when no sweep record was created."""
        reservation_id = self._reservation_id(company_id)
        self.store.increment(RESERVATIONS_COLLECTION, reservation_id, {"count": -1}, upsert=False)
        logger.info("sweep_slot_released", company_id=company_id)

    def get_reserved_slots(self, company_id: str) -> int:
        doc = self.store.get(RESERVATIONS_COLLECTION, self._reservation_id(company_id))
        return int(doc.get("count", 0)) if doc else 0

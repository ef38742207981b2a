"""
Shared fixtures for discovery tests.

Everything runs against InMemoryDocumentStore with injectable clocks, so
ledger, breaker and schedule behavior is deterministic.
"""

from datetime import datetime, timezone
from typing import List, Optional

import pytest

from app.models.discovery import DiscoveryProfile, TargetingCriteria
from app.services.discovery.collectors import CollectorSearchResult, DataCollector, RawBusinessData
from app.services.discovery.errors import CollectorError
from app.services.monitoring.circuit_breakers import reset_breakers
from app.services.store.memory import InMemoryDocumentStore
from app.services.token_safety.policy import TokenSafetyConfig


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeMonotonic:
    """Settable monotonic clock for deadlines and the sweep breaker."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


class StaticCollector(DataCollector):
    """Collector returning canned listings, or failing with CollectorError."""

    source_type = "static"
    name = "Static"

    def __init__(
        self,
        businesses: Optional[List[RawBusinessData]] = None,
        api_calls: int = 1,
        cost_usd: float = 0.032,
        fail_with: Optional[str] = None
    ):
        self.businesses = businesses or []
        self.api_calls = api_calls
        self.cost_usd = cost_usd
        self.fail_with = fail_with
        self.calls = 0

    def is_configured(self) -> bool:
        return True

    def search(self, criteria, max_results, max_queries=3, deadline=None):
        self.calls += 1
        if deadline:
            deadline.check("collect")
        if self.fail_with:
            raise CollectorError(self.name, self.fail_with, api_calls=self.api_calls, cost_usd=self.cost_usd)
        return CollectorSearchResult(
            businesses=list(self.businesses[:max_results]),
            source=self.source_type,
            api_calls=self.api_calls,
            cost_usd=self.cost_usd
        )


def make_business(name: str, **overrides) -> RawBusinessData:
    data = {
        "name": name,
        "industry": "Plumbing",
        "city": "Houston",
        "state": "TX",
        "country": "US",
        "phone": "(713) 555-0100",
        "website": f"https://{name.lower().replace(' ', '')}.example.com",
        "rating": 4.6,
        "review_count": 120,
        "business_status": "OPERATIONAL",
        "source": "static",
    }
    data.update(overrides)
    return RawBusinessData(**data)


@pytest.fixture(autouse=True)
def fresh_collaborator_breakers():
    """pybreaker breakers are module-level; start every test closed."""
    reset_breakers()
    yield
    reset_breakers()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def clock():
    # Monday 2026-03-02 10:00 UTC
    return FakeClock(datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def config():
    return TokenSafetyConfig()


@pytest.fixture
def profile():
    return DiscoveryProfile(
        company_id="acme",
        business_description="Commercial plumbing supply distributor",
        targeting_criteria=TargetingCriteria(
            industries=["Plumbing"],
            geography={"states": ["TX"], "cities": ["Houston"]},
            pain_points=["Slow parts delivery", "Inventory gaps", "Pricing"],
        ),
    )


@pytest.fixture
def businesses():
    return [
        make_business("Bayou Plumbing"),
        make_business("Gulf Pipe Works", rating=4.1, review_count=30),
        make_business("Lone Star Drains", website=None),
    ]

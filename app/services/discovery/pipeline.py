"""
Sweep Execution Pipeline

The work phases of a running sweep:

    collect -> filter -> deduplicate -> verify -> analyze

Each phase only removes candidates, so the funnel counts it reports are
non-increasing. API calls and tokens spent along the way accrue into the
sweep's TokenBudgetTracker. Non-fatal problems (one collector failing while
another succeeds, AI analysis falling back to rules) are returned as sweep
errors with their source instead of failing the sweep.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

import structlog

from app.models.discovery import (
    DiscoveredLead,
    DiscoveryProfile,
    LeadContact,
    LeadLocation,
    LeadSource,
    LeadVerification,
    SweepError,
    SweepResults,
    VerificationChecks,
    utc_now,
)
from app.services.discovery.analyzer import LeadAnalyzer
from app.services.discovery.collectors import (
    DataCollector,
    RawBusinessData,
    create_dedupe_key,
    merge_business_data,
)
from app.services.discovery.deadline import SweepDeadline
from app.services.discovery.errors import CollectorError, ExecutionError
from app.services.token_safety.policy import TokenSafetyConfig
from app.services.token_safety.token_budget import TokenBudgetTracker

logger = structlog.get_logger(__name__)

# Text Search queries per collector per sweep
MAX_QUERIES_PER_COLLECTOR = 3


@dataclass
class PipelineResult:
    leads: List[DiscoveredLead]
    results: SweepResults
    errors: List[SweepError] = field(default_factory=list)
    model: Optional[str] = None


def matches_exclude_keywords(business: RawBusinessData, keywords: List[str]) -> bool:
    haystack = " ".join(
        part for part in (business.name, business.industry, business.description) if part
    ).lower()
    return any(keyword.lower() in haystack for keyword in keywords if keyword.strip())


def deduplicate(businesses: List[RawBusinessData]) -> List[RawBusinessData]:
    """Group by dedupe key, keeping first-seen order, and merge each group."""
    groups: Dict[str, List[RawBusinessData]] = {}
    for business in businesses:
        groups.setdefault(create_dedupe_key(business), []).append(business)
    return [merge_business_data(records) for records in groups.values()]


class SweepPipeline:
    """
    Usage:
        pipeline = SweepPipeline(get_default_collectors(), LeadAnalyzer(), config)
        result = pipeline.run(profile, sweep_id, tracker, deadline)
    """

    def __init__(
        self,
        collectors: List[DataCollector],
        analyzer: LeadAnalyzer,
        config: TokenSafetyConfig,
        max_results_per_source: int = 20,
        clock: Callable[[], datetime] = utc_now
    ):
        self.collectors = collectors
        self.analyzer = analyzer
        self.config = config
        self.max_results_per_source = max_results_per_source
        self.clock = clock

    def run(
        self,
        profile: DiscoveryProfile,
        sweep_id: str,
        tracker: TokenBudgetTracker,
        deadline: SweepDeadline
    ) -> PipelineResult:
        """
        Execute all phases for one sweep.

        Raises:
            ExecutionError: If no collector is configured or every collector failed
            SweepTimeoutError: If the deadline passes between phases or calls
        """
        log = logger.bind(sweep_id=sweep_id, company_id=profile.company_id)
        criteria = profile.targeting_criteria
        errors: List[SweepError] = []

        collected = self._collect(profile, tracker, deadline, errors)
        sources_searched = len(collected)

        deadline.check("filter")
        filtered = [
            b for b in collected
            if not b.is_closed and not matches_exclude_keywords(b, criteria.exclude_keywords)
        ]

        deduped = deduplicate(filtered)

        deadline.check("verify")
        verified = [b for b in deduped if b.has_contact_channel]

        to_analyze = verified[:self.config.max_leads_to_analyze]
        outcome = self.analyzer.analyze(to_analyze, criteria, tracker, deadline)
        for warning in outcome.warnings:
            errors.append(SweepError(source="ai_analysis", error=warning, timestamp=self.clock()))

        deadline.check("persist")
        leads = [
            self._build_lead(profile, sweep_id, business, analysis)
            for business, analysis in zip(to_analyze, outcome.analyses)
        ]
        leads.sort(key=lambda lead: lead.ai_analysis.match_score, reverse=True)

        results = SweepResults(
            sources_searched=sources_searched,
            raw_results_found=len(filtered),
            after_deduplication=len(deduped),
            after_verification=len(verified),
            final_leads_count=len(leads)
        )
        log.info(
            "sweep_pipeline_completed",
            model=outcome.model,
            **results.model_dump(),
            tokens_used=tracker.used_tokens,
            api_calls=tracker.api_calls
        )
        return PipelineResult(leads=leads, results=results, errors=errors, model=outcome.model)

    def _collect(
        self,
        profile: DiscoveryProfile,
        tracker: TokenBudgetTracker,
        deadline: SweepDeadline,
        errors: List[SweepError]
    ) -> List[RawBusinessData]:
        deadline.check("collect")
        if not self.collectors:
            raise ExecutionError("No data collectors are configured for discovery", source="collect")

        collected: List[RawBusinessData] = []
        failures = 0

        for collector in self.collectors:
            max_queries = min(MAX_QUERIES_PER_COLLECTOR, tracker.remaining_calls())
            if max_queries <= 0:
                errors.append(SweepError(
                    source=collector.source_type,
                    error="API call budget exhausted before collection",
                    timestamp=self.clock()
                ))
                failures += 1
                continue

            try:
                result = collector.search(
                    profile.targeting_criteria,
                    max_results=self.max_results_per_source,
                    max_queries=max_queries,
                    deadline=deadline
                )
            except CollectorError as e:
                self._accrue_calls(tracker, e.api_calls, e.cost_usd)
                errors.append(SweepError(source=collector.source_type, error=str(e), timestamp=self.clock()))
                failures += 1
                logger.warning("collector_failed", collector=collector.source_type, error=str(e))
                continue

            self._accrue_calls(tracker, result.api_calls, result.cost_usd)
            for message in result.errors:
                errors.append(SweepError(source=collector.source_type, error=message, timestamp=self.clock()))
            collected.extend(result.businesses)

        if failures == len(self.collectors):
            details = "; ".join(e.error for e in errors)
            raise ExecutionError(f"All data collectors failed: {details}", source="collect")

        return collected

    @staticmethod
    def _accrue_calls(tracker: TokenBudgetTracker, api_calls: int, cost_usd: float) -> None:
        if api_calls:
            tracker.add_api_calls(api_calls, cost_per_call=cost_usd / api_calls)

    def _build_lead(self, profile, sweep_id, business: RawBusinessData, analysis) -> DiscoveredLead:
        now = self.clock()
        contacts = []
        if business.phone or business.email:
            contacts.append(LeadContact(email=business.email, phone=business.phone))

        return DiscoveredLead(
            id=uuid.uuid4().hex,
            company_id=profile.company_id,
            discovery_profile_id=profile.id,
            business_name=business.name,
            industry=business.industry or "Unknown",
            website=business.website,
            contacts=contacts,
            location=LeadLocation(
                address=business.address,
                city=business.city or "Unknown",
                state=business.state or "Unknown",
                country=business.country or "US",
                coordinates=business.coordinates
            ),
            ai_analysis=analysis,
            verification=LeadVerification(
                status="verified",
                verified_at=now,
                checks=VerificationChecks(
                    website_exists=bool(business.website),
                    phone_valid=bool(business.phone),
                    email_valid=bool(business.email),
                    business_registered=bool(business.place_id)
                )
            ),
            sources=[LeadSource(type=business.source, url=business.source_url or "", found_at=now)],
            sweep_id=sweep_id,
            discovered_at=now
        )

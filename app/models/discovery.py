"""
Discovery Models

Pydantic models for discovery profiles, sweeps, discovered leads and the
token usage ledger. Documents are stored in the document store as
``model_dump()`` output and read back with ``model_validate()``.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class SweepStatus(str, Enum):
    """Lifecycle of a discovery sweep. completed and failed are terminal."""
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class SweepTrigger(str, Enum):
    schedule = "schedule"
    manual = "manual"


class ScheduleFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    custom = "custom"


class DiscoveredLeadStatus(str, Enum):
    new = "new"
    reviewed = "reviewed"
    added_to_pipeline = "added_to_pipeline"
    dismissed = "dismissed"


# ---------------------------------------------------------------------------
# Token usage
# ---------------------------------------------------------------------------

class TokenUsage(BaseModel):
    """Usage accrued during one unit of work (a sweep)."""

    model_config = ConfigDict(frozen=True)

    tokens_used: int = 0
    api_calls: int = 0
    estimated_cost_usd: float = 0.0
    timestamp: datetime = Field(default_factory=utc_now)


class CompanyUsage(BaseModel):
    """Per-company slice of a daily usage record."""
    tokens: int = 0
    sweeps: int = 0
    failed_sweeps: int = 0
    cost_usd: float = 0.0


class DailyUsageRecord(BaseModel):
    """
    Platform-wide usage for one calendar date (YYYY-MM-DD, UTC).

    Totals always equal the sum of the by_company buckets because both are
    incremented by the same atomic update.
    """
    date: str
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    sweep_count: int = 0
    failed_sweep_count: int = 0
    by_company: Dict[str, CompanyUsage] = Field(default_factory=dict)


class HourlyUsageRecord(BaseModel):
    """Platform-wide usage for one UTC hour (YYYY-MM-DDTHH)."""
    hour: str
    total_tokens: int = 0
    total_cost_usd: float = 0.0


# ---------------------------------------------------------------------------
# Discovery profile
# ---------------------------------------------------------------------------

class CompanySize(BaseModel):
    min: int = 10
    max: int = 500


class Geography(BaseModel):
    countries: List[str] = Field(default_factory=lambda: ["US"])
    states: List[str] = Field(default_factory=list)
    cities: List[str] = Field(default_factory=list)
    radius: Optional[float] = Field(default=None, description="Miles from a point")


class TargetingCriteria(BaseModel):
    """AI-derived targeting criteria for a company's discovery profile."""
    industries: List[str] = Field(default_factory=list)
    company_size: CompanySize = Field(default_factory=CompanySize)
    geography: Geography = Field(default_factory=Geography)
    pain_points: List[str] = Field(default_factory=list)
    buying_signals: List[str] = Field(default_factory=list)
    exclude_keywords: List[str] = Field(default_factory=list)
    ideal_customer_profile: str = ""


class DiscoverySchedule(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    enabled: bool = False
    frequency: ScheduleFrequency = ScheduleFrequency.weekly
    custom_days: Optional[int] = Field(default=None, ge=1, description="Run every N days when frequency is custom")
    preferred_time: str = Field(default="09:00", pattern=r"^([01]\d|2[0-3]):[0-5]\d$", description="HH:MM, UTC")
    last_run_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None


class DiscordNotifications(BaseModel):
    enabled: bool = False
    channel_id: Optional[str] = None
    mention_role: Optional[str] = None


class EmailNotifications(BaseModel):
    enabled: bool = False
    recipients: List[str] = Field(default_factory=list)


class InAppNotifications(BaseModel):
    enabled: bool = True


class DiscoveryNotifications(BaseModel):
    discord: DiscordNotifications = Field(default_factory=DiscordNotifications)
    email: EmailNotifications = Field(default_factory=EmailNotifications)
    in_app: InAppNotifications = Field(default_factory=InAppNotifications)


class DiscoveryStats(BaseModel):
    total_leads_found: int = 0
    leads_added_to_pipeline: int = 0
    leads_dismissed: int = 0
    last_sweep_leads_count: int = 0


class DiscoveryProfile(BaseModel):
    """Per-company discovery configuration. One document per company."""
    id: str = "current"
    company_id: str
    business_description: str = ""
    targeting_criteria: TargetingCriteria = Field(default_factory=TargetingCriteria)
    schedule: DiscoverySchedule = Field(default_factory=DiscoverySchedule)
    notifications: DiscoveryNotifications = Field(default_factory=DiscoveryNotifications)
    stats: DiscoveryStats = Field(default_factory=DiscoveryStats)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def missing_configuration(self) -> Optional[str]:
        """Return the name of the first required field that is not configured."""
        if not self.business_description.strip():
            return "business_description"
        if not self.targeting_criteria.industries:
            return "targeting_criteria.industries"
        return None


# ---------------------------------------------------------------------------
# Discovered leads
# ---------------------------------------------------------------------------

class LeadContact(BaseModel):
    name: str = ""
    title: str = ""
    email: Optional[str] = None
    phone: Optional[str] = None
    linkedin: Optional[str] = None


class Coordinates(BaseModel):
    lat: float
    lng: float


class LeadLocation(BaseModel):
    address: Optional[str] = None
    city: str = "Unknown"
    state: str = "Unknown"
    country: str = "US"
    coordinates: Optional[Coordinates] = None


class LeadAIAnalysis(BaseModel):
    match_score: int = Field(default=50, ge=0, le=100)
    match_reasons: List[str] = Field(default_factory=list)
    pain_points_identified: List[str] = Field(default_factory=list)
    buying_signals: List[str] = Field(default_factory=list)
    summary: str = ""


class VerificationChecks(BaseModel):
    website_exists: bool = False
    phone_valid: bool = False
    email_valid: bool = False
    business_registered: bool = False


class LeadVerification(BaseModel):
    status: str = "pending"  # pending, verified, failed
    verified_at: Optional[datetime] = None
    checks: VerificationChecks = Field(default_factory=VerificationChecks)


class LeadSource(BaseModel):
    type: str  # linkedin, google, directory, news, jobs, social
    url: str = ""
    found_at: datetime = Field(default_factory=utc_now)


class DiscoveredLead(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    company_id: str
    discovery_profile_id: str = "current"
    business_name: str
    industry: str = "Unknown"
    website: Optional[str] = None
    contacts: List[LeadContact] = Field(default_factory=list)
    location: LeadLocation = Field(default_factory=LeadLocation)
    ai_analysis: LeadAIAnalysis = Field(default_factory=LeadAIAnalysis)
    verification: LeadVerification = Field(default_factory=LeadVerification)
    sources: List[LeadSource] = Field(default_factory=list)
    status: DiscoveredLeadStatus = DiscoveredLeadStatus.new
    dismiss_reason: Optional[str] = None
    pipeline_lead_id: Optional[str] = None
    sweep_id: str
    discovered_at: datetime = Field(default_factory=utc_now)
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

class SweepResults(BaseModel):
    """
    Funnel counts for one sweep. Each stage only removes candidates, so
    sources_searched >= raw_results_found >= ... >= final_leads_count >= 0.
    """
    sources_searched: int = Field(default=0, ge=0)
    raw_results_found: int = Field(default=0, ge=0)
    after_deduplication: int = Field(default=0, ge=0)
    after_verification: int = Field(default=0, ge=0)
    final_leads_count: int = Field(default=0, ge=0)

    def is_monotonic(self) -> bool:
        return (
            self.sources_searched
            >= self.raw_results_found
            >= self.after_deduplication
            >= self.after_verification
            >= self.final_leads_count
            >= 0
        )


class SweepError(BaseModel):
    source: str
    error: str
    timestamp: datetime = Field(default_factory=utc_now)


class NotificationsSent(BaseModel):
    discord: bool = False
    email: bool = False


class DiscoverySweep(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id: Optional[str] = None
    company_id: str
    discovery_profile_id: str = "current"
    status: SweepStatus = SweepStatus.pending
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    results: SweepResults = Field(default_factory=SweepResults)
    errors: List[SweepError] = Field(default_factory=list)
    notifications_sent: NotificationsSent = Field(default_factory=NotificationsSent)
    triggered_by: SweepTrigger
    triggered_by_user_id: Optional[str] = None

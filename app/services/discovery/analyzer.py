"""
Lead Analyzer

Scores and summarizes verified businesses against a profile's targeting
criteria. Uses Claude when an Anthropic key is configured and the sweep's
token budget allows the call; otherwise, or when a call fails, it falls back
to deterministic rule-based scoring so a sweep still yields leads.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import anthropic
import structlog
from anthropic import Anthropic

from app.config import settings
from app.models.discovery import LeadAIAnalysis, TargetingCriteria
from app.services.discovery.collectors import RawBusinessData
from app.services.discovery.deadline import SweepDeadline
from app.services.monitoring.circuit_breakers import CircuitBreakerError, get_claude_breaker
from app.services.token_safety.pricing import estimate_prompt_tokens
from app.services.token_safety.token_budget import TokenBudgetExceeded, TokenBudgetTracker

logger = structlog.get_logger(__name__)

RULE_BASED_MODEL = "rule-based"

# Leads per Claude call
ANALYSIS_BATCH_SIZE = 10

SYSTEM_PROMPT = (
    "You are a B2B sales intelligence analyst. You score businesses against a "
    "company's targeting criteria and explain concrete reasons for the match. "
    "Respond with ONLY a valid JSON array, no other text."
)


@dataclass
class AnalysisOutcome:
    """Analyses aligned by index with the businesses passed in"""
    analyses: List[LeadAIAnalysis]
    model: str
    warnings: List[str] = field(default_factory=list)


def _matches_industry(industry: Optional[str], targets: List[str]) -> bool:
    if not industry:
        return False
    industry = industry.lower()
    return any(t.lower() in industry or industry in t.lower() for t in targets if t)


def _matches_any(value: Optional[str], options: List[str]) -> bool:
    return bool(value) and any(value.lower() == option.lower() for option in options)


def rule_based_analysis(business: RawBusinessData, criteria: TargetingCriteria) -> LeadAIAnalysis:
    """
    Deterministic score: base 50, +20 industry, +15 city, +10 state,
    +10 rating >= 4.5 (or +5 >= 4.0), +5 with 50+ reviews, +5 website; capped at 100.
    """
    score = 50
    reasons: List[str] = []
    geography = criteria.geography

    if _matches_industry(business.industry, criteria.industries):
        score += 20
        reasons.append(f"In target industry ({business.industry})")
    if _matches_any(business.city, geography.cities):
        score += 15
        reasons.append(f"Located in target city ({business.city})")
    if _matches_any(business.state, geography.states):
        score += 10
        reasons.append(f"Located in target state ({business.state})")
    if business.rating is not None:
        if business.rating >= 4.5:
            score += 10
            reasons.append(f"Excellent customer rating ({business.rating}★)")
        elif business.rating >= 4.0:
            score += 5
            reasons.append(f"Good customer rating ({business.rating}★)")
    if business.review_count and business.review_count >= 50:
        score += 5
        reasons.append("Established market presence")
    if business.website:
        score += 5
        reasons.append("Has website")

    score = min(100, score)

    buying_signals = []
    if business.rating and business.rating >= 4.5 and (business.review_count or 0) >= 100:
        buying_signals.append("Strong market presence indicates growth")

    return LeadAIAnalysis(
        match_score=score,
        match_reasons=reasons or ["Meets basic targeting criteria"],
        pain_points_identified=criteria.pain_points[:2],
        buying_signals=buying_signals,
        summary=basic_summary(business, score)
    )


def basic_summary(business: RawBusinessData, score: int) -> str:
    strength = "strong" if score >= 70 else "moderate" if score >= 50 else "weak"
    location = ", ".join(part for part in (business.city, business.state) if part)

    summary = f"{business.name} is a{' ' + business.industry if business.industry else ''} business"
    if location:
        summary += f" in {location}"
    if business.rating and business.review_count:
        summary += f" with a {business.rating}★ rating from {business.review_count} reviews"
    return summary + f". Shows {strength} alignment with targeting criteria."


def build_analysis_prompt(businesses: List[RawBusinessData], criteria: TargetingCriteria) -> str:
    leads_json = [
        {
            "index": index,
            "name": business.name,
            "industry": business.industry or "Unknown",
            "location": {"address": business.address, "city": business.city, "state": business.state},
            "contact": {"phone": business.phone, "email": business.email, "website": business.website},
            "metrics": {"rating": business.rating, "reviewCount": business.review_count},
            "description": (business.description or "")[:500],
        }
        for index, business in enumerate(businesses)
    ]
    geography = criteria.geography
    return f"""IDEAL CUSTOMER PROFILE:
{criteria.ideal_customer_profile or 'Not specified'}

TARGET CRITERIA:
- Industries: {', '.join(criteria.industries) or 'Any'}
- Company Size: {criteria.company_size.min}-{criteria.company_size.max} employees
- Geography: {', '.join(geography.cities) or ', '.join(geography.states) or 'Any'}
- Pain Points: {', '.join(criteria.pain_points) or 'None specified'}
- Buying Signals: {', '.join(criteria.buying_signals) or 'None specified'}

BUSINESSES TO ANALYZE:
{json.dumps(leads_json, indent=2)}

SCORING GUIDE:
- 90-100: Perfect match (right industry, location, shows buying signals)
- 70-89: Strong match (most criteria met)
- 50-69: Moderate match (some criteria met)
- 30-49: Weak match (few criteria met)
- 0-29: Poor match (doesn't fit)

For each business return:
{{"index": 0, "score": 85, "matchReasons": ["..."], "painPointsIdentified": ["..."], "buyingSignals": ["..."], "summary": "2-3 sentence sales-ready summary"}}"""


def parse_json_response(text: str) -> Any:
    """Parse a JSON response, stripping a surrounding markdown code block if present."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        first_newline = cleaned.find("\n")
        if first_newline != -1:
            cleaned = cleaned[first_newline + 1:]
        if cleaned.endswith("```"):
            cleaned = cleaned[:-3]
    return json.loads(cleaned.strip())


class LeadAnalyzer:
    """
    Usage:
        analyzer = LeadAnalyzer()
        outcome = analyzer.analyze(businesses, profile.targeting_criteria, tracker, deadline)
    """

    def __init__(
        self,
        client: Optional[Anthropic] = None,
        model: Optional[str] = None,
        max_output_tokens: Optional[int] = None
    ):
        if client is None and settings.anthropic_api_key:
            client = Anthropic(api_key=settings.anthropic_api_key)
        self.client = client
        self.model = model or settings.anthropic_model
        self.max_output_tokens = max_output_tokens or settings.anthropic_max_output_tokens

    @property
    def uses_ai(self) -> bool:
        return self.client is not None

    def analyze(
        self,
        businesses: List[RawBusinessData],
        criteria: TargetingCriteria,
        tracker: TokenBudgetTracker,
        deadline: Optional[SweepDeadline] = None
    ) -> AnalysisOutcome:
        if not businesses:
            return AnalysisOutcome(analyses=[], model=RULE_BASED_MODEL)

        if not self.uses_ai:
            return AnalysisOutcome(
                analyses=[rule_based_analysis(b, criteria) for b in businesses],
                model=RULE_BASED_MODEL,
                warnings=["No AI API key configured. Using rule-based scoring."]
            )

        analyses: List[LeadAIAnalysis] = []
        warnings: List[str] = []
        model_used = self.model

        for start in range(0, len(businesses), ANALYSIS_BATCH_SIZE):
            chunk = businesses[start:start + ANALYSIS_BATCH_SIZE]
            if deadline:
                deadline.check("analyze")
            try:
                analyses.extend(self._analyze_with_claude(chunk, criteria, tracker, deadline))
            except TokenBudgetExceeded as e:
                warnings.append(f"AI analysis skipped: {e}. Using rule-based scoring.")
                analyses.extend(rule_based_analysis(b, criteria) for b in chunk)
                model_used = f"{self.model}+{RULE_BASED_MODEL}"
            except (anthropic.APIError, CircuitBreakerError, ValueError, KeyError, TypeError) as e:
                logger.warning("lead_analysis_failed", error=str(e), batch_start=start, batch_size=len(chunk))
                warnings.append(f"AI analysis failed: {e}. Using rule-based fallback.")
                analyses.extend(rule_based_analysis(b, criteria) for b in chunk)
                model_used = f"{self.model}+{RULE_BASED_MODEL}"

        return AnalysisOutcome(analyses=analyses, model=model_used, warnings=warnings)

    def _analyze_with_claude(
        self,
        businesses: List[RawBusinessData],
        criteria: TargetingCriteria,
        tracker: TokenBudgetTracker,
        deadline: Optional[SweepDeadline]
    ) -> List[LeadAIAnalysis]:
        prompt = build_analysis_prompt(businesses, criteria)
        estimated = estimate_prompt_tokens(prompt, SYSTEM_PROMPT) + self.max_output_tokens
        if not tracker.check_budget(estimated):
            raise TokenBudgetExceeded(estimated, tracker.used_tokens, tracker.max_tokens)

        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_output_tokens,
            "temperature": 0.2,
            "system": SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }
        if deadline:
            request["timeout"] = deadline.bounded_timeout(60.0)

        message = get_claude_breaker().call(self.client.messages.create, **request)

        # Usage is spent once the call returns, even if the reply is unusable
        tracker.add_usage(
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens,
            model=self.model
        )

        items = parse_json_response(message.content[0].text)
        if not isinstance(items, list):
            raise ValueError("Expected a JSON array of analyses")

        by_index: Dict[int, Dict[str, Any]] = {}
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("index"), int):
                by_index[item["index"]] = item

        results = []
        for index, business in enumerate(businesses):
            item = by_index.get(index)
            if item is None:
                results.append(rule_based_analysis(business, criteria))
                continue
            score = max(0, min(100, int(item.get("score", 50))))
            results.append(LeadAIAnalysis(
                match_score=score,
                match_reasons=list(item.get("matchReasons") or ["Basic criteria match"]),
                pain_points_identified=list(item.get("painPointsIdentified") or []),
                buying_signals=list(item.get("buyingSignals") or []),
                summary=item.get("summary") or basic_summary(business, score)
            ))

        logger.info(
            "lead_analysis_completed",
            model=self.model,
            leads=len(businesses),
            input_tokens=message.usage.input_tokens,
            output_tokens=message.usage.output_tokens
        )
        return results

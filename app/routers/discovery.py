"""
Lead Discovery API Router
REST endpoints for discovery profiles, manual sweeps and lead review
"""

from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from app.middleware import get_correlation_id
from app.models.discovery import DiscoveredLeadStatus
from app.services.discovery.orchestrator import (
    ERROR_CIRCUIT_OPEN,
    ERROR_CONFIGURATION,
    ERROR_QUOTA_EXCEEDED,
    SweepOrchestrator,
    get_orchestrator,
)
from app.services.discovery.repository import DiscoveryRepository
from app.services.store import DocumentNotFound, get_store
from app.services.token_safety.circuit_breaker import SweepCircuitBreaker, get_sweep_circuit_breaker
from app.services.token_safety.policy import TokenSafetyConfig
from app.services.token_safety.usage_ledger import DailyUsageLedger

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/companies/{company_id}/discovery", tags=["discovery"])
admin_router = APIRouter(prefix="/api/v1/discovery", tags=["discovery-admin"])

# SweepOutcome.error_code -> HTTP status; anything else is a 500
ERROR_STATUS_CODES = {
    ERROR_CONFIGURATION: 400,
    ERROR_QUOTA_EXCEEDED: 429,
    ERROR_CIRCUIT_OPEN: 503,
}


def get_repository() -> DiscoveryRepository:
    return DiscoveryRepository(get_store())


def get_ledger() -> DailyUsageLedger:
    return DailyUsageLedger(get_store())


def get_sweep_orchestrator() -> SweepOrchestrator:
    return get_orchestrator()


def get_breaker() -> SweepCircuitBreaker:
    return get_sweep_circuit_breaker()


class ProfileUpdateRequest(BaseModel):
    """Partial profile update. Nested sections are merged field by field."""
    business_description: Optional[str] = None
    targeting_criteria: Optional[Dict[str, Any]] = None
    schedule: Optional[Dict[str, Any]] = None
    notifications: Optional[Dict[str, Any]] = None


class LeadStatusRequest(BaseModel):
    status: DiscoveredLeadStatus
    dismiss_reason: Optional[str] = Field(default=None, max_length=500)


class PipelineLinkRequest(BaseModel):
    pipeline_lead_id: str = Field(..., min_length=1)


# ---------------------------------------------------------------------------
# Sweeps
# ---------------------------------------------------------------------------

@router.post("/sweeps")
def trigger_sweep(
    company_id: str,
    x_user_id: Optional[str] = Header(None),
    orchestrator: SweepOrchestrator = Depends(get_sweep_orchestrator)
):
    """
    Run a discovery sweep now.

    Runs synchronously so the caller sees denials (quota, circuit open,
    incomplete profile) and failures directly.

    Returns:
        200 with sweep_id on success; 400/429/503/500 with error and error_code otherwise
    """
    outcome = orchestrator.execute_sweep(
        company_id,
        user_id=x_user_id,
        correlation_id=get_correlation_id()
    )
    body = {
        "success": outcome.success,
        "sweep_id": outcome.sweep_id,
        "leads_found": outcome.leads_found,
    }
    if outcome.success:
        return JSONResponse(status_code=200, content=body)

    body.update({"error": outcome.error, "error_code": outcome.error_code})
    status_code = ERROR_STATUS_CODES.get(outcome.error_code, 500)
    logger.info("sweep_trigger_rejected", company_id=company_id, status_code=status_code,
                error_code=outcome.error_code)
    return JSONResponse(status_code=status_code, content=body)


@router.get("/sweeps")
def list_sweeps(
    company_id: str,
    limit: int = Query(10, ge=1, le=100, description="Maximum sweeps to return"),
    repository: DiscoveryRepository = Depends(get_repository)
):
    """Most recent sweeps first."""
    sweeps = repository.get_sweep_history(company_id, limit=limit)
    return {"total": len(sweeps), "sweeps": [s.model_dump(mode="json") for s in sweeps]}


@router.get("/sweeps/{sweep_id}")
def get_sweep(
    company_id: str,
    sweep_id: str,
    repository: DiscoveryRepository = Depends(get_repository)
):
    sweep = repository.get_sweep(company_id, sweep_id)
    if sweep is None:
        raise HTTPException(status_code=404, detail="Sweep not found")
    return sweep.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Profile
# ---------------------------------------------------------------------------

@router.get("/profile")
def get_profile(company_id: str, repository: DiscoveryRepository = Depends(get_repository)):
    profile = repository.get_profile(company_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="Discovery profile not found")
    return profile.model_dump(mode="json")


@router.put("/profile")
def update_profile(
    company_id: str,
    request: ProfileUpdateRequest,
    repository: DiscoveryRepository = Depends(get_repository)
):
    """Create the profile or merge the given sections into it."""
    try:
        profile = repository.save_profile(company_id, request.model_dump(exclude_unset=True))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    return profile.model_dump(mode="json")


@router.delete("/profile")
def delete_profile(company_id: str, repository: DiscoveryRepository = Depends(get_repository)):
    """Remove the profile together with the company's leads and sweeps."""
    if repository.get_profile(company_id) is None:
        raise HTTPException(status_code=404, detail="Discovery profile not found")
    repository.delete_profile(company_id)
    return {"success": True}


# ---------------------------------------------------------------------------
# Leads
# ---------------------------------------------------------------------------

@router.get("/leads")
def list_leads(
    company_id: str,
    status: Optional[DiscoveredLeadStatus] = Query(None, description="Filter by review status"),
    limit: int = Query(50, ge=1, le=200, description="Maximum leads to return"),
    repository: DiscoveryRepository = Depends(get_repository)
):
    """Discovered leads, newest first."""
    leads = repository.get_leads(company_id, status=status, limit=limit)
    return {"total": len(leads), "leads": [lead.model_dump(mode="json") for lead in leads]}


@router.patch("/leads/{lead_id}")
def update_lead_status(
    company_id: str,
    lead_id: str,
    request: LeadStatusRequest,
    x_user_id: Optional[str] = Header(None),
    repository: DiscoveryRepository = Depends(get_repository)
):
    try:
        lead = repository.update_lead_status(
            company_id,
            lead_id,
            request.status,
            user_id=x_user_id,
            dismiss_reason=request.dismiss_reason
        )
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead.model_dump(mode="json")


@router.post("/leads/{lead_id}/pipeline")
def add_lead_to_pipeline(
    company_id: str,
    lead_id: str,
    request: PipelineLinkRequest,
    x_user_id: Optional[str] = Header(None),
    repository: DiscoveryRepository = Depends(get_repository)
):
    """Link a discovered lead to the lead created for it in the sales pipeline."""
    try:
        lead = repository.link_lead_to_pipeline(
            company_id,
            lead_id,
            request.pipeline_lead_id,
            user_id=x_user_id
        )
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Usage
# ---------------------------------------------------------------------------

@router.get("/usage")
def get_company_usage(company_id: str, ledger: DailyUsageLedger = Depends(get_ledger)):
    """Today's usage for the company against its daily limits."""
    try:
        usage = ledger.get_company_daily_usage(company_id)
        reserved = ledger.get_reserved_slots(company_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    config = TokenSafetyConfig.from_settings()
    return {
        "company_id": company_id,
        "usage": usage.model_dump(),
        "sweeps_started": reserved,
        "limits": {
            "max_sweeps_per_day": config.max_sweeps_per_company_per_day,
            "max_tokens_per_day": config.max_tokens_per_company_per_day,
        },
    }


@admin_router.get("/usage")
def get_platform_usage(
    ledger: DailyUsageLedger = Depends(get_ledger),
    breaker: SweepCircuitBreaker = Depends(get_breaker)
):
    """Platform-wide daily and hourly usage plus the sweep circuit breaker state."""
    daily = ledger.get_daily_usage()
    hourly = ledger.get_hourly_usage()
    config = TokenSafetyConfig.from_settings()
    return {
        "daily": daily.model_dump(),
        "hourly": hourly.model_dump(),
        "limits": {
            "max_daily_cost_usd": config.max_daily_cost_usd,
            "alert_threshold_usd": config.alert_threshold_usd,
            "max_tokens_per_hour": config.max_tokens_per_hour,
        },
        "circuit_breaker": breaker.get_status(),
    }



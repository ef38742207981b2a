"""
Discovery Repository

Persistence for discovery profiles, discovered leads and sweep records on
top of the DocumentStore contract.

Collections:
    discoveryProfile   doc id = company id (profile id is always "current")
    discoveredLeads    doc id = lead id, scoped by company_id field
    discoverySweeps    doc id = sweep id, scoped by company_id field
"""

import copy
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from app.models.discovery import (
    DiscoveredLead,
    DiscoveredLeadStatus,
    DiscoveryProfile,
    DiscoverySweep,
    SweepStatus,
    utc_now,
)
from app.services.discovery.schedule import calculate_next_run_time
from app.services.store.base import DocumentNotFound, DocumentStore

logger = structlog.get_logger(__name__)

PROFILES_COLLECTION = "discoveryProfile"
LEADS_COLLECTION = "discoveredLeads"
SWEEPS_COLLECTION = "discoverySweeps"

ACTIVE_SWEEP_STATUSES = [SweepStatus.pending.value, SweepStatus.running.value]


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class DiscoveryRepository:
    """
    Usage:
        repository = DiscoveryRepository(get_store())
        profile = repository.get_profile(company_id)
    """

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profile(self, company_id: str) -> Optional[DiscoveryProfile]:
        doc = self.store.get(PROFILES_COLLECTION, company_id)
        if doc is None:
            return None
        doc["id"] = "current"
        return DiscoveryProfile.model_validate(doc)

    def save_profile(self, company_id: str, updates: Dict[str, Any]) -> DiscoveryProfile:
        """
        Create a profile with defaults or merge updates into the existing one.

        Nested sections (targeting_criteria, schedule, notifications) are
        merged field by field. The schedule's next_run_at is recomputed
        whenever the schedule is enabled, and cleared when it is disabled.

        Raises:
            pydantic.ValidationError: If the merged profile is invalid
        """
        now = self.clock()
        existing = self.get_profile(company_id)
        updates = {k: v for k, v in updates.items() if k not in ("id", "company_id", "created_at", "stats")}

        if existing is None:
            base = DiscoveryProfile(company_id=company_id, created_at=now, updated_at=now).model_dump()
        else:
            base = existing.model_dump()

        merged = _deep_merge(base, updates)
        merged.update({"id": "current", "company_id": company_id, "updated_at": now})
        profile = DiscoveryProfile.model_validate(merged)

        schedule = profile.schedule
        if schedule.enabled:
            schedule.next_run_at = calculate_next_run_time(
                schedule.frequency, schedule.preferred_time, schedule.custom_days, now=now
            )
        else:
            schedule.next_run_at = None

        self.store.set(PROFILES_COLLECTION, company_id, profile.model_dump())
        logger.info(
            "discovery_profile_saved",
            company_id=company_id,
            created=existing is None,
            schedule_enabled=schedule.enabled,
            next_run_at=schedule.next_run_at.isoformat() if schedule.next_run_at else None
        )
        return profile

    def delete_profile(self, company_id: str) -> None:
        """Delete the profile and every lead and sweep of the company."""
        where = [("company_id", "==", company_id)]
        with self.store.batch() as batch:
            batch.delete(PROFILES_COLLECTION, company_id)
            for lead in self.store.query(LEADS_COLLECTION, where):
                batch.delete(LEADS_COLLECTION, lead["id"])
            for sweep in self.store.query(SWEEPS_COLLECTION, where):
                batch.delete(SWEEPS_COLLECTION, sweep["id"])
        logger.info("discovery_profile_deleted", company_id=company_id)

    def find_due_profiles(self, now: Optional[datetime] = None) -> List[DiscoveryProfile]:
        """Profiles with an enabled schedule whose next_run_at has arrived."""
        now = now or self.clock()
        docs = self.store.query(
            PROFILES_COLLECTION,
            [("schedule.enabled", "==", True), ("schedule.next_run_at", "<=", now)],
            order_by="schedule.next_run_at"
        )
        profiles = []
        for doc in docs:
            doc["id"] = "current"
            profiles.append(DiscoveryProfile.model_validate(doc))
        return profiles

    def set_next_run_at(self, company_id: str, next_run_at: Optional[datetime]) -> None:
        """Move a profile's schedule forward once its sweep has been enqueued."""
        self.store.update(PROFILES_COLLECTION, company_id, {"schedule.next_run_at": next_run_at})

    # ------------------------------------------------------------------
    # Discovered leads
    # ------------------------------------------------------------------

    def get_leads(
        self,
        company_id: str,
        status: Optional[DiscoveredLeadStatus] = None,
        limit: Optional[int] = 50
    ) -> List[DiscoveredLead]:
        where = [("company_id", "==", company_id)]
        if status is not None:
            where.append(("status", "==", DiscoveredLeadStatus(status).value))
        docs = self.store.query(LEADS_COLLECTION, where, order_by="discovered_at", descending=True, limit=limit)
        return [DiscoveredLead.model_validate(doc) for doc in docs]

    def get_lead(self, company_id: str, lead_id: str) -> Optional[DiscoveredLead]:
        doc = self.store.get(LEADS_COLLECTION, lead_id)
        if doc is None or doc.get("company_id") != company_id:
            return None
        return DiscoveredLead.model_validate(doc)

    def _require_lead(self, company_id: str, lead_id: str) -> DiscoveredLead:
        lead = self.get_lead(company_id, lead_id)
        if lead is None:
            raise DocumentNotFound(LEADS_COLLECTION, lead_id)
        return lead

    def update_lead_status(
        self,
        company_id: str,
        lead_id: str,
        status: DiscoveredLeadStatus,
        user_id: Optional[str] = None,
        dismiss_reason: Optional[str] = None
    ) -> DiscoveredLead:
        """
        Record a review decision on a lead.

        Dismissing a lead that was not already dismissed increments the
        profile's leads_dismissed stat.

        Raises:
            DocumentNotFound: If the lead does not exist for this company
        """
        status = DiscoveredLeadStatus(status)
        lead = self._require_lead(company_id, lead_id)

        fields: Dict[str, Any] = {
            "status": status.value,
            "reviewed_at": self.clock(),
            "reviewed_by": user_id,
        }
        if status == DiscoveredLeadStatus.dismissed and dismiss_reason:
            fields["dismiss_reason"] = dismiss_reason

        with self.store.batch() as batch:
            batch.update(LEADS_COLLECTION, lead_id, fields)
            if status == DiscoveredLeadStatus.dismissed and lead.status != DiscoveredLeadStatus.dismissed.value:
                self._increment_stat(batch, company_id, "leads_dismissed")

        logger.info("discovered_lead_status_updated", company_id=company_id, lead_id=lead_id, status=status.value)
        return self._require_lead(company_id, lead_id)

    def link_lead_to_pipeline(
        self,
        company_id: str,
        lead_id: str,
        pipeline_lead_id: str,
        user_id: Optional[str] = None
    ) -> DiscoveredLead:
        """
        Mark a lead as added to the sales pipeline.

        Raises:
            DocumentNotFound: If the lead does not exist for this company
        """
        lead = self._require_lead(company_id, lead_id)

        with self.store.batch() as batch:
            batch.update(LEADS_COLLECTION, lead_id, {
                "status": DiscoveredLeadStatus.added_to_pipeline.value,
                "pipeline_lead_id": pipeline_lead_id,
                "reviewed_at": self.clock(),
                "reviewed_by": user_id,
            })
            if lead.status != DiscoveredLeadStatus.added_to_pipeline.value:
                self._increment_stat(batch, company_id, "leads_added_to_pipeline")

        logger.info(
            "discovered_lead_linked",
            company_id=company_id,
            lead_id=lead_id,
            pipeline_lead_id=pipeline_lead_id
        )
        return self._require_lead(company_id, lead_id)

    def _increment_stat(self, batch, company_id: str, stat: str) -> None:
        if self.store.get(PROFILES_COLLECTION, company_id) is not None:
            batch.increment(PROFILES_COLLECTION, company_id, {f"stats.{stat}": 1})

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    def create_sweep(self, sweep: DiscoverySweep) -> str:
        """Persist a new sweep record and return its id."""
        sweep_id = sweep.id or uuid.uuid4().hex
        sweep.id = sweep_id
        self.store.set(SWEEPS_COLLECTION, sweep_id, sweep.model_dump())
        logger.info(
            "sweep_created",
            sweep_id=sweep_id,
            company_id=sweep.company_id,
            triggered_by=sweep.triggered_by
        )
        return sweep_id

    def update_sweep(self, sweep_id: str, fields: Dict[str, Any]) -> None:
        self.store.update(SWEEPS_COLLECTION, sweep_id, fields)

    def get_sweep(self, company_id: str, sweep_id: str) -> Optional[DiscoverySweep]:
        doc = self.store.get(SWEEPS_COLLECTION, sweep_id)
        if doc is None or doc.get("company_id") != company_id:
            return None
        return DiscoverySweep.model_validate(doc)

    def get_sweep_history(self, company_id: str, limit: int = 10) -> List[DiscoverySweep]:
        docs = self.store.query(
            SWEEPS_COLLECTION,
            [("company_id", "==", company_id)],
            order_by="started_at",
            descending=True,
            limit=limit
        )
        return [DiscoverySweep.model_validate(doc) for doc in docs]

    def count_active_sweeps(self) -> int:
        """Platform-wide number of sweeps that are pending or running."""
        return self.store.count(SWEEPS_COLLECTION, [("status", "in", ACTIVE_SWEEP_STATUSES)])

    def has_active_sweep(self, company_id: str) -> bool:
        return self.store.count(
            SWEEPS_COLLECTION,
            [("company_id", "==", company_id), ("status", "in", ACTIVE_SWEEP_STATUSES)]
        ) > 0

    def find_stale_sweeps(self, started_before: datetime) -> List[DiscoverySweep]:
        """Pending or running sweeps started before the cutoff."""
        docs = self.store.query(
            SWEEPS_COLLECTION,
            [("status", "in", ACTIVE_SWEEP_STATUSES), ("started_at", "<", started_before)],
            order_by="started_at"
        )
        return [DiscoverySweep.model_validate(doc) for doc in docs]

    def is_sweep_active(self, sweep_id: str) -> bool:
        doc = self.store.get(SWEEPS_COLLECTION, sweep_id)
        return doc is not None and doc.get("status") in ACTIVE_SWEEP_STATUSES

    def delete_sweep_leads(self, sweep_id: str) -> int:
        """Remove the leads a sweep wrote. Used when the sweep ends failed."""
        leads = self.store.query(LEADS_COLLECTION, [("sweep_id", "==", sweep_id)])
        if not leads:
            return 0
        with self.store.batch() as batch:
            for lead in leads:
                batch.delete(LEADS_COLLECTION, lead["id"])
        logger.info("sweep_leads_removed", sweep_id=sweep_id, leads=len(leads))
        return len(leads)

    def complete_sweep(
        self,
        profile: DiscoveryProfile,
        sweep_id: str,
        leads: List[DiscoveredLead],
        sweep_fields: Dict[str, Any],
        next_run_at: Optional[datetime]
    ) -> None:
        """
        Commit a successful sweep in one batch: the profile's stats and
        schedule, the discovered leads, and the completed sweep record.

        The profile comes first so a profile deleted mid-sweep stops the
        commit before any lead is written; the sweep record marking
        completion comes last.

        Raises:
            DocumentNotFound: If the profile or the sweep no longer exists
        """
        now = self.clock()
        with self.store.batch() as batch:
            batch.update(PROFILES_COLLECTION, profile.company_id, {
                "stats.last_sweep_leads_count": len(leads),
                "schedule.last_run_at": now,
                "schedule.next_run_at": next_run_at,
                "updated_at": now,
            })
            batch.increment(PROFILES_COLLECTION, profile.company_id, {"stats.total_leads_found": len(leads)})
            for lead in leads:
                lead_id = lead.id or uuid.uuid4().hex
                lead.id = lead_id
                batch.set(LEADS_COLLECTION, lead_id, lead.model_dump())
            batch.update(SWEEPS_COLLECTION, sweep_id, sweep_fields)

        logger.info(
            "sweep_results_committed",
            sweep_id=sweep_id,
            company_id=profile.company_id,
            leads=len(leads)
        )

"""
Lead Discovery Services

Sweep orchestration, data collection, lead analysis and persistence.

Usage:
    from app.services.discovery import get_orchestrator

    outcome = get_orchestrator().execute_sweep(company_id, user_id=user_id)
"""

from app.services.discovery.errors import (
    CollectorError,
    ConfigurationError,
    ExecutionError,
    SweepTimeoutError,
)
from app.services.discovery.orchestrator import (
    SweepOrchestrator,
    SweepOutcome,
    get_orchestrator,
    validate_profile,
)
from app.services.discovery.repository import DiscoveryRepository
from app.services.discovery.schedule import calculate_next_run_time

__all__ = [
    "CollectorError",
    "ConfigurationError",
    "DiscoveryRepository",
    "ExecutionError",
    "SweepOrchestrator",
    "SweepOutcome",
    "SweepTimeoutError",
    "calculate_next_run_time",
    "get_orchestrator",
    "validate_profile",
]

"""
Discovery Models
"""

from app.models.discovery import (
    DailyUsageRecord,
    DiscoveredLead,
    DiscoveredLeadStatus,
    DiscoveryProfile,
    DiscoverySweep,
    SweepStatus,
    SweepTrigger,
    TokenUsage,
)

__all__ = [
    "DailyUsageRecord",
    "DiscoveredLead",
    "DiscoveredLeadStatus",
    "DiscoveryProfile",
    "DiscoverySweep",
    "SweepStatus",
    "SweepTrigger",
    "TokenUsage",
]

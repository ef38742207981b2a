"""
Sweep Notifications

Tells a company about new leads after a successful sweep. Delivery is
best-effort: failures are logged and reported as False flags, never raised.
"""

from contextlib import contextmanager
from typing import Iterator, List, Optional

import httpx
import structlog

from app.config import settings
from app.models.discovery import DiscoveredLead, DiscoveryProfile, NotificationsSent
from app.services.alerts import send_email

logger = structlog.get_logger(__name__)

DISCORD_API_BASE = "https://discord.com/api/v10"


def _top_leads_text(leads: List[DiscoveredLead], count: int = 5) -> str:
    lines = []
    for lead in leads[:count]:
        location = ", ".join(p for p in (lead.location.city, lead.location.state) if p and p != "Unknown")
        suffix = f" ({location})" if location else ""
        lines.append(f"- {lead.business_name}{suffix}: match score {lead.ai_analysis.match_score}")
    return "\n".join(lines)


class SweepNotifier:
    """
    Usage:
        notifier = SweepNotifier()
        sent = notifier.notify(profile, sweep_id, leads)
    """

    def __init__(self, client: Optional[httpx.Client] = None, discord_bot_token: Optional[str] = None):
        self.client = client
        self.discord_bot_token = discord_bot_token if discord_bot_token is not None else settings.discord_bot_token

    @contextmanager
    def _http_client(self) -> Iterator[httpx.Client]:
        if self.client is not None:
            yield self.client
            return
        with httpx.Client(timeout=10.0) as client:
            yield client

    def notify(self, profile: DiscoveryProfile, sweep_id: str, leads: List[DiscoveredLead]) -> NotificationsSent:
        """Send the configured notifications. Nothing is sent for a sweep with no leads."""
        sent = NotificationsSent()
        if not leads:
            return sent

        prefs = profile.notifications
        if prefs.discord.enabled and prefs.discord.channel_id:
            sent.discord = self._send_discord(profile, sweep_id, leads)
        if prefs.email.enabled and prefs.email.recipients:
            sent.email = send_email(
                prefs.email.recipients,
                subject=f"{len(leads)} new leads discovered",
                body=(
                    f"Your discovery sweep found {len(leads)} new leads.\n\n"
                    f"Top matches:\n{_top_leads_text(leads)}\n\n"
                    f"Sweep: {sweep_id}\n"
                )
            )
        return sent

    def _send_discord(self, profile: DiscoveryProfile, sweep_id: str, leads: List[DiscoveredLead]) -> bool:
        discord = profile.notifications.discord
        if not self.discord_bot_token:
            logger.warning("discord_not_configured", company_id=profile.company_id, sweep_id=sweep_id)
            return False

        mention = f"<@&{discord.mention_role}> " if discord.mention_role else ""
        content = f"{mention}**{len(leads)} new leads discovered**\n{_top_leads_text(leads)}"
        try:
            with self._http_client() as client:
                response = client.post(
                    f"{DISCORD_API_BASE}/channels/{discord.channel_id}/messages",
                    json={"content": content[:2000]},
                    headers={"Authorization": f"Bot {self.discord_bot_token}"}
                )
                response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(
                "discord_notification_failed",
                company_id=profile.company_id,
                sweep_id=sweep_id,
                error=str(e)
            )
            return False

        logger.info("discord_notification_sent", company_id=profile.company_id, sweep_id=sweep_id)
        return True

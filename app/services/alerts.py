"""
Admin Alert Service
Sends operator email alerts (circuit breakers opening, daily cost threshold crossed)
"""

import smtplib
from datetime import datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional

import structlog

from app.config import settings

logger = structlog.get_logger()


def send_email(recipients: List[str], subject: str, body: str) -> bool:
    """
    Send a plain-text email via the configured SMTP server.

    Args:
        recipients: Email addresses to send to
        subject: Subject line
        body: Plain-text body

    Returns:
        True if the message was handed to the SMTP server, False otherwise.
        Never raises - alert delivery must not cascade into the caller.
    """
    if not settings.smtp_host:
        logger.warning(
            "smtp_not_configured",
            message="Cannot send email - SMTP host not configured",
            subject=subject
        )
        return False

    if not recipients:
        logger.warning("email_skipped", reason="no_recipients", subject=subject)
        return False

    msg = MIMEMultipart()
    msg['From'] = settings.smtp_username or "noreply@lead-discovery.app"
    msg['To'] = ", ".join(recipients)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port, timeout=10) as server:
            server.starttls()
            if settings.smtp_username and settings.smtp_password:
                server.login(settings.smtp_username, settings.smtp_password)
            server.send_message(msg)

        logger.info("email_sent", subject=subject, recipients=len(recipients))
        return True

    except Exception as e:
        # Do NOT raise - notification failure should not cascade
        logger.error(
            "email_send_failed",
            subject=subject,
            error=str(e),
            smtp_host=settings.smtp_host
        )
        return False


def send_admin_alert(subject: str, body: str, admin_email: Optional[str] = None) -> bool:
    """
    Send an operator alert to the configured admin address.

    Args:
        subject: Alert subject (prefixed by the caller, e.g. "ALERT: ...")
        body: Alert details
        admin_email: Override recipient; defaults to circuit_breaker_alert_email,
                     then admin_email

    Returns:
        True if sent, False if skipped or failed
    """
    recipient = admin_email or settings.circuit_breaker_alert_email or settings.admin_email
    if not recipient:
        logger.warning("admin_alert_skipped", reason="admin_email_not_configured", subject=subject)
        return False

    timestamp = datetime.now(timezone.utc).isoformat()
    return send_email([recipient], subject, f"{body}\n\n---\nTimestamp: {timestamp}\n")

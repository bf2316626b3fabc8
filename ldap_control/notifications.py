"""
Email notification utilities for the LDAP control plane.

This module sends operator alerts when a cluster becomes unreachable or
recovers, plus a test message for checking the SMTP settings.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, Any, List, Optional
from datetime import datetime

from ldap_control.models import ClusterHealth, HealthStatus

logger = logging.getLogger(__name__)

SMTPS_PORT = 465


def _recipients(config: Dict[str, Any]) -> List[str]:
    recipients = config.get('email_to') or []
    return [recipients] if isinstance(recipients, str) else list(recipients)


def _open_smtp(config: Dict[str, Any]) -> smtplib.SMTP:
    """Connect (SMTPS on port 465, STARTTLS when smtp_tls) and log in if credentials are set."""
    host = config['smtp_server']
    port = config.get('smtp_port', 587)
    if port == SMTPS_PORT:
        server = smtplib.SMTP_SSL(host, port)
    else:
        server = smtplib.SMTP(host, port)
        if config.get('smtp_tls', True):
            server.starttls()

    username = config.get('smtp_username')
    password = config.get('smtp_password')
    if username and password:
        server.login(username, password)
    return server


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send a plain-text email using the ``notifications`` config section.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if the message was handed to the SMTP server
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False
    if not config.get('smtp_server'):
        logger.error("SMTP server not configured")
        return False
    recipients = _recipients(config)
    if not recipients:
        logger.error("No email recipients configured")
        return False

    sender = config.get('email_from') or config.get('smtp_username')
    msg = MIMEMultipart()
    msg['From'] = sender
    msg['To'] = ', '.join(recipients)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain'))

    logger.debug(f"Sending email to {len(recipients)} recipients via {config['smtp_server']}")
    try:
        server = _open_smtp(config)
        server.sendmail(sender, recipients, msg.as_string())
        server.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent: {subject}")
    return True


def send_health_alert(previous: Optional[ClusterHealth], current: ClusterHealth,
                      config: Dict[str, Any]) -> bool:
    """
    Alert operators about a cluster health transition.

    Only transitions into Unreachable, and recoveries out of it, produce an
    email; each can be switched off separately.

    Args:
        previous: Snapshot before the probe (None on the first probe)
        current: Snapshot after the probe
        config: Notification configuration

    Returns:
        True if an email was sent
    """
    was_unreachable = previous is not None and previous.status is HealthStatus.UNREACHABLE
    now_unreachable = current.status is HealthStatus.UNREACHABLE

    if now_unreachable and not was_unreachable:
        if not config.get('email_on_unreachable', True):
            return False
        title = f"Cluster {current.cluster_id} unreachable"
    elif was_unreachable and not now_unreachable:
        if not config.get('email_on_recovery', True):
            return False
        title = f"Cluster {current.cluster_id} recovered ({current.status.value})"
    else:
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    last_bind = current.last_bind_success.isoformat() if current.last_bind_success else 'never'

    body_lines = [
        "LDAP Control Plane Health Report",
        f"Timestamp: {timestamp}",
        "",
        f"Cluster: {current.cluster_id}",
        f"Previous status: {previous.status.value if previous else 'unknown'}",
        f"Current status: {current.status.value}",
        f"Connection pool: {current.reachable_connections}/{current.total_connections} reachable",
        f"Last successful bind: {last_bind}",
    ]
    if current.detail:
        body_lines.append(f"Detail: {current.detail}")

    body_lines.extend([
        "",
        "Operations against an unreachable cluster return Unavailable until it recovers.",
        "",
        "This is an automated message from the LDAP Control Plane.",
    ])

    return send_email(f"LDAP Control Plane Alert: {title}", '\n'.join(body_lines), config)



def send_test_email(config: Dict[str, Any]) -> bool:
    """Send a test message describing the SMTP settings in use."""
    body = '\n'.join([
        "This is a test email from the LDAP Control Plane.",
        "",
        "If you receive this message, email notifications are configured correctly.",
        "",
        "Settings in use:",
        f"- SMTP Server: {config.get('smtp_server', 'not configured')}",
        f"- SMTP Port: {config.get('smtp_port', 'not configured')}",
        f"- From Address: {config.get('email_from', 'not configured')}",
        f"- Recipients: {', '.join(_recipients(config))}",
    ])

    sent = send_email("LDAP Control Plane: Configuration Test", body, config)
    if sent:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return sent

"""
Email notification utilities for the password never expires audit.

Sends alerts when newly flagged accounts are detected and when a run fails.
Every function returns a bool and never raises, so a mail problem cannot
change the outcome of an audit run.
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Dict, List, Any, Optional, Sequence
from datetime import datetime

from expiry_audit.models import AccountRecord

logger = logging.getLogger(__name__)

MAX_LISTED_ACCOUNTS = 50


class NotificationError(Exception):
    """Exception raised when notification sending fails."""
    pass


def send_email(subject: str, body: str, config: Dict[str, Any]) -> bool:
    """
    Send email notification using SMTP.

    Args:
        subject: Email subject line
        body: Email body content
        config: Notification configuration dictionary

    Returns:
        True if email sent successfully, False otherwise
    """
    if not config.get('enable_email', False):
        logger.debug("Email notifications disabled")
        return False

    try:
        _deliver(subject, body, config)
    except NotificationError as e:
        logger.error(str(e))
        return False
    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email notification: {e}")
        return False

    logger.info(f"Email notification sent successfully: {subject}")
    return True


def _deliver(subject: str, body: str, config: Dict[str, Any]) -> None:
    smtp_server = config.get('smtp_server')
    smtp_port = config.get('smtp_port', 587)
    smtp_username = config.get('smtp_username')
    smtp_password = config.get('smtp_password')
    smtp_tls = config.get('smtp_tls', True)

    email_from = config.get('email_from', smtp_username)
    email_to = config.get('email_to', [])

    if not smtp_server:
        raise NotificationError("SMTP server not configured")
    if not email_to:
        raise NotificationError("No email recipients configured")
    if isinstance(email_to, str):
        email_to = [email_to]

    logger.debug(f"Sending email to {len(email_to)} recipients via {smtp_server}:{smtp_port}")

    msg = MIMEMultipart()
    msg['From'] = email_from
    msg['To'] = ', '.join(email_to)
    msg['Subject'] = subject
    msg.attach(MIMEText(body, 'plain', 'utf-8'))

    if smtp_port == 465:
        server = smtplib.SMTP_SSL(smtp_server, smtp_port)
    else:
        server = smtplib.SMTP(smtp_server, smtp_port)
        if smtp_tls:
            server.starttls()

    try:
        if smtp_username and smtp_password:
            server.login(smtp_username, smtp_password)
        server.sendmail(email_from, email_to, msg.as_string())
    finally:
        server.quit()


def send_new_accounts_alert(accounts: Sequence[AccountRecord], config: Dict[str, Any],
                            host: Optional[str] = None) -> bool:
    """
    Send an alert listing accounts newly flagged with password never expires.

    Args:
        accounts: Newly observed accounts
        config: Notification configuration
        host: Host that ran the audit

    Returns:
        True if notification sent successfully
    """
    if not accounts:
        return False
    if not config.get('email_on_new_accounts', True):
        logger.debug("New account email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    subject = f"Password Never Expires Audit: {len(accounts)} new account(s) detected"

    body_lines = [
        "Password Never Expires Audit Report",
        f"Timestamp: {timestamp}",
    ]
    if host:
        body_lines.append(f"Host: {host}")
    body_lines.extend([
        "",
        f"The following {len(accounts)} account(s) were found with 'password never expires'",
        "set since the previous audit:",
        ""
    ])

    for account in accounts[:MAX_LISTED_ACCOUNTS]:
        body_lines.append(f"  - {account.describe()}")
    if len(accounts) > MAX_LISTED_ACCOUNTS:
        body_lines.append(f"  ... and {len(accounts) - MAX_LISTED_ACCOUNTS} more (see the audit log)")

    body_lines.extend([
        "",
        "This is an automated message from the Password Never Expires Audit."
    ])

    return send_email(subject, '\n'.join(body_lines), config)


def send_failure_notification(
    title: str,
    error_message: str,
    config: Dict[str, Any],
    additional_info: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Send notification for audit run failures.

    Args:
        title: Failure title/type
        error_message: Error description
        config: Notification configuration
        additional_info: Optional additional context

    Returns:
        True if notification sent successfully
    """
    if not config.get('email_on_failure', True):
        logger.debug("Failure email notifications disabled")
        return False

    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    subject = f"Password Never Expires Audit Alert: {title}"

    body_lines = [
        "Password Never Expires Audit Failure Report",
        f"Timestamp: {timestamp}",
        "",
        f"Failure Type: {title}",
        f"Error Message: {error_message}",
        ""
    ]

    if additional_info:
        body_lines.append("Additional Information:")
        for key, value in additional_info.items():
            body_lines.append(f"  {key}: {value}")
        body_lines.append("")

    body_lines.extend([
        "The baseline was not updated by this run.",
        "Please check the audit log for more detailed information.",
        "",
        "This is an automated message from the Password Never Expires Audit."
    ])

    return send_email(subject, '\n'.join(body_lines), config)


def send_test_notification(config: Dict[str, Any]) -> bool:
    """
    Test email notification configuration by sending a test email.

    Args:
        config: Notification configuration to test

    Returns:
        True if test email sent successfully
    """
    recipients: List[str] = config.get('email_to') or []
    if isinstance(recipients, str):
        recipients = [recipients]

    test_subject = "Password Never Expires Audit: Configuration Test"
    test_body = """This is a test email from the Password Never Expires Audit.

If you receive this message, your email notification configuration is working correctly.

Test details:
- SMTP Server: {}
- SMTP Port: {}
- From Address: {}
- Recipients: {}

This is an automated test message.""".format(
        config.get('smtp_server', 'not configured'),
        config.get('smtp_port', 'not configured'),
        config.get('email_from', 'not configured'),
        ', '.join(recipients)
    )

    result = send_email(test_subject, test_body, config)
    if result:
        logger.info("Test notification sent successfully")
    else:
        logger.error("Test notification failed")
    return result

"""
Email Utilities
===============

Outbound notifications: password reset tokens and case assignment notices.
Sends over SMTP when configured, otherwise logs the message (development mode).
"""

import smtplib
import logging
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from typing import Optional

from .config import get_settings

logger = logging.getLogger(__name__)


def get_email_config():
    """Get email configuration from settings."""
    settings = get_settings()
    return {
        "smtp_host": settings.smtp_host,
        "smtp_port": settings.smtp_port,
        "smtp_user": settings.smtp_user,
        "smtp_password": settings.smtp_password,
        "smtp_from": settings.smtp_from,
        "smtp_use_tls": settings.smtp_use_tls,
        "app_url": settings.client_url,
    }


def is_email_configured() -> bool:
    """Check if SMTP is properly configured."""
    config = get_email_config()
    return bool(config["smtp_host"] and config["smtp_user"] and config["smtp_password"])


def send_email(
    to_email: str,
    subject: str,
    html_body: str,
    text_body: Optional[str] = None
) -> bool:
    """
    Send an email.

    Returns True if sent successfully, False otherwise.
    In development mode (SMTP not configured), logs the subject instead.
    """
    config = get_email_config()

    if not is_email_configured():
        logger.info(f"[DEV MODE] Email would be sent to {to_email}: {subject}")
        return True

    try:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = config["smtp_from"]
        msg["To"] = to_email

        if text_body:
            msg.attach(MIMEText(text_body, "plain", "utf-8"))
        msg.attach(MIMEText(html_body, "html", "utf-8"))

        with smtplib.SMTP(config["smtp_host"], config["smtp_port"], timeout=10) as server:
            if config["smtp_use_tls"]:
                server.starttls()
            server.login(config["smtp_user"], config["smtp_password"])
            server.sendmail(config["smtp_from"], to_email, msg.as_string())

        logger.info(f"Email sent successfully to {to_email}")
        return True

    except (smtplib.SMTPException, OSError) as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False


def send_password_reset_email(to_email: str, reset_token: str, user_name: Optional[str] = None) -> bool:
    """
    Send a password reset email.

    Args:
        to_email: Recipient email address
        reset_token: The plaintext reset token (never stored server-side)
        user_name: Optional user name for personalization

    Returns:
        True if sent successfully, False otherwise
    """
    config = get_email_config()
    minutes = get_settings().password_reset_expire_minutes
    reset_link = f"{config['app_url'].rstrip('/')}/reset-password/{reset_token}"
    greeting = f"Hello {user_name}," if user_name else "Hello,"

    html_body = f"""
    <!DOCTYPE html>
    <html lang="en">
    <head><meta charset="UTF-8"></head>
    <body style="font-family: Arial, sans-serif;">
        <p>{greeting}</p>
        <p>We received a request to reset the password for your account.</p>
        <p><a href="{reset_link}">Reset your password</a></p>
        <p>This link is valid for {minutes} minutes. If you did not ask for a reset,
        you can ignore this email.</p>
        <p style="word-break: break-all; font-size: 12px;">{reset_link}</p>
    </body>
    </html>
    """

    text_body = f"""
{greeting}

Forgot your password? Open the link below to choose a new one:
{reset_link}

This link is valid for {minutes} minutes.
If you didn't forget your password, please ignore this email.
"""

    return send_email(
        to_email=to_email,
        subject=f"Your password reset token (valid for {minutes} minutes)",
        html_body=html_body,
        text_body=text_body
    )


def send_case_assignment_email(to_email: str, case_number: str, case_title: str,
                               user_name: Optional[str] = None) -> bool:
    """Tell a staff member a case was assigned to them."""
    config = get_email_config()
    case_link = f"{config['app_url'].rstrip('/')}/cases"
    greeting = f"Hello {user_name}," if user_name else "Hello,"

    text_body = f"""
{greeting}

Case {case_number} ("{case_title}") has been assigned to you.
{case_link}
"""
    html_body = f"""
    <p>{greeting}</p>
    <p>Case <strong>{case_number}</strong> ({case_title}) has been assigned to you.</p>
    <p><a href="{case_link}">Open cases</a></p>
    """

    return send_email(
        to_email=to_email,
        subject=f"Case {case_number} assigned to you",
        html_body=html_body,
        text_body=text_body
    )

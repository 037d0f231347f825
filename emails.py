"""
Outgoing email over SMTP.

Without SMTP credentials the message is logged instead of sent, so local
development and tests never need a mail server.
"""
import html
import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText

from config import settings

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, html_body: str) -> bool:
    if not settings.smtp_host or not settings.smtp_user or not settings.smtp_pass:
        # In dev, log and treat as sent
        logger.info("[DEV EMAIL] To: %s | Subject: %s\n%s", to_email, subject, html_body)
        return True

    msg = MIMEMultipart()
    msg["From"] = settings.from_email
    msg["To"] = to_email
    msg["Subject"] = subject
    msg.attach(MIMEText(html_body, "html"))

    try:
        with smtplib.SMTP(settings.smtp_host, settings.smtp_port) as server:
            server.starttls()
            server.login(settings.smtp_user, settings.smtp_pass)
            server.sendmail(settings.from_email, to_email, msg.as_string())
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email send error to %s: %s", to_email, e)
        return False


def send_verification_email(to_email: str, name: str, token: str) -> bool:
    link = f"{settings.client_url}/verify-email/{token}"
    body = f"""
    <h2>Verify your email</h2>
    <p>Dear {html.escape(name)},</p>
    <p>Thank you for registering. Please confirm your email address:</p>
    <p><a href="{link}">{link}</a></p>
    <p>This link expires in 24 hours. Your account will be activated once an administrator approves it.</p>
    """
    return send_email(to_email, "Verify your email address", body)


def send_password_reset_email(to_email: str, name: str, token: str) -> bool:
    link = f"{settings.client_url}/reset-password/{token}"
    body = f"""
    <h2>Password reset</h2>
    <p>Dear {html.escape(name)},</p>
    <p>A password reset was requested for your account. Use the link below to choose a new password:</p>
    <p><a href="{link}">{link}</a></p>
    <p>This link expires in 1 hour. If you did not request it, ignore this email.</p>
    """
    return send_email(to_email, "Reset your password", body)


def send_notification_email(to_email: str, name: str, title: str, message: str) -> bool:
    body = f"""
    <h2>{html.escape(title)}</h2>
    <p>Dear {html.escape(name)},</p>
    <p>{html.escape(message)}</p>
    <p><a href="{settings.client_url}/notifications">View notifications</a></p>
    """
    return send_email(to_email, title, body)

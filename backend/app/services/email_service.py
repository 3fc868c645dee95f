"""
Email service - sends verification and welcome emails via SMTP.

In development (no SMTP configured), emails are logged to the console
so you can see what *would* be sent without configuring a mail server.
"""

import logging
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from app.core.config import settings

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised when the SMTP server refuses or times out"""


class EmailService:
    async def send_email(self, to: str, subject: str, html: str, text: Optional[str] = None) -> None:
        """Send one message, or log it when SMTP is disabled"""
        if not settings.smtp_enabled():
            logger.info("[DEV] Would send email to %s\n  Subject: %s\n  %s", to, subject, text or html)
            return

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = settings.SMTP_FROM_EMAIL
        msg["To"] = to
        if text:
            msg.attach(MIMEText(text, "plain"))
        msg.attach(MIMEText(html, "html"))

        try:
            await aiosmtplib.send(
                msg,
                hostname=settings.SMTP_HOST,
                port=settings.SMTP_PORT,
                username=settings.SMTP_USERNAME or None,
                password=settings.SMTP_PASSWORD or None,
                start_tls=settings.SMTP_USE_TLS,
                timeout=settings.SMTP_TIMEOUT_SECONDS,
            )
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error("Failed to send email to %s: %s", to, exc)
            raise EmailDeliveryError(str(exc)) from exc
        logger.info("Email sent to %s (%s)", to, subject)

    async def send_verification_email(self, to: str, username: str, otp_code: str) -> None:
        subject = "Verify your email address"
        html = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
          <p>Hey {username},</p>
          <p>Welcome to {settings.APP_NAME}! To complete your signup, please use the following verification code:</p>
          <div style="text-align: center; margin: 30px 0; padding: 20px; background-color: #f8f9fa;
                      border-radius: 10px; border: 2px solid #27ae60;">
            <div style="font-size: 36px; font-weight: bold; letter-spacing: 8px; font-family: monospace;">
              {otp_code}
            </div>
          </div>
          <p>This code will expire in {settings.OTP_EXPIRE_MINUTES} minutes.</p>
        </div>
        """
        text = (
            f"Hey {username}, welcome to {settings.APP_NAME}! Your verification code is {otp_code}. "
            f"It expires in {settings.OTP_EXPIRE_MINUTES} minutes."
        )
        await self.send_email(to, subject, html, text)

    async def send_welcome_email(self, to: str, username: str) -> None:
        subject = f"Welcome to {settings.APP_NAME}!"
        html = f"""
        <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
          <h1 style="color: #2c3e50; text-align: center;">Welcome to {settings.APP_NAME}!</h1>
          <p>Hi {username},</p>
          <p>Your email is verified. Discover recipes, save your favourites and happy cooking!</p>
        </div>
        """
        text = f"Welcome to {settings.APP_NAME}! Hi {username}, your email is verified. Happy cooking!"
        await self.send_email(to, subject, html, text)


email_service = EmailService()


def get_email_service() -> EmailService:
    """Dependency hook so tests can swap in a fake sender"""
    return email_service

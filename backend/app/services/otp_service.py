import logging
import math
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple

from fastapi import status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.errors import AppError, NotFoundError, RateLimitError
from app.models.user import User
from app.services.email_service import EmailDeliveryError, EmailService

logger = logging.getLogger(__name__)


class InvalidOtpError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid OTP code. Please check the code and try again."
    code = "INVALID_OTP"


class OtpExpiredError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "OTP code has expired. Please request a new verification email."
    code = "OTP_EXPIRED"


class TooManyAttemptsError(AppError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    message = "Too many failed attempts. Please request a new OTP code."
    code = "TOO_MANY_ATTEMPTS"


class AlreadyVerifiedError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Email is already verified. You can log in now."
    code = "ALREADY_VERIFIED"


class VerificationSendError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    message = "Failed to send verification email. Please try again later."
    code = "SEND_FAILED"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def generate_otp() -> str:
    """Uniform 6-digit code in 100000-999999"""
    return str(100000 + secrets.randbelow(900000))


class OtpService:
    @staticmethod
    def issue(user: User, now: Optional[datetime] = None) -> Tuple[str, datetime]:
        """
        Start a new verification cycle on the user row (caller commits).

        Replaces any pending code, so the previous one stops verifying.
        """
        now = now or utcnow()
        code = generate_otp()
        expires_at = now + timedelta(minutes=settings.OTP_EXPIRE_MINUTES)

        user.otp_code = code
        user.otp_expires_at = expires_at
        user.otp_attempts = 0
        user.email_verification_sent_at = now
        return code, expires_at

    @staticmethod
    def verify(db: Session, email: str, submitted_code: str, now: Optional[datetime] = None) -> User:
        """
        Check a submitted code and mark the email verified.

        A miss only bumps otp_attempts when the email exists; unknown emails
        get the same InvalidOtpError with no side effect.
        """
        now = now or utcnow()
        user = db.query(User).filter(
            User.email == email,
            User.otp_code == submitted_code,
        ).first()

        if user is None:
            db.query(User).filter(User.email == email).update(
                {User.otp_attempts: User.otp_attempts + 1},
                synchronize_session=False,
            )
            db.commit()
            raise InvalidOtpError()

        # Attempts are checked before expiry so a locked code stays locked
        if user.otp_attempts >= settings.OTP_MAX_ATTEMPTS:
            raise TooManyAttemptsError()

        if now > as_utc(user.otp_expires_at):
            raise OtpExpiredError(data={"email": user.email})

        user.email_verified = True
        user.otp_code = None
        user.otp_expires_at = None
        user.otp_attempts = 0
        db.commit()
        db.refresh(user)
        logger.info(f"Email verified for user {user.id}")
        return user

    @staticmethod
    async def resend(db: Session, email: str, mailer: EmailService, now: Optional[datetime] = None) -> User:
        """Reissue a code and email it; delivery failure is reported to the caller"""
        now = now or utcnow()
        user = db.query(User).filter(User.email == email).first()
        if user is None:
            raise NotFoundError("No account found with this email address")

        if user.email_verified:
            raise AlreadyVerifiedError()

        last_sent = as_utc(user.email_verification_sent_at)
        if last_sent is not None:
            elapsed = (now - last_sent).total_seconds()
            cooldown = settings.OTP_RESEND_COOLDOWN_SECONDS
            if elapsed < cooldown:
                remaining = max(1, math.ceil(cooldown - elapsed))
                raise RateLimitError(
                    f"Please wait {remaining} seconds before requesting another verification email.",
                    code="RATE_LIMITED",
                    retry_after=remaining,
                )

        code, _ = OtpService.issue(user, now=now)
        db.commit()

        try:
            await mailer.send_verification_email(user.email, user.username, code)
        except EmailDeliveryError as exc:
            logger.error(f"Failed to resend verification email to {user.email}: {exc}")
            raise VerificationSendError()

        logger.info(f"Verification email re-sent to {user.email}")
        return user


otp_service = OtpService()

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import AnyHttpUrl, BaseModel, ConfigDict, EmailStr, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.api.dependencies import auth_rate_limit, get_current_user
from app.core.config import settings
from app.core.database import get_db
from app.core.errors import AuthenticationError, ConflictError, EmailNotVerifiedError, NotFoundError
from app.core.security import create_access_token, get_password_hash, verify_password
from app.models.user import User
from app.services.email_service import EmailDeliveryError, EmailService, get_email_service
from app.services.otp_service import otp_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"


class SignupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    username: str = Field(min_length=3, max_length=50, pattern=r"^[A-Za-z0-9_]+$")
    email: EmailStr
    password: str = Field(min_length=6)
    is_vegetarian: bool = Field(default=False, alias="isVegetarian")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    otp: str = Field(pattern=r"^[0-9]{6}$")


class ResendVerificationRequest(BaseModel):
    email: EmailStr


class ProfileUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    full_name: Optional[str] = Field(default=None, max_length=100, alias="fullName")
    avatar_url: Optional[AnyHttpUrl] = Field(default=None, alias="avatarUrl")


def _duplicate_error(db: Session, email: str, username: str) -> Optional[ConflictError]:
    if db.query(User.id).filter(User.email == email).first():
        return ConflictError("Email already exists")
    if db.query(User.id).filter(User.username == username).first():
        return ConflictError("Username already exists")
    return None


@router.post("/signup", status_code=status.HTTP_201_CREATED, dependencies=[Depends(auth_rate_limit)])
async def signup(
    payload: SignupRequest,
    db: Session = Depends(get_db),
    mailer: EmailService = Depends(get_email_service),
):
    """Create an unverified account and email it a verification code"""
    duplicate = _duplicate_error(db, payload.email, payload.username)
    if duplicate:
        raise duplicate

    user = User(
        username=payload.username,
        email=payload.email,
        password_hash=get_password_hash(payload.password),
        is_vegetarian=payload.is_vegetarian,
        email_verified=False,
    )
    otp_code, _ = otp_service.issue(user)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Two signups raced past the checks above; the unique constraint picked a winner
        db.rollback()
        raise _duplicate_error(db, payload.email, payload.username) or ConflictError()
    db.refresh(user)

    # Delivery is best-effort: the account exists either way and the client can resend
    email_sent = False
    try:
        await mailer.send_verification_email(user.email, user.username, otp_code)
        email_sent = True
    except EmailDeliveryError as exc:
        logger.error(f"Failed to send verification email to {user.email}: {exc}")

    data = {
        **user.summary(),
        "emailVerified": False,
        "verificationEmailSent": email_sent,
    }
    if not email_sent and settings.EXPOSE_OTP_ON_SEND_FAILURE and settings.is_development():
        data["developmentOTP"] = otp_code

    logger.info(f"User {user.id} signed up (verification email sent: {email_sent})")
    return {
        "status": "success",
        "message": (
            "Account created successfully! Please check your email to verify your account before logging in."
            if email_sent
            else "Account created successfully! We could not send the verification email, please request a new code."
        ),
        "data": data,
    }


@router.post("/login", dependencies=[Depends(auth_rate_limit)])
async def login(payload: LoginRequest, db: Session = Depends(get_db)):
    """Exchange email/password for a bearer token"""
    user = db.query(User).filter(User.email == payload.email).first()

    # Same message for unknown email and wrong password so emails can't be enumerated
    if not user or not verify_password(payload.password, user.password_hash):
        raise AuthenticationError(INVALID_CREDENTIALS_MESSAGE)

    # Password is checked first, so only the account owner learns it is unverified
    if not user.email_verified:
        raise EmailNotVerifiedError(
            user.email,
            "Please verify your email address before logging in. Check your inbox for the verification email.",
        )

    token = create_access_token(user.id)
    return {
        "status": "success",
        "message": "Login successful",
        "data": user.summary(),
        "token": token,
    }


@router.post("/verify-email")
async def verify_email(
    payload: VerifyEmailRequest,
    db: Session = Depends(get_db),
    mailer: EmailService = Depends(get_email_service),
):
    """Confirm the OTP and mark the email verified"""
    user = otp_service.verify(db, payload.email, payload.otp)

    # Verification is already committed; a failed welcome email must not undo it
    try:
        await mailer.send_welcome_email(user.email, user.username)
    except EmailDeliveryError as exc:
        logger.warning(f"Failed to send welcome email to {user.email}: {exc}")

    return {
        "status": "success",
        "message": "Email verified successfully! You can now log in to your account.",
        "data": {"email": user.email, "username": user.username, "verified": True},
    }


@router.post("/resend-verification")
async def resend_verification(
    payload: ResendVerificationRequest,
    db: Session = Depends(get_db),
    mailer: EmailService = Depends(get_email_service),
):
    """Issue a fresh OTP, throttled per account"""
    user = await otp_service.resend(db, payload.email, mailer)
    return {
        "status": "success",
        "message": "Verification email sent! Please check your inbox.",
        "data": {"email": user.email, "verificationSent": True},
    }


@router.get("/me")
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    """Get current user information"""
    return {"status": "success", "data": {"user": current_user.snapshot()}}


@router.put("/profile")
async def update_profile(
    payload: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update optional profile fields; omitted fields keep their value"""
    # Re-read in this session: the row may have been deleted since the token check
    user = db.query(User).filter(User.id == current_user.id).first()
    if user is None:
        raise NotFoundError("User not found")

    if payload.full_name is not None:
        user.full_name = payload.full_name
    if payload.avatar_url is not None:
        user.avatar_url = str(payload.avatar_url)
    db.commit()
    db.refresh(user)

    return {
        "status": "success",
        "message": "Profile updated successfully",
        "data": {"user": user.snapshot()},
    }

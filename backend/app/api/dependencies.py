import logging
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from limits.storage import storage_from_string
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.database import get_db
from app.core.errors import AuthenticationError, EmailNotVerifiedError, ForbiddenError, RateLimitError
from app.core.security import TokenClaims, TokenError, TokenErrorKind, decode_access_token
from app.models.user import User
from app.services.rate_limiter import AuthRateLimiter

logger = logging.getLogger(__name__)

# OAuth2 password bearer scheme - extracts token from Authorization header
# auto_error=False so a missing header reaches our own 401 envelope
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)

_TOKEN_ERROR_MESSAGES = {
    TokenErrorKind.EXPIRED: "Token expired, please login again",
    TokenErrorKind.INVALID_SIGNATURE: "Invalid token, please login again",
}

auth_rate_limiter = AuthRateLimiter(
    max_attempts=settings.AUTH_RATE_LIMIT_MAX_ATTEMPTS,
    window_seconds=settings.AUTH_RATE_LIMIT_WINDOW_MINUTES * 60,
    storage=storage_from_string(settings.RATE_LIMIT_STORAGE_URI),
)


def _find_active_user(db: Session, user_id: int) -> Optional[User]:
    # A NULL credential marks a row that is mid-creation or soft-deleted
    return db.query(User).filter(User.id == user_id, User.password_hash.isnot(None)).first()


def _attach(request: Request, user: User, claims: TokenClaims) -> None:
    request.state.user = user
    request.state.token = claims


async def get_current_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    """
    Resolve the bearer token to a verified user.

    401 for a missing/malformed/expired/forged token or an unknown user,
    403 EMAIL_NOT_VERIFIED when the account exists but is unverified.
    The store is not queried for malformed tokens.
    """
    if token is None:
        raise AuthenticationError("Not authorized, no token provided")

    try:
        claims = decode_access_token(token)
    except TokenError as exc:
        # Malformed tokens carry their own detail ("Invalid token format" / "Invalid token payload")
        message = str(exc) if exc.kind is TokenErrorKind.MALFORMED else _TOKEN_ERROR_MESSAGES[exc.kind]
        raise AuthenticationError(message)

    user = _find_active_user(db, claims.id)
    if user is None:
        raise AuthenticationError("User not found or account deleted")

    if not user.email_verified:
        raise EmailNotVerifiedError(user.email)

    _attach(request, user, claims)
    return user


async def get_optional_user(
    request: Request,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> Optional[User]:
    """Same lookup as get_current_user, but any failure just yields None"""
    try:
        claims = decode_access_token(token)
        user = _find_active_user(db, claims.id)
    except TokenError as exc:
        if token is not None:
            logger.debug(f"Optional auth ignored token: {exc}")
        return None
    except SQLAlchemyError as exc:
        logger.debug(f"Optional auth skipped user lookup: {exc}")
        return None

    if user is None:
        return None

    _attach(request, user, claims)
    return user


def require_roles(*roles: str):
    """
    Role gate for future use.

    Users have no role column yet, so this only enforces authentication;
    once a role exists, callers outside ``roles`` get a 403.
    """
    allowed = {role.lower() for role in roles if role}

    async def checker(current_user: User = Depends(get_current_user)) -> User:
        role = getattr(current_user, "role", None)
        if allowed and role is not None and str(role).lower() not in allowed:
            raise ForbiddenError("User role not authorized")
        return current_user

    return checker


def get_auth_rate_limiter() -> AuthRateLimiter:
    return auth_rate_limiter


async def auth_rate_limit(
    request: Request,
    limiter: AuthRateLimiter = Depends(get_auth_rate_limiter),
) -> None:
    """Bound signup/login attempts per client IP"""
    if not settings.AUTH_RATE_LIMIT_ENABLED:
        return
    client_ip = request.client.host if request.client else "unknown"
    decision = limiter.hit(client_ip)
    if not decision.allowed:
        logger.warning(f"Auth rate limit exceeded for {client_ip} (retry in {decision.retry_after}s)")
        raise RateLimitError(
            "Too many authentication attempts, please try again later",
            retry_after=decision.retry_after,
        )

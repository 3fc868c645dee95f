from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from app.core.config import settings

# CryptContext handles password hashing using bcrypt
# 'deprecated="auto"' allows passlib to handle deprecation warnings automatically
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Values some clients send when they have no token stored
_PLACEHOLDER_TOKENS = {"null", "undefined"}


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a hash using constant-time comparison"""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password using bcrypt"""
    # bcrypt generates a per-hash salt, so equal passwords produce different hashes
    return pwd_context.hash(password)


class TokenErrorKind(str, Enum):
    MALFORMED = "malformed"
    EXPIRED = "expired"
    INVALID_SIGNATURE = "invalid_signature"


class TokenError(Exception):
    def __init__(self, kind: TokenErrorKind, detail: str = ""):
        self.kind = kind
        super().__init__(detail or kind.value)


@dataclass(frozen=True)
class TokenClaims:
    id: int
    issued_at: Optional[int]
    expires_at: Optional[int]


def create_access_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token for a user id"""
    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    # Tokens are stateless: the only way to revoke them early is to rotate SECRET_KEY
    to_encode = {"id": user_id, "iat": now, "exp": now + expires_delta}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def is_malformed_token(token: Optional[str]) -> bool:
    return token is None or not token.strip() or token.strip() in _PLACEHOLDER_TOKENS


def decode_access_token(token: Optional[str]) -> TokenClaims:
    """
    Validate signature and expiry and return the token claims.

    Raises TokenError(MALFORMED) for absent/empty/placeholder tokens or a
    payload without an integer id, TokenError(EXPIRED) once exp has passed
    and TokenError(INVALID_SIGNATURE) for anything jose rejects otherwise.
    """
    if is_malformed_token(token):
        raise TokenError(TokenErrorKind.MALFORMED, "Invalid token format")

    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        raise TokenError(TokenErrorKind.EXPIRED, "Token expired")
    except JWTError as exc:
        raise TokenError(TokenErrorKind.INVALID_SIGNATURE, str(exc))

    user_id = payload.get("id")
    # bool is an int subclass; a True id is not a user id
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise TokenError(TokenErrorKind.MALFORMED, "Invalid token payload")

    return TokenClaims(id=user_id, issued_at=payload.get("iat"), expires_at=payload.get("exp"))

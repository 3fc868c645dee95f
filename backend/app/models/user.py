from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text
from sqlalchemy.sql import func
from app.core.database import Base


class User(Base):
    """
    User model representing application users.

    Stores credentials, profile fields and email-verification state.
    Passwords are stored as hashes (never plaintext).

    otp_code and otp_expires_at are either both set (a verification cycle is
    pending) or both NULL. email_verified only ever moves from False to True.
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    # Uniqueness is enforced by the store; concurrent signups race on these constraints
    username = Column(String(50), unique=True, index=True, nullable=False)
    email = Column(String(100), unique=True, index=True, nullable=False)
    # bcrypt hash - never exposed in responses
    password_hash = Column(String(255), nullable=False)

    full_name = Column(String(100), nullable=True)
    avatar_url = Column(Text, nullable=True)
    is_vegetarian = Column(Boolean, nullable=False, default=False)

    email_verified = Column(Boolean, nullable=False, default=False)
    otp_code = Column(String(6), nullable=True)
    otp_expires_at = Column(DateTime(timezone=True), nullable=True)
    otp_attempts = Column(Integer, nullable=False, default=0)
    email_verification_sent_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    def summary(self) -> dict:
        """Public account summary used by signup/login responses"""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "isVegetarian": bool(self.is_vegetarian),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

    def snapshot(self) -> dict:
        """Full profile of the authenticated user"""
        return {
            **self.summary(),
            "fullName": self.full_name,
            "avatarUrl": self.avatar_url,
            "emailVerified": bool(self.email_verified),
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.dependencies import get_current_user, get_optional_user
from app.core.database import get_db
from app.core.errors import ForbiddenError, NotFoundError
from app.models.user import User

router = APIRouter(prefix="/users", tags=["users"])

USER_NOT_FOUND_MESSAGE = "User not found"


@router.put("/{user_id}/dietary-preference")
async def update_dietary_preference(
    user_id: int,
    is_vegetarian: bool = Query(..., alias="isVegetarian"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Update the caller's own vegetarian flag"""
    if user_id != current_user.id:
        raise ForbiddenError("Not authorized to update this user")

    user = db.query(User).filter(User.id == user_id).first()
    if user is None:
        raise NotFoundError(USER_NOT_FOUND_MESSAGE)

    user.is_vegetarian = is_vegetarian
    db.commit()
    db.refresh(user)
    return {"status": "success", "data": user.summary()}


@router.get("/{username}")
async def get_public_profile(
    username: str,
    viewer: Optional[User] = Depends(get_optional_user),
    db: Session = Depends(get_db),
):
    """Public profile; the owner also sees their private fields"""
    user = db.query(User).filter(User.username == username).first()
    if user is None:
        raise NotFoundError(USER_NOT_FOUND_MESSAGE)

    profile = {
        "id": user.id,
        "username": user.username,
        "fullName": user.full_name,
        "avatarUrl": user.avatar_url,
        "isVegetarian": bool(user.is_vegetarian),
        "createdAt": user.created_at.isoformat() if user.created_at else None,
    }
    if viewer is not None and viewer.id == user.id:
        profile["email"] = user.email
        profile["emailVerified"] = bool(user.email_verified)

    return {"status": "success", "data": {"user": profile}}

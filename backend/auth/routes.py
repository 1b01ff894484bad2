"""
Authentication API endpoints.

This module provides REST API endpoints for:
- User registration
- Login/logout, including logout from every device
- Token refresh
- The authenticated user's profile
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy import or_
from sqlalchemy.orm import Session

from database import get_db
from errors import ConflictError, UnauthorizedError
from models import User
from auth.security import (
    hash_password,
    verify_password,
    create_access_token,
    create_refresh_token,
    decode_token,
)
from auth.token_invalidation import token_blacklist
from auth.dependencies import get_bearer_token, get_current_user, get_current_user_record
from responses import envelope
from schemas import TokenPayload, User as UserSchema, UserCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# Request schemas
class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = None


def _issue_tokens(user: User) -> dict:
    """Issue an access/refresh pair and remember both for logout-all."""
    token_data = {"sub": str(user.id), "email": user.email, "username": user.username}
    access_token = create_access_token(token_data)
    refresh_token = create_refresh_token(token_data)
    token_blacklist.remember(access_token)
    token_blacklist.remember(refresh_token)

    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_type": "bearer",
        "user": {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "full_name": user.full_name,
        },
    }


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register(request: UserCreate, db: Session = Depends(get_db)):
    """
    Register a new user account and log it in.

    Raises:
        ConflictError: 409 if the username or email is already registered
    """
    logger.info(f"Registration attempt for email: {request.email}")

    existing_user = db.query(User).filter(
        or_(User.email == request.email, User.username == request.username)
    ).first()
    if existing_user:
        field = "email" if existing_user.email == request.email else "username"
        logger.info(f"Registration failed: {field} already exists: {request.email}")
        raise ConflictError(f"User with this {field} already exists")

    new_user = User(
        username=request.username,
        email=request.email,
        full_name=request.full_name,
        password_hash=hash_password(request.password),
    )
    db.add(new_user)
    db.commit()
    db.refresh(new_user)

    logger.info(f"User registered successfully: {new_user.email} (ID: {new_user.id})")
    return envelope(_issue_tokens(new_user))


@router.post("/login")
async def login(request: LoginRequest, db: Session = Depends(get_db)):
    """
    Login with email and password.

    Returns:
        Access and refresh tokens plus the user's public profile

    Raises:
        UnauthorizedError: 401 if credentials are invalid
    """
    logger.info(f"Login attempt for email: {request.email}")

    user = db.query(User).filter(User.email == request.email).first()
    if not user or not verify_password(request.password, user.password_hash):
        logger.info(f"Login failed: invalid credentials: {request.email}")
        raise UnauthorizedError("Invalid email or password")

    logger.info(f"User logged in successfully: {user.email} (ID: {user.id})")
    return envelope(_issue_tokens(user))


@router.post("/refresh")
async def refresh(request: RefreshRequest, db: Session = Depends(get_db)):
    """
    Exchange a refresh token for a new token pair.

    Raises:
        UnauthorizedError: 401 if the refresh token is revoked, wrongly signed,
            expired, of the wrong type, or its user no longer exists
    """
    logger.debug("Token refresh requested")

    if token_blacklist.is_token_invalidated(request.refresh_token):
        logger.info("Token refresh failed: refresh token revoked")
        raise UnauthorizedError("Token has been invalidated")

    payload = decode_token(request.refresh_token, "refresh")

    user = db.query(User).filter(User.id == int(payload["sub"])).first()
    if not user:
        logger.info(f"Token refresh failed: user not found (ID: {payload['sub']})")
        raise UnauthorizedError("User not found")

    logger.info(f"Token refreshed successfully for user: {user.email} (ID: {user.id})")
    return envelope(_issue_tokens(user))


@router.post("/logout")
async def logout(
    request: Optional[LogoutRequest] = None,
    token: Optional[str] = Depends(get_bearer_token),
    current_user: TokenPayload = Depends(get_current_user),
):
    """Revoke the presented access token and, if given, a refresh token."""
    token_blacklist.invalidate_token(token)
    if request and request.refresh_token:
        token_blacklist.invalidate_token(request.refresh_token)

    logger.info(f"User logged out: {current_user.email}")
    return envelope({"message": "Logged out successfully"})


@router.post("/logout-all")
async def logout_all(
    token: Optional[str] = Depends(get_bearer_token),
    current_user: TokenPayload = Depends(get_current_user),
):
    """Revoke every unexpired token this process knows for the current user."""
    count = token_blacklist.invalidate_all_user_tokens(current_user.sub)
    # The presenting token is always revoked, even if it was forgotten by a sweep
    if not token_blacklist.is_token_invalidated(token):
        token_blacklist.invalidate_token(token)
        count += 1

    logger.info(f"User logged out from all devices: {current_user.email} ({count} tokens)")
    return envelope({"message": "Logged out from all devices", "revoked_tokens": count})


@router.get("/me")
async def get_current_user_info(user: User = Depends(get_current_user_record)):
    logger.debug(f"Fetching user info for: {user.email}")
    return envelope(UserSchema.model_validate(user).model_dump(mode="json"))

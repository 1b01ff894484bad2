"""
FastAPI dependencies for authentication.

This module provides dependency functions that can be used in route handlers to:
- Extract and validate the current user from a Bearer access token
- Reject tokens revoked through logout or logout-all
- Authenticate WebSocket handshakes with the same rules
"""

import logging
from typing import Optional

from fastapi import Depends, Request, WebSocket
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from auth.security import decode_token
from auth.token_invalidation import token_blacklist
from database import get_db
from errors import UnauthorizedError
from models import User
from schemas import TokenPayload

logger = logging.getLogger(__name__)

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)


def authenticate_token(token: Optional[str]) -> TokenPayload:
    """
    Validate a raw access token and return its claims.

    Checks, in order: presence, revocation, signature and type, claims.

    Raises:
        UnauthorizedError: if any check fails
    """
    if not token:
        logger.info("No authentication credentials provided")
        raise UnauthorizedError("No token provided")

    if token_blacklist.is_token_invalidated(token):
        logger.info("Rejected revoked token")
        raise UnauthorizedError("Token has been invalidated")

    payload = decode_token(token, "access")
    token_blacklist.remember(token)
    return TokenPayload(**payload)


def get_bearer_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return None


async def get_current_user(
    request: Request,
    token: Optional[str] = Depends(get_bearer_token),
) -> TokenPayload:
    """
    Extract and validate the current user from the Authorization header.

    The claims are also attached to request.state.user.

    Example:
        @router.get("/api/protected")
        async def protected_route(user: TokenPayload = Depends(get_current_user)):
            return {"user_id": user.user_id}
    """
    user = authenticate_token(token)
    request.state.user = user
    logger.debug(f"User authenticated via JWT: {user.email}")
    return user


async def get_current_user_record(
    current_user: TokenPayload = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> User:
    """Load the authenticated user's row; a token for a deleted user is rejected."""
    user = db.query(User).filter(User.id == current_user.user_id).first()
    if user is None:
        logger.info(f"User not found for id: {current_user.sub}")
        raise UnauthorizedError("User not found")
    return user


def websocket_token(websocket: WebSocket) -> Optional[str]:
    """Read the handshake token from ?token= or the Authorization header."""
    token = websocket.query_params.get("token")
    if token:
        return token

    authorization = websocket.headers.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials:
        return credentials.strip()
    return None


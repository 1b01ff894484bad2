"""
Security utilities for password hashing and JWT token management.

This module provides cryptographic functions for:
- Password hashing using Argon2id (memory-hard, GPU-resistant)
- Access and refresh token creation, each signed with its own secret
- Token decoding and claim validation shared by the HTTP and WebSocket guards
"""

import logging
import os
import secrets
from datetime import timedelta
from typing import Optional, Dict, Any

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from config import env_int, is_production_like
from errors import UnauthorizedError
from time_utils import utc_now, utc_timestamp

logger = logging.getLogger(__name__)

# Password hashing configuration using Argon2id
pwd_context = CryptContext(schemes=["argon2"], deprecated="auto")

# Seconds an "iat" claim may lie in the future before the token is rejected
IAT_FUTURE_TOLERANCE_SECONDS = 60

REQUIRED_CLAIMS = ("sub", "email", "username")


def _load_secret(env_name: str) -> str:
    """Load a signing secret, generating a throwaway one outside production."""
    secret = os.environ.get(env_name)
    if secret:
        return secret

    if is_production_like():
        raise ValueError(
            f"{env_name} environment variable is required in production. "
            "Generate a secure key with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
        )

    logger.warning(
        f"⚠️  {env_name} not set! Using temporary development key. "
        f"This is INSECURE for production. Set {env_name} environment variable."
    )
    return "dev-insecure-key-" + secrets.token_urlsafe(32)


# Access and refresh tokens are signed with distinct secrets, so a leaked
# access secret cannot mint refresh tokens and vice versa.
SECRET_KEY = _load_secret("JWT_SECRET_KEY")
REFRESH_SECRET_KEY = _load_secret("JWT_REFRESH_SECRET_KEY")

ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")

ACCESS_TOKEN_EXPIRE_MINUTES = env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 15, 1, 1440)
REFRESH_TOKEN_EXPIRE_DAYS = env_int("REFRESH_TOKEN_EXPIRE_DAYS", 7, 1, 90)

# Validate JWT algorithm
SUPPORTED_ALGORITHMS = ["HS256", "HS384", "HS512"]
if ALGORITHM not in SUPPORTED_ALGORITHMS:
    logger.warning(
        f"⚠️  Unsupported JWT_ALGORITHM={ALGORITHM}. Using HS256. "
        f"Supported: {', '.join(SUPPORTED_ALGORITHMS)}"
    )
    ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    """
    Hash a password using Argon2id.

    Example:
        >>> hashed = hash_password("my_secure_password")
        >>> verify_password("my_secure_password", hashed)
        True
    """
    logger.debug("Hashing password")
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    logger.debug("Verifying password")
    is_valid = pwd_context.verify(plain_password, hashed_password)
    logger.debug(f"Password verification result: {is_valid}")
    return is_valid


def _encode(data: Dict[str, Any], secret: str, token_type: str, expires_delta: timedelta) -> str:
    now = utc_now()
    to_encode = data.copy()
    # jti keeps tokens issued within the same second distinct
    to_encode.update({
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "type": token_type,
        "jti": secrets.token_urlsafe(16),
    })
    return jwt.encode(to_encode, secret, algorithm=ALGORITHM)


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT access token.

    Args:
        data: Claims to encode, {sub, email, username}
        expires_delta: Optional custom lifetime (default ACCESS_TOKEN_EXPIRE_MINUTES)

    Returns:
        Encoded JWT token string

    Example:
        >>> token = create_access_token({"sub": "1", "email": "a@b.c", "username": "ana"})
    """
    logger.debug(f"Creating access token for sub: {data.get('sub')}")
    return _encode(
        data,
        SECRET_KEY,
        "access",
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
    )


def create_refresh_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Create a JWT refresh token signed with the refresh secret.

    Example:
        >>> token = create_refresh_token({"sub": "1", "email": "a@b.c", "username": "ana"})
    """
    logger.debug(f"Creating refresh token for sub: {data.get('sub')}")
    return _encode(
        data,
        REFRESH_SECRET_KEY,
        "refresh",
        expires_delta or timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS),
    )


def is_valid_jwt_format(token: str) -> bool:
    """A compact JWS has exactly three dot-separated segments."""
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        logger.info(f"Token has {len(parts)} segments, expected 3")
        return False
    return True


def validate_claims(payload: Dict[str, Any]) -> None:
    """
    Check required claims and the exp/iat window.

    Raises:
        UnauthorizedError: if a claim (exp included) is missing, the token is expired or
            it was issued more than IAT_FUTURE_TOLERANCE_SECONDS in the future
    """
    missing = [claim for claim in REQUIRED_CLAIMS if not payload.get(claim)]
    if missing:
        logger.info(f"Token payload missing required claims: {missing}")
        raise UnauthorizedError("Invalid token payload")

    now = utc_timestamp()
    exp = payload.get("exp")
    if exp is None:
        # Revocation is keyed until exp, so a token without one could never be revoked
        logger.info("Token has no expiration claim")
        raise UnauthorizedError("Invalid token payload")
    if exp < now:
        logger.info(f"Token expired: exp={exp}, now={now}")
        raise UnauthorizedError("Token expired")

    iat = payload.get("iat")
    if iat is not None and iat > now + IAT_FUTURE_TOLERANCE_SECONDS:
        logger.info(f"Token issued in the future: iat={iat}, now={now}")
        raise UnauthorizedError("Invalid token")

    # User ids are integers carried as strings; malformed tokens must be 401, not 500
    if not isinstance(payload["sub"], str) or not payload["sub"].isdigit():
        logger.info(f"Invalid user id in token: {payload['sub']!r}")
        raise UnauthorizedError("Invalid user id")


def decode_token(token: str, token_type: str = "access") -> Dict[str, Any]:
    """
    Verify the signature of a token and validate its claims.

    Args:
        token: Encoded JWT
        token_type: "access" or "refresh"; selects the secret and the expected type claim

    Returns:
        Decoded payload

    Raises:
        UnauthorizedError: on malformed, expired, wrongly signed or wrongly typed tokens
    """
    if not is_valid_jwt_format(token):
        raise UnauthorizedError("Invalid token format")

    secret = REFRESH_SECRET_KEY if token_type == "refresh" else SECRET_KEY
    try:
        # iat is checked against our own tolerance in validate_claims
        payload = jwt.decode(token, secret, algorithms=[ALGORITHM], options={"verify_iat": False})
    except ExpiredSignatureError:
        logger.info("JWT verification failed: signature has expired")
        raise UnauthorizedError("Token expired")
    except JWTError as e:
        logger.info(f"JWT verification failed: {str(e)}")
        raise UnauthorizedError("Invalid or expired token")

    if payload.get("type") != token_type:
        logger.info(f"Invalid token type: {payload.get('type')} (expected {token_type})")
        raise UnauthorizedError("Invalid token type")

    validate_claims(payload)
    logger.debug(f"Token verified successfully for user: {payload.get('sub')}")
    return payload


def read_unverified_claims(token: str) -> Optional[Dict[str, Any]]:
    """
    Read claims without verifying the signature.

    Only used to learn the expiry and subject of a token that is being revoked.
    """
    try:
        return jwt.get_unverified_claims(token)
    except JWTError as e:
        logger.info(f"Could not read token claims: {str(e)}")
        return None

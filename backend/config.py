"""
Environment-driven configuration.

Values are read once at import time. Numeric settings are validated against
a safe range and fall back to their default with a warning, so a typo in the
environment never prevents startup in development.
"""

import logging
import os
from typing import List

logger = logging.getLogger(__name__)


def is_production_like() -> bool:
    """
    Check if the current environment is production-like (production or staging).

    Returns:
        True if ENVIRONMENT is "production" or "staging", False otherwise

    Note:
        This is used for security-sensitive checks like JWT secret validation
        and for hiding stack traces from error responses.
    """
    env = os.environ.get("ENVIRONMENT", "development").lower()
    return env in ("production", "staging")


def env_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """
    Read an integer setting, falling back to the default when invalid or out of range.

    Example:
        >>> env_int("ACCESS_TOKEN_EXPIRE_MINUTES", 15, 1, 1440)
        15
    """
    raw = os.environ.get(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        logger.warning(f"⚠️  Invalid {name} value in environment. Using default of {default}.")
        return default

    if value < minimum or value > maximum:
        logger.warning(
            f"⚠️  {name}={value} is outside safe range ({minimum}-{maximum}). "
            f"Using default of {default}."
        )
        return default
    return value


ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

CORS_ORIGINS: List[str] = [
    origin.strip()
    for origin in os.environ.get("CORS_ORIGINS", "http://localhost:3000").split(",")
    if origin.strip()
]

# Message broker
BROKER_BACKEND = os.environ.get("BROKER_BACKEND", "local").lower()
REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
BROKER_CHANNEL_PREFIX = os.environ.get("BROKER_CHANNEL_PREFIX", "taskflow")
BROKER_REQUEST_TIMEOUT = env_int("BROKER_REQUEST_TIMEOUT", 10, 1, 120)

# Revoked-token sweep
TOKEN_SWEEP_INTERVAL_SECONDS = env_int("TOKEN_SWEEP_INTERVAL_SECONDS", 300, 1, 86400)

# Pending notifications pushed on socket connect
PENDING_NOTIFICATIONS_LIMIT = 50

# Create tables on startup (development only; off by default)
CREATE_TABLES = os.environ.get("CREATE_TABLES", "false").lower() in ("1", "true", "yes")

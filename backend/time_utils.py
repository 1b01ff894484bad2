"""
Time utilities for the TaskFlow backend.

This module provides a single source of truth for time operations,
so token expiry checks, the blacklist sweep and response metadata all
agree on what "now" is.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """
    Get current UTC time.
    Single source of truth for "now" throughout the application.

    Returns:
        timezone-aware datetime in UTC
    """
    return datetime.now(timezone.utc)


def utc_timestamp() -> int:
    """Current UTC time as whole seconds since the epoch (JWT NumericDate)."""
    return int(utc_now().timestamp())


def iso_now() -> str:
    """ISO-8601 string of the current UTC time, used in envelopes and socket frames."""
    return utc_now().isoformat()

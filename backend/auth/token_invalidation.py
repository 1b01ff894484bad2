"""
In-memory token invalidation (blacklist).

Revoked tokens are kept until their own "exp" passes; a periodic sweep drops
expired entries. Tokens issued by, or presented to, this process are also
remembered per user so "logout all devices" can revoke them.

State is process-local: it is lost on restart and not shared between
instances. Every method runs on the event loop thread, so no locking is done.
"""

import asyncio
import logging
from typing import Dict, Optional, Set

from auth.security import read_unverified_claims
from time_utils import utc_timestamp

logger = logging.getLogger(__name__)


def _preview(token: str) -> str:
    return f"{token[:20]}..."


class TokenBlacklist:
    """Revoked-token set consulted before trusting an otherwise valid signature."""

    def __init__(self):
        self._invalidated: Set[str] = set()
        self._expirations: Dict[str, int] = {}
        # user id -> {token: exp} for every token this process has seen
        self._known_tokens: Dict[str, Dict[str, int]] = {}

    def remember(self, token: str) -> None:
        """Record a token as belonging to its subject, for logout-all."""
        claims = read_unverified_claims(token)
        if not claims or "sub" not in claims or "exp" not in claims:
            return
        self._known_tokens.setdefault(str(claims["sub"]), {})[token] = int(claims["exp"])

    def invalidate_token(self, token: str) -> bool:
        """
        Revoke a token until its own expiry.

        Returns:
            True if the token was added, False if it carries no readable exp
        """
        claims = read_unverified_claims(token)
        if not claims or claims.get("exp") is None:
            logger.warning(f"Could not invalidate token without exp: {_preview(token)}")
            return False

        self._invalidated.add(token)
        self._expirations[token] = int(claims["exp"])
        logger.info(f"Token invalidated: {_preview(token)}")
        return True

    def is_token_invalidated(self, token: str) -> bool:
        return token in self._invalidated

    def invalidate_all_user_tokens(self, user_id: str) -> int:
        """
        Revoke every unexpired token this process knows for a user.

        Tokens never issued by or presented to this process cannot be revoked.

        Returns:
            Number of tokens newly invalidated
        """
        now = utc_timestamp()
        known = self._known_tokens.pop(str(user_id), {})
        count = 0
        for token, exp in known.items():
            if exp < now or token in self._invalidated:
                continue
            if self.invalidate_token(token):
                count += 1

        logger.info(f"Invalidated {count} tokens for user: {user_id}")
        return count

    def cleanup_expired_tokens(self) -> int:
        """Remove revoked and remembered tokens past their expiry."""
        now = utc_timestamp()
        expired = [token for token, exp in self._expirations.items() if exp < now]
        for token in expired:
            self._invalidated.discard(token)
            del self._expirations[token]

        for user_id in list(self._known_tokens):
            tokens = self._known_tokens[user_id]
            for token in [t for t, exp in tokens.items() if exp < now]:
                del tokens[token]
            if not tokens:
                del self._known_tokens[user_id]

        if expired:
            logger.info(f"Removed {len(expired)} expired tokens from memory")
        return len(expired)

    def get_stats(self) -> Dict[str, int]:
        self.cleanup_expired_tokens()
        return {
            "invalidated_count": len(self._invalidated),
            "active_count": len(self._expirations),
        }

    def clear(self) -> None:
        self._invalidated.clear()
        self._expirations.clear()
        self._known_tokens.clear()

    async def run_sweeper(self, interval_seconds: float) -> None:
        """Sweep expired entries every interval until cancelled."""
        logger.info(f"Token sweep started (every {interval_seconds}s)")
        while True:
            await asyncio.sleep(interval_seconds)
            self.cleanup_expired_tokens()


token_blacklist = TokenBlacklist()


def start_sweeper(interval_seconds: float) -> "asyncio.Task[None]":
    """Start the periodic sweep on the running loop."""
    return asyncio.create_task(token_blacklist.run_sweeper(interval_seconds))


async def stop_sweeper(task: Optional["asyncio.Task[None]"]) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Token sweep stopped")

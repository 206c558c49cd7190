"""Group membership caching."""

import time
from collections.abc import Callable

import structlog

from ..config import GROUP_CACHE_TTL_SECONDS
from .models import GroupCacheEntry

logger = structlog.get_logger()


class GroupCache:
    """In-memory cache of resolved directory groups keyed by username.

    Entries are only checked for staleness when read. Entries for users that
    never authenticate again are kept for the lifetime of the process.
    """

    def __init__(
        self,
        ttl_seconds: float = GROUP_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize cache with TTL in seconds (default: 30 days)."""
        self.ttl_seconds = ttl_seconds
        self.clock = clock
        self._cache: dict[str, GroupCacheEntry] = {}

    def get(self, user: str) -> GroupCacheEntry | None:
        """Get cached groups for user if not expired."""
        entry = self._cache.get(user)
        if entry is None:
            return None

        if self.clock() - entry.last_checked >= self.ttl_seconds:
            logger.debug("Group cache entry expired", username=user)
            return None

        logger.debug("Group cache hit", username=user)
        return entry

    def put(self, user: str, groups: list[str], now: float | None = None) -> None:
        """Cache groups for user."""
        checked = self.clock() if now is None else now
        self._cache[user] = GroupCacheEntry(groups=list(groups), last_checked=checked)
        logger.debug("Groups cached", username=user, groups_count=len(groups))

    def invalidate(self, user: str) -> None:
        """Drop the entry for user, if any."""
        if self._cache.pop(user, None) is not None:
            logger.debug("Group cache entry invalidated", username=user)

    def clear(self) -> None:
        """Clear all cached entries."""
        self._cache.clear()
        logger.debug("Group cache cleared")

    def size(self) -> int:
        """Return current cache size, stale entries included."""
        return len(self._cache)

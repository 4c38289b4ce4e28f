import re
import time
from collections import namedtuple

from cachetools import TLRUCache

# -- TTLs (seconds) ------------------------------------
USER_TTL        = 300   # 5 min: account documents
LEADERBOARD_TTL = 60    # 1 min: leaderboard queries
STATS_TTL       = 120   # 2 min: per-account stats/scores
RANK_TTL        = 60    # 1 min: per-account rank
ADMIN_TTL       = 60    # 1 min: admin overview

_Entry = namedtuple('_Entry', ['value', 'ttl'])
_MISSING = object()


def _entry_expiry(key, entry, now):
    return now + entry.ttl


class MemoryCache:
    """Process-local key/value cache with per-entry TTL.

    Expired entries are dropped lazily when they are read or when the
    underlying store makes room, there is no background sweep.
    """

    def __init__(self, maxsize=10000, timer=time.monotonic):
        self._cache = TLRUCache(maxsize=maxsize, ttu=_entry_expiry, timer=timer)

    def set(self, key: str, value, ttl: float):
        if ttl <= 0:
            # Already stale, make sure an older value does not survive
            self._cache.pop(key, None)
            return
        self._cache[key] = _Entry(value, ttl)

    def get(self, key: str, default=None):
        entry = self._cache.get(key, _MISSING)
        if entry is _MISSING:
            # Drop whatever has gone stale, this key included
            self._cache.expire()
            return default
        return entry.value

    def delete(self, key: str):
        self._cache.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a glob where only `*` is special."""
        regex = re.compile(re.escape(pattern).replace(r'\*', '.*'), re.DOTALL)
        removed = 0
        for key in list(self._cache.keys()):
            if regex.fullmatch(key) and self._cache.pop(key, _MISSING) is not _MISSING:
                removed += 1
        return removed

    def clear(self):
        self._cache.clear()

    def __contains__(self, key):
        return key in self._cache

    def __len__(self):
        return len(self._cache)


# -- Cache Key Builders --------------------------------
LEADERBOARD_PATTERN = 'leaderboard:*'
ADMIN_STATS_KEY = 'admin:stats'

def user_key(user_id):                 return f'user:{user_id}'
def stats_key(user_id):                return f'stats:{user_id}'
def rank_key(user_id):                 return f'rank:{user_id}'
def leaderboard_key(period, limit):    return f'leaderboard:{period}:{limit}'

# -- Invalidation Helpers ------------------------------
def invalidate_user(cache: MemoryCache, user_id):
    cache.delete(user_key(user_id))
    cache.delete(stats_key(user_id))
    cache.delete(rank_key(user_id))

def invalidate_leaderboards(cache: MemoryCache) -> int:
    return cache.delete_pattern(LEADERBOARD_PATTERN)

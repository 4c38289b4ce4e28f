import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from cloudbot.cache import (
    MemoryCache, STATS_TTL, LEADERBOARD_TTL, RANK_TTL, ADMIN_TTL,
    stats_key, rank_key, leaderboard_key, ADMIN_STATS_KEY,
    invalidate_user, invalidate_leaderboards
)
from cloudbot.utils import utcnow

FILE_POINTS = 10
REFERRAL_POINTS = 50

WEEKLY = "weekly"
MONTHLY = "monthly"

WEEK = timedelta(days=7)
MONTH = timedelta(days=30)

# period -> (rolling window, stored score field)
PERIODS = {
    WEEKLY: (WEEK, "week_score"),
    MONTHLY: (MONTH, "month_score"),
}


def compute_score(file_count: int, referral_count: int) -> int:
    return file_count * FILE_POINTS + referral_count * REFERRAL_POINTS


@dataclass(slots=True)
class ScoreSnapshot:
    """One account's activity score for a period."""

    user_id: int
    period: str
    file_count: int = 0
    referral_count: int = 0
    score: int = 0
    first_name: str = ""
    username: str = ""

    @classmethod
    def from_counts(cls, row: Dict, period: str) -> "ScoreSnapshot":
        files = int(row.get("file_count") or 0)
        refs = int(row.get("referral_count") or 0)
        return cls(
            user_id=row["user_id"],
            period=period,
            file_count=files,
            referral_count=refs,
            # Recomputed here, never trusted from the query
            score=compute_score(files, refs),
            first_name=row.get("first_name") or "",
            username=row.get("username") or "",
        )


def rank_snapshots(snapshots: List[ScoreSnapshot], limit: int) -> List[ScoreSnapshot]:
    """Drop zero scores, order by score then uploads (both desc), keep `limit`."""
    scored = [s for s in snapshots if s.score > 0]
    scored.sort(key=lambda s: (s.score, s.file_count), reverse=True)
    return scored[:limit]


class ScoreAggregator:
    """Read-through cache over the activity counts in storage.

    Reads never raise: a failing query is logged and the caller gets
    `None` or an empty leaderboard.
    """

    def __init__(self, storage, cache: MemoryCache, clock=utcnow):
        self.storage = storage
        self.cache = cache
        self.clock = clock

    # --- INVALIDATION ---

    def invalidate(self, user_id):
        invalidate_user(self.cache, user_id)

    def invalidate_leaderboards(self):
        invalidate_leaderboards(self.cache)

    # --- WRITE-BACK ---

    async def _persist_scores(self, user_id, fields: Dict):
        try:
            await self.storage.queue_scores(user_id, fields)
        except Exception as e:
            logging.warning(f"⚠️ Score write-back failed [{user_id}]: {e}")

    # --- READS ---

    async def get_user_stats(self, user_id) -> Optional[Dict]:
        k = stats_key(user_id)
        cached = self.cache.get(k)
        if cached is not None:
            return cached

        now = self.clock()
        week_since, month_since = now - WEEK, now - MONTH
        try:
            user, files, refs = await asyncio.gather(
                self.storage.get_user(user_id),
                self.storage.count_files(user_id, week_since, month_since),
                self.storage.count_referrals(user_id, week_since, month_since),
            )
        except Exception as e:
            logging.error(f"❌ get_user_stats error [{user_id}]: {e}")
            return None

        if not user:
            return None

        weekly_files = files.get("weekly", 0)
        monthly_files = files.get("monthly", 0)
        weekly_refs = refs.get("weekly", 0)
        monthly_refs = refs.get("monthly", 0)
        week_score = compute_score(weekly_files, weekly_refs)
        month_score = compute_score(monthly_files, monthly_refs)

        await self._persist_scores(user_id, {"week_score": week_score, "month_score": month_score})

        result = {
            "user": user,
            "total_files": files.get("total", 0),
            "weekly_files": weekly_files,
            "monthly_files": monthly_files,
            "weekly_referrals": weekly_refs,
            "monthly_referrals": monthly_refs,
            "total_referrals": user.get("ref_count", 0),
            "week_score": week_score,
            "month_score": month_score,
            "diamonds": user.get("diamonds", 0),
        }
        self.cache.set(k, result, STATS_TTL)
        return result

    async def get_leaderboard(self, period: str, limit: int = 10) -> List[ScoreSnapshot]:
        try:
            return await self.load_leaderboard(period, limit)
        except Exception as e:
            logging.error(f"❌ get_leaderboard error [{period}]: {e}")
            return []

    async def load_leaderboard(self, period: str, limit: int = 10) -> List[ScoreSnapshot]:
        """Same as `get_leaderboard`, but storage errors and unknown periods raise"""
        if period not in PERIODS:
            raise ValueError(f"Unknown leaderboard period: {period}")

        k = leaderboard_key(period, limit)
        cached = self.cache.get(k)
        if cached is not None:
            return cached

        window, score_field = PERIODS[period]
        rows = await self.storage.aggregate_activity(self.clock() - window, limit)

        board = rank_snapshots([ScoreSnapshot.from_counts(r, period) for r in rows], limit)

        for snap in board:
            await self._persist_scores(snap.user_id, {score_field: snap.score})

        self.cache.set(k, board, LEADERBOARD_TTL)
        return board

    async def get_rank(self, user_id) -> Optional[Dict]:
        k = rank_key(user_id)
        cached = self.cache.get(k)
        if cached is not None:
            return cached

        try:
            user = await self.storage.get_user(user_id)
            if not user:
                return None
            above_week, above_month, total = await asyncio.gather(
                self.storage.count_users_above("week_score", user.get("week_score") or 0),
                self.storage.count_users_above("month_score", user.get("month_score") or 0),
                self.storage.estimated_user_count(),
            )
        except Exception as e:
            logging.error(f"❌ get_rank error [{user_id}]: {e}")
            return None

        result = {
            "weekly_rank": above_week + 1,
            "monthly_rank": above_month + 1,
            "total_users": total,
        }
        self.cache.set(k, result, RANK_TTL)
        return result

    async def admin_overview(self) -> Optional[Dict]:
        cached = self.cache.get(ADMIN_STATS_KEY)
        if cached is not None:
            return cached
        try:
            overview = await self.storage.get_overview(self.clock() - timedelta(days=1))
        except Exception as e:
            logging.error(f"❌ admin_overview error: {e}")
            return None
        self.cache.set(ADMIN_STATS_KEY, overview, ADMIN_TTL)
        return overview

    # --- ACTIVITY ---

    async def record_file(self, user_id, meta: Dict):
        """Store an uploaded file's metadata and drop every derivation it affects"""
        doc = {
            "owner_id": user_id,
            "kind": meta.get("kind", "document"),
            "file_id": meta["file_id"],
            "file_unique_id": meta.get("file_unique_id") or None,
            "file_name": meta.get("file_name", ""),
            "mime_type": meta.get("mime_type", ""),
            "file_size": meta.get("file_size", 0),
            "note": "",
            "created_at": self.clock(),
        }
        if doc["file_unique_id"] is None:
            # sparse unique index: leave the field out rather than store null
            del doc["file_unique_id"]
        inserted_id = await self.storage.add_file(doc)
        self.invalidate(user_id)
        self.invalidate_leaderboards()
        return inserted_id

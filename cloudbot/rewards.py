import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from cloudbot.scoring import WEEKLY
from cloudbot.utils import utcnow, as_utc, DAY_SECONDS

REWARD_CYCLE = timedelta(days=7)


@dataclass(frozen=True, slots=True)
class RewardTier:
    diamonds: int
    title: str
    badge: str


# Index 0 is rank 1
REWARD_TABLE = (
    RewardTier(1000, "🥇 1st place", "🏆"),
    RewardTier(500, "🥈 2nd place", "⭐️"),
    RewardTier(250, "🥉 3rd place", "🌟"),
    RewardTier(100, "Top 5", "💫"),
    RewardTier(100, "Top 5", "💫"),
    RewardTier(50, "Top 10", "✨"),
    RewardTier(50, "Top 10", "✨"),
    RewardTier(50, "Top 10", "✨"),
    RewardTier(50, "Top 10", "✨"),
    RewardTier(50, "Top 10", "✨"),
)


def reward_for_rank(rank: int) -> Optional[RewardTier]:
    if rank is None or rank < 1 or rank > len(REWARD_TABLE):
        return None
    return REWARD_TABLE[rank - 1]


def days_until_next_claim(last_claim: datetime, now: datetime) -> int:
    remaining = (as_utc(last_claim) + REWARD_CYCLE - now).total_seconds()
    return max(0, math.ceil(remaining / DAY_SECONDS))


@dataclass(slots=True)
class RewardAssignment:
    user_id: int
    rank: int
    diamonds: int
    awarded_at: datetime
    title: str = ""
    badge: str = ""
    first_name: str = ""
    balance: Optional[int] = None


class RewardRejected(Exception):
    """A reward action that did not (fully) apply, with a presentable reason."""

    ALREADY_CLAIMED = "already_claimed"
    NOT_ELIGIBLE = "not_eligible"
    NOT_FOUND = "account_not_found"
    STORAGE_ERROR = "storage_error"

    def __init__(self, reason: str, message: str = "", retry_after_days: int = None,
                 applied: List[RewardAssignment] = None):
        super().__init__(message or reason)
        self.reason = reason
        self.message = message or reason
        self.retry_after_days = retry_after_days
        # Credits that did land before the failure
        self.applied = applied or []


class RewardDistributor:
    """Turns the weekly leaderboard into diamond credits, once per account per cycle.

    The cycle check is a time window on `ref_awarded_at`: an account
    credited less than seven days ago is skipped, both for the admin-run
    distribution and for self-service claims.
    """

    def __init__(self, storage, aggregator, audit=None, clock=utcnow):
        self.storage = storage
        self.aggregator = aggregator
        self.audit = audit
        self.clock = clock

    async def _audit(self, event_type: str, name: str, user_id: int, details: str, extra: str = ""):
        if not self.audit:
            return
        try:
            await self.audit.log(event_type, name, user_id, details, extra)
        except Exception as e:
            logging.warning(f"⚠️ Reward audit log failed: {e}")

    async def _weekly_board(self):
        try:
            return await self.aggregator.load_leaderboard(WEEKLY, len(REWARD_TABLE))
        except Exception as e:
            logging.error(f"❌ Reward leaderboard unavailable: {e}")
            raise RewardRejected(
                RewardRejected.STORAGE_ERROR, "Could not load the weekly leaderboard."
            ) from e

    def _invalidate(self, user_ids):
        for user_id in user_ids:
            self.aggregator.invalidate(user_id)
        self.aggregator.invalidate_leaderboards()

    async def distribute_weekly_rewards(self) -> List[RewardAssignment]:
        board = await self._weekly_board()
        now = self.clock()

        planned = []
        for rank, snap in enumerate(board, start=1):
            tier = reward_for_rank(rank)
            if not tier:
                continue
            planned.append(RewardAssignment(
                user_id=snap.user_id, rank=rank, diamonds=tier.diamonds, awarded_at=now,
                title=tier.title, badge=tier.badge, first_name=snap.first_name,
            ))

        if not planned:
            return []

        # Independent atomic increments; one failing account does not undo the others
        outcomes = await asyncio.gather(
            *(self.storage.credit_reward(a.user_id, a.diamonds, now, now - REWARD_CYCLE) for a in planned),
            return_exceptions=True,
        )

        applied, errors = [], []
        for assignment, outcome in zip(planned, outcomes):
            if isinstance(outcome, Exception):
                errors.append((assignment.user_id, outcome))
            elif outcome:
                applied.append(assignment)
            else:
                logging.info(f"ℹ️ Reward skipped for {assignment.user_id}: already credited this cycle")

        self._invalidate(a.user_id for a in planned)

        if applied:
            total = sum(a.diamonds for a in applied)
            await self._audit(
                "REWARD", "Weekly distribution", 0,
                f"**Credited:** {len(applied)} users\n**Diamonds:** {total}"
            )

        if errors:
            for user_id, err in errors:
                logging.error(f"❌ Reward credit failed [{user_id}]: {err}")
            raise RewardRejected(
                RewardRejected.STORAGE_ERROR,
                f"{len(errors)} of {len(planned)} reward credits failed",
                applied=applied,
            ) from errors[0][1]

        return applied

    async def claim_reward(self, user_id: int) -> RewardAssignment:
        now = self.clock()
        try:
            user = await self.storage.get_user(user_id)
        except Exception as e:
            raise RewardRejected(RewardRejected.STORAGE_ERROR, "Could not load your account.") from e
        if not user:
            raise RewardRejected(RewardRejected.NOT_FOUND, "User not found")

        last_claim = user.get("ref_awarded_at")
        if last_claim and as_utc(last_claim) > now - REWARD_CYCLE:
            days = days_until_next_claim(last_claim, now)
            raise RewardRejected(
                RewardRejected.ALREADY_CLAIMED,
                f"You already claimed rewards this week. Next claim in {days} day(s).",
                retry_after_days=days,
            )

        board = await self._weekly_board()
        rank = next((i for i, snap in enumerate(board, start=1) if snap.user_id == user_id), None)
        tier = reward_for_rank(rank)
        if not tier:
            raise RewardRejected(RewardRejected.NOT_ELIGIBLE, "You are not in the Top 10 this week.")

        try:
            credited = await self.storage.credit_reward(user_id, tier.diamonds, now, now - REWARD_CYCLE)
        except Exception as e:
            raise RewardRejected(RewardRejected.STORAGE_ERROR, "Could not credit your reward.") from e

        if not credited:
            # A concurrent claim won the conditional update
            days = days_until_next_claim(now, now)
            raise RewardRejected(
                RewardRejected.ALREADY_CLAIMED,
                f"You already claimed rewards this week. Next claim in {days} day(s).",
                retry_after_days=days,
            )

        self._invalidate([user_id])
        assignment = RewardAssignment(
            user_id=user_id, rank=rank, diamonds=tier.diamonds, awarded_at=now,
            title=tier.title, badge=tier.badge, first_name=user.get("first_name", ""),
            balance=user.get("diamonds", 0) + tier.diamonds,
        )
        await self._audit(
            "REWARD", assignment.first_name or str(user_id), user_id,
            f"**Claimed:** {tier.title} (+{tier.diamonds} 💎)"
        )
        return assignment

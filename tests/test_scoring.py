"""Tests for score computation, the leaderboard and per-account stats."""

from __future__ import annotations

from datetime import timedelta

import pytest

from cloudbot.cache import leaderboard_key, rank_key, stats_key
from cloudbot.scoring import (
    MONTHLY,
    WEEKLY,
    ScoreAggregator,
    ScoreSnapshot,
    compute_score,
    rank_snapshots,
)
from tests.fakes import T0, FakeStorage, Ticker


def _row(user_id: int, files: int, refs: int, **extra) -> dict:
    row = {"user_id": user_id, "first_name": f"user{user_id}", "username": "",
           "file_count": files, "referral_count": refs, "score": compute_score(files, refs)}
    row.update(extra)
    return row


@pytest.fixture
def active_user(storage: FakeStorage) -> int:
    """Account 7: four uploads this week, one older upload, one fresh referral."""
    storage.add_user(7, created_at=T0 - timedelta(days=60), ref_count=1, diamonds=30)
    for _ in range(4):
        storage.add_upload(7, T0 - timedelta(days=1))
    storage.add_upload(7, T0 - timedelta(days=20))
    storage.add_user(8, created_at=T0 - timedelta(days=2), referred_by=7)
    return 7


# ---------------------------------------------------------------
# Score formula
# ---------------------------------------------------------------


class TestScoreFormula:
    def test_points_per_upload_and_referral(self) -> None:
        assert compute_score(4, 1) == 90
        assert compute_score(0, 0) == 0
        assert compute_score(3, 0) == 30
        assert compute_score(0, 2) == 100

    def test_snapshot_recomputes_score(self) -> None:
        snap = ScoreSnapshot.from_counts(_row(1, 2, 1, score=9999), WEEKLY)
        assert snap.score == 70
        assert snap.period == WEEKLY

    def test_snapshot_tolerates_missing_counts(self) -> None:
        snap = ScoreSnapshot.from_counts({"user_id": 3, "first_name": None}, MONTHLY)
        assert (snap.file_count, snap.referral_count, snap.score) == (0, 0, 0)
        assert snap.first_name == ""

    def test_rank_snapshots_orders_and_filters(self) -> None:
        snaps = [
            ScoreSnapshot.from_counts(_row(1, 5, 1), WEEKLY),   # 100
            ScoreSnapshot.from_counts(_row(2, 10, 0), WEEKLY),  # 100, more uploads
            ScoreSnapshot.from_counts(_row(3, 0, 0), WEEKLY),   # 0
            ScoreSnapshot.from_counts(_row(4, 1, 0), WEEKLY),   # 10
        ]
        ranked = rank_snapshots(snaps, 10)
        assert [s.user_id for s in ranked] == [2, 1, 4]
        assert [s.user_id for s in rank_snapshots(snaps, 2)] == [2, 1]


# ---------------------------------------------------------------
# Per-account stats
# ---------------------------------------------------------------


class TestUserStats:
    @pytest.mark.asyncio
    async def test_counts_and_scores(self, aggregator: ScoreAggregator, active_user: int) -> None:
        stats = await aggregator.get_user_stats(active_user)

        assert stats["weekly_files"] == 4
        assert stats["monthly_files"] == 5
        assert stats["total_files"] == 5
        assert stats["weekly_referrals"] == 1
        assert stats["total_referrals"] == 1
        assert stats["week_score"] == 90
        assert stats["month_score"] == 100
        assert stats["diamonds"] == 30
        assert stats["user"]["user_id"] == 7

    @pytest.mark.asyncio
    async def test_scores_queued_for_write_back(
        self, aggregator: ScoreAggregator, storage: FakeStorage, active_user: int
    ) -> None:
        await aggregator.get_user_stats(active_user)

        assert storage.queued == [(7, {"week_score": 90, "month_score": 100})]
        storage.flush_scores()
        assert storage.users[7]["week_score"] == 90

    @pytest.mark.asyncio
    async def test_second_read_served_from_cache(
        self, aggregator: ScoreAggregator, storage: FakeStorage, active_user: int
    ) -> None:
        first = await aggregator.get_user_stats(active_user)
        second = await aggregator.get_user_stats(active_user)

        assert first == second
        assert storage.calls["count_files"] == 1

    @pytest.mark.asyncio
    async def test_recomputed_after_ttl(
        self, aggregator: ScoreAggregator, storage: FakeStorage, ticker: Ticker, active_user: int
    ) -> None:
        await aggregator.get_user_stats(active_user)
        storage.add_upload(7, T0)
        ticker.now = 121

        stats = await aggregator.get_user_stats(active_user)

        assert stats["weekly_files"] == 5
        assert storage.calls["count_files"] == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_recompute(
        self, aggregator: ScoreAggregator, storage: FakeStorage, active_user: int
    ) -> None:
        await aggregator.get_user_stats(active_user)
        aggregator.invalidate(active_user)
        await aggregator.get_user_stats(active_user)
        assert storage.calls["count_files"] == 2

    @pytest.mark.asyncio
    async def test_unknown_account(self, aggregator: ScoreAggregator) -> None:
        assert await aggregator.get_user_stats(404) is None

    @pytest.mark.asyncio
    async def test_storage_failure_returns_none(
        self, aggregator: ScoreAggregator, storage: FakeStorage, active_user: int
    ) -> None:
        storage.fail_on.add("count_files")

        assert await aggregator.get_user_stats(active_user) is None
        assert aggregator.cache.get(stats_key(active_user)) is None

    @pytest.mark.asyncio
    async def test_write_back_failure_does_not_hide_stats(
        self, aggregator: ScoreAggregator, storage: FakeStorage, active_user: int
    ) -> None:
        storage.fail_on.add("queue_scores")
        stats = await aggregator.get_user_stats(active_user)
        assert stats["week_score"] == 90


# ---------------------------------------------------------------
# Leaderboard
# ---------------------------------------------------------------


class TestLeaderboard:
    @pytest.mark.asyncio
    async def test_sorted_with_upload_tiebreak(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.activity_rows = [
            _row(1, 5, 1),
            _row(2, 10, 0),
            _row(3, 0, 0),
            _row(4, 1, 0, score=9999),
        ]

        board = await aggregator.get_leaderboard(WEEKLY)

        assert [s.user_id for s in board] == [2, 1, 4]
        assert [s.score for s in board] == [100, 100, 10]

    @pytest.mark.asyncio
    async def test_limit(self, aggregator: ScoreAggregator, storage: FakeStorage) -> None:
        storage.activity_rows = [_row(i, i, 0) for i in range(1, 8)]
        board = await aggregator.get_leaderboard(WEEKLY, limit=3)
        assert [s.user_id for s in board] == [7, 6, 5]

    @pytest.mark.asyncio
    async def test_rolling_windows_from_storage(
        self, aggregator: ScoreAggregator, active_user: int
    ) -> None:
        weekly = await aggregator.get_leaderboard(WEEKLY)
        monthly = await aggregator.get_leaderboard(MONTHLY)

        assert weekly[0].user_id == 7 and weekly[0].score == 90
        assert monthly[0].user_id == 7 and monthly[0].score == 100

    @pytest.mark.asyncio
    async def test_unknown_period_reads_as_empty(self, aggregator: ScoreAggregator) -> None:
        assert await aggregator.get_leaderboard("daily") == []

    @pytest.mark.asyncio
    async def test_load_rejects_unknown_period(self, aggregator: ScoreAggregator) -> None:
        with pytest.raises(ValueError):
            await aggregator.load_leaderboard("daily")

    @pytest.mark.asyncio
    async def test_load_propagates_storage_errors(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.fail_on.add("aggregate_activity")
        with pytest.raises(RuntimeError):
            await aggregator.load_leaderboard(WEEKLY)
        assert aggregator.cache.get(leaderboard_key(WEEKLY, 10)) is None

    @pytest.mark.asyncio
    async def test_cached_per_period_and_limit(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.activity_rows = [_row(1, 2, 0)]

        await aggregator.get_leaderboard(WEEKLY, 10)
        await aggregator.get_leaderboard(WEEKLY, 10)
        await aggregator.get_leaderboard(WEEKLY, 5)
        await aggregator.get_leaderboard(MONTHLY, 10)

        assert storage.calls["aggregate_activity"] == 3
        assert aggregator.cache.get(leaderboard_key(WEEKLY, 10)) is not None

    @pytest.mark.asyncio
    async def test_invalidation_drops_every_leaderboard(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.activity_rows = [_row(1, 2, 0)]
        await aggregator.get_leaderboard(WEEKLY, 10)
        await aggregator.get_leaderboard(MONTHLY, 3)

        aggregator.invalidate_leaderboards()

        assert aggregator.cache.get(leaderboard_key(WEEKLY, 10)) is None
        assert aggregator.cache.get(leaderboard_key(MONTHLY, 3)) is None

    @pytest.mark.asyncio
    async def test_scores_written_to_period_field(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.activity_rows = [_row(1, 2, 0), _row(2, 0, 1)]

        await aggregator.get_leaderboard(MONTHLY)

        assert storage.queued == [(2, {"month_score": 50}), (1, {"month_score": 20})]

    @pytest.mark.asyncio
    async def test_failure_returns_empty_and_is_not_cached(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.fail_on.add("aggregate_activity")
        assert await aggregator.get_leaderboard(WEEKLY) == []

        storage.fail_on.clear()
        storage.activity_rows = [_row(1, 1, 0)]
        board = await aggregator.get_leaderboard(WEEKLY)
        assert [s.user_id for s in board] == [1]

    @pytest.mark.asyncio
    async def test_empty_board_is_cached(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.activity_rows = []
        assert await aggregator.get_leaderboard(WEEKLY) == []
        assert await aggregator.get_leaderboard(WEEKLY) == []
        assert storage.calls["aggregate_activity"] == 1


# ---------------------------------------------------------------
# Rank
# ---------------------------------------------------------------


class TestRank:
    @pytest.mark.asyncio
    async def test_rank_counts_accounts_above(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.add_user(1, week_score=100, month_score=10)
        storage.add_user(2, week_score=80, month_score=500)
        storage.add_user(3, week_score=50, month_score=200)
        storage.add_user(4, week_score=20, month_score=5)

        rank = await aggregator.get_rank(3)

        assert rank == {"weekly_rank": 3, "monthly_rank": 2, "total_users": 4}
        assert aggregator.cache.get(rank_key(3)) == rank

    @pytest.mark.asyncio
    async def test_rank_unknown_account(self, aggregator: ScoreAggregator) -> None:
        assert await aggregator.get_rank(99) is None

    @pytest.mark.asyncio
    async def test_rank_failure(self, aggregator: ScoreAggregator, storage: FakeStorage) -> None:
        storage.add_user(1)
        storage.fail_on.add("estimated_user_count")
        assert await aggregator.get_rank(1) is None


# ---------------------------------------------------------------
# Uploads & admin overview
# ---------------------------------------------------------------


class TestRecordFile:
    @pytest.mark.asyncio
    async def test_upload_invalidates_derived_entries(
        self, aggregator: ScoreAggregator, storage: FakeStorage, active_user: int
    ) -> None:
        await aggregator.get_user_stats(active_user)
        await aggregator.get_leaderboard(WEEKLY)

        await aggregator.record_file(active_user, {"file_id": "F1", "file_name": "a.pdf"})

        assert aggregator.cache.get(stats_key(active_user)) is None
        assert aggregator.cache.get(leaderboard_key(WEEKLY, 10)) is None
        stats = await aggregator.get_user_stats(active_user)
        assert stats["weekly_files"] == 5

    @pytest.mark.asyncio
    async def test_missing_unique_id_is_left_out(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        await aggregator.record_file(1, {"file_id": "F1", "kind": "photo"})

        doc = storage.files[-1]
        assert "file_unique_id" not in doc
        assert doc["owner_id"] == 1
        assert doc["kind"] == "photo"
        assert doc["created_at"] == T0

    @pytest.mark.asyncio
    async def test_storage_error_propagates(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.fail_on.add("add_file")
        with pytest.raises(RuntimeError):
            await aggregator.record_file(1, {"file_id": "F1"})


class TestAdminOverview:
    @pytest.mark.asyncio
    async def test_overview_counts_and_cache(
        self, aggregator: ScoreAggregator, storage: FakeStorage
    ) -> None:
        storage.add_user(1, created_at=T0 - timedelta(hours=2))
        storage.add_user(2, created_at=T0 - timedelta(days=3), is_blocked=True)
        storage.add_upload(1, T0 - timedelta(hours=1))

        overview = await aggregator.admin_overview()
        await aggregator.admin_overview()

        assert overview == {
            "total_users": 2, "total_files": 1, "blocked_users": 1,
            "new_users": 1, "new_files": 1,
        }
        assert storage.calls["get_overview"] == 1

    @pytest.mark.asyncio
    async def test_overview_failure(self, aggregator: ScoreAggregator, storage: FakeStorage) -> None:
        storage.fail_on.add("get_overview")
        assert await aggregator.admin_overview() is None

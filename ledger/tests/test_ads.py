"""
Unit Tests for Rewarded Ad Sessions

Tests cover:
1. Daily cap: the 10th ad pays, the 11th is refused without any write
2. Streak and happy-hour multipliers on the credited amount
3. Ownership and double-completion guards
4. Flat tournament points per ad
5. Cooldown between ad starts
"""

import pytest
from datetime import date, datetime, timedelta, timezone

from ledger.ads import (
    AdAlreadyCompletedError,
    AdCooldownError,
    AdRewardService,
    AdViewNotFoundError,
    DailyAdLimitError,
)
from ledger.errors import ForbiddenError
from ledger.models import AdViewStatus, TransactionSource
from ledger.service import IdempotencyConflictError, LedgerService, UserNotFoundError
from ledger.storage import InMemoryStorage

USER_ID = "viewer"
MORNING = datetime(2026, 10, 14, 9, 0, tzinfo=timezone.utc)
LUNCH = datetime(2026, 10, 14, 12, 30, tzinfo=timezone.utc)


def make_ads(now=MORNING, daily_streak=0, timezone_name="UTC", cooldown_seconds=0,
             **user_fields) -> AdRewardService:
    storage = InMemoryStorage()
    storage.add_user(USER_ID, display_name="Viewer", daily_streak=daily_streak, **user_fields)
    storage.add_user("someone-else")
    ledger = LedgerService(storage, clock=lambda: now)
    return AdRewardService(ledger, timezone_name=timezone_name, cooldown_seconds=cooldown_seconds)


def watch(ads: AdRewardService, user_id: str = USER_ID):
    started = ads.start_ad_view(user_id)
    return ads.complete_ad_view(started.ad_view_id, user_id)


class TestStartAdView:
    def test_start_reports_remaining(self):
        ads = make_ads()

        started = ads.start_ad_view(USER_ID)

        assert started.ads_watched_today == 0
        assert started.remaining_ads == 10
        assert started.reward_points == 5
        view = ads.storage.ad_views[started.ad_view_id]
        assert view["status"] == AdViewStatus.STARTED
        assert view["date_key"] == "2026-10-14"

    def test_unknown_user(self):
        ads = make_ads()

        with pytest.raises(UserNotFoundError):
            ads.start_ad_view("ghost")

    def test_counter_resets_on_new_day(self):
        ads = make_ads(last_active_date=date(2026, 10, 13), ads_watched=10)

        started = ads.start_ad_view(USER_ID)

        assert started.ads_watched_today == 0
        assert started.remaining_ads == 10


class TestCooldown:
    """Tests for the pause required between ad starts."""

    def test_second_start_within_cooldown_is_refused(self):
        now = [MORNING]
        ads = make_ads(cooldown_seconds=30)
        ads.ledger.clock = lambda: now[0]
        ads.start_ad_view(USER_ID)

        now[0] = MORNING + timedelta(seconds=12)
        with pytest.raises(AdCooldownError) as exc_info:
            ads.start_ad_view(USER_ID)

        assert exc_info.value.seconds_left == 18
        assert exc_info.value.status_code == 429
        assert len(ads.storage.ad_views) == 1

    def test_start_allowed_after_cooldown(self):
        now = [MORNING]
        ads = make_ads(cooldown_seconds=30)
        ads.ledger.clock = lambda: now[0]
        ads.start_ad_view(USER_ID)

        now[0] = MORNING + timedelta(seconds=30)
        started = ads.start_ad_view(USER_ID)

        assert started.ad_view_id in ads.storage.ad_views
        assert ads.storage.users[USER_ID]["last_ad_started_at"] == now[0]

    def test_cooldown_is_per_user(self):
        ads = make_ads(cooldown_seconds=30)
        ads.start_ad_view(USER_ID)

        started = ads.start_ad_view("someone-else")

        assert started.ads_watched_today == 0


class TestDailyCap:
    """Tests for max_ads_per_day."""

    def test_tenth_ad_pays_and_eleventh_is_refused(self):
        ads = make_ads()
        for _ in range(9):
            watch(ads)

        tenth = watch(ads)
        assert tenth.ads_watched_today == 10
        assert tenth.remaining_ads == 0
        assert tenth.new_total == 50

        with pytest.raises(DailyAdLimitError):
            ads.start_ad_view(USER_ID)

        user = ads.storage.users[USER_ID]
        assert user["points"] == 50
        assert user["ads_watched"] == 10

    def test_completion_over_cap_writes_nothing(self):
        """A view started before the cap was hit still cannot be redeemed after it."""
        ads = make_ads()
        views = [ads.start_ad_view(USER_ID) for _ in range(11)]
        for started in views[:10]:
            ads.complete_ad_view(started.ad_view_id, USER_ID)

        with pytest.raises(DailyAdLimitError):
            ads.complete_ad_view(views[10].ad_view_id, USER_ID)

        user = ads.storage.users[USER_ID]
        assert user["points"] == 50
        assert user["ads_watched"] == 10
        assert ads.storage.ad_views[views[10].ad_view_id]["status"] == AdViewStatus.STARTED
        assert ads.ledger.list_transactions(views[10].ad_view_id) == []

    def test_cap_follows_configured_day(self):
        """23:30 UTC is already the next day in Tokyo."""
        late = datetime(2026, 10, 14, 23, 30, tzinfo=timezone.utc)
        ads = make_ads(now=late, timezone_name="Asia/Tokyo",
                       last_active_date=date(2026, 10, 14), ads_watched=10)

        watch(ads)

        user = ads.storage.users[USER_ID]
        assert user["last_active_date"] == date(2026, 10, 15)
        assert user["ads_watched"] == 1


class TestCompleteAdView:
    """Tests for crediting a finished ad."""

    def test_base_reward_outside_happy_hour(self):
        ads = make_ads()

        result = watch(ads)

        assert result.points_awarded == 5
        assert result.base_points == 5
        assert result.multiplier == 1.0
        assert result.happy_hour_bonus is None
        assert result.new_total == 5

    def test_streak_and_happy_hour_multiply(self):
        """Base 5, 10-day streak (1.2x), Lunch Rush (2x) pays 12."""
        ads = make_ads(now=LUNCH, daily_streak=10)

        result = watch(ads)

        assert result.points_awarded == 12
        assert result.multiplier == pytest.approx(2.4)
        assert result.happy_hour_bonus == "Lunch Rush (2x)"

        user = ads.storage.users[USER_ID]
        assert user["points"] == 12
        assert user["total_earnings"] == 12
        assert user["ad_points"] == 12

    def test_ledger_entry_records_multipliers(self):
        ads = make_ads(now=LUNCH, daily_streak=3)
        started = ads.start_ad_view(USER_ID)

        ads.complete_ad_view(started.ad_view_id, USER_ID)

        [txn] = ads.ledger.list_transactions(started.ad_view_id)
        assert txn.source == TransactionSource.AD_WATCH
        assert txn.amount == 11
        assert txn.metadata["base_amount"] == 5
        assert txn.metadata["streak_multiplier"] == "1.1"
        assert txn.metadata["happy_hour_multiplier"] == "2.0"

    def test_tournament_points_are_flat(self):
        """Multipliers never reach the tournament score."""
        ads = make_ads(now=LUNCH, daily_streak=30)

        result = watch(ads)
        watch(ads)

        assert result.tournament_points_awarded == 10
        assert ads.ledger.tournament.get_entry(USER_ID).points == 20

    def test_unknown_view(self):
        ads = make_ads()

        with pytest.raises(AdViewNotFoundError):
            ads.complete_ad_view("missing", USER_ID)

    def test_view_owned_by_another_user(self):
        ads = make_ads()
        started = ads.start_ad_view(USER_ID)

        with pytest.raises(ForbiddenError):
            ads.complete_ad_view(started.ad_view_id, "someone-else")

        assert ads.storage.users["someone-else"]["points"] == 0

    def test_view_completed_twice(self):
        ads = make_ads()
        started = ads.start_ad_view(USER_ID)
        ads.complete_ad_view(started.ad_view_id, USER_ID)

        with pytest.raises(AdAlreadyCompletedError):
            ads.complete_ad_view(started.ad_view_id, USER_ID)

        assert ads.storage.users[USER_ID]["points"] == 5

    def test_failed_credit_leaves_view_started(self):
        """A ledger write that fails rolls back the view status too."""
        ads = make_ads()
        started = ads.start_ad_view(USER_ID)
        ads.storage.transaction_index[("credit", "ad_watch", started.ad_view_id)] = "stale"

        with pytest.raises(IdempotencyConflictError):
            ads.complete_ad_view(started.ad_view_id, USER_ID)

        assert ads.storage.ad_views[started.ad_view_id]["status"] == AdViewStatus.STARTED
        assert ads.storage.users[USER_ID]["points"] == 0
        assert ads.storage.users[USER_ID]["ads_watched"] == 0

import math
from datetime import date, datetime
from typing import Optional
from uuid import uuid4
from zoneinfo import ZoneInfo

from loguru import logger

from .bonus import HappyHourSchedule, compute_reward
from .errors import ForbiddenError, NotFoundError, RateLimitError, ValidationError
from .models import AdCompleteResponse, AdStartResponse, AdView, AdViewStatus
from .service import LedgerService, UserNotFoundError
from .tournament import TOURNAMENT_POINTS


class AdViewNotFoundError(NotFoundError):
    pass


class AdAlreadyCompletedError(ValidationError):
    pass


class DailyAdLimitError(RateLimitError):
    pass


class AdCooldownError(RateLimitError):
    def __init__(self, seconds_left: int):
        super().__init__(f"Cooldown active; next ad in {seconds_left}s")
        self.seconds_left = seconds_left


class AdRewardService:
    """First-party rewarded ads: start a session, then complete it for points.

    The daily cap is checked before any multiplier is computed or anything
    is written, so a rejected attempt leaves the counter where it was.
    """

    def __init__(self, ledger: LedgerService, schedule: Optional[HappyHourSchedule] = None,
                 max_ads_per_day: int = 10, base_reward_points: int = 5,
                 timezone_name: str = "UTC", cooldown_seconds: int = 30):
        self.ledger = ledger
        self.storage = ledger.storage
        self.schedule = schedule or HappyHourSchedule(timezone_name)
        self.max_ads_per_day = max_ads_per_day
        self.base_reward_points = base_reward_points
        self.cooldown_seconds = cooldown_seconds
        self.tz = ZoneInfo(timezone_name)

    def _today(self, now: datetime) -> date:
        return now.astimezone(self.tz).date()

    def _watched_today(self, user_data: dict, today: date) -> int:
        if user_data.get("last_active_date") != today:
            return 0
        return user_data.get("ads_watched", 0)

    def _check_cap(self, user_id: str, watched: int) -> None:
        if watched >= self.max_ads_per_day:
            logger.info("Daily ad limit reached", user_id=user_id, ads_watched=watched,
                        max_ads=self.max_ads_per_day)
            raise DailyAdLimitError(
                f"Daily ad limit reached ({watched}/{self.max_ads_per_day}); resets at midnight"
            )

    def _check_cooldown(self, user_id: str, user_data: dict, now: datetime) -> None:
        last_started = user_data.get("last_ad_started_at")
        if last_started is None:
            return
        elapsed = (now - last_started).total_seconds()
        if elapsed < self.cooldown_seconds:
            seconds_left = math.ceil(self.cooldown_seconds - elapsed)
            logger.info("Ad cooldown active", user_id=user_id, seconds_left=seconds_left)
            raise AdCooldownError(seconds_left)

    def start_ad_view(self, user_id: str) -> AdStartResponse:
        now = self.ledger.clock()
        today = self._today(now)

        with self.storage.transaction():
            user_data = self.storage.users.get(user_id)
            if not user_data:
                raise UserNotFoundError(f"User {user_id} not found")

            watched = self._watched_today(user_data, today)
            self._check_cap(user_id, watched)
            self._check_cooldown(user_id, user_data, now)

            ad_view = AdView(
                id=str(uuid4()),
                user_id=user_id,
                date_key=today.isoformat(),
                started_at=now,
            )
            self.storage.ad_views[ad_view.id] = ad_view.model_dump()
            user_data["last_ad_started_at"] = now

        return AdStartResponse(
            ad_view_id=ad_view.id,
            ads_watched_today=watched,
            remaining_ads=self.max_ads_per_day - watched,
            reward_points=self.base_reward_points,
        )

    def complete_ad_view(self, ad_view_id: str, user_id: str) -> AdCompleteResponse:
        now = self.ledger.clock()
        today = self._today(now)

        with self.storage.transaction():
            ad_view_data = self.storage.ad_views.get(ad_view_id)
            if not ad_view_data:
                raise AdViewNotFoundError(f"Ad view {ad_view_id} not found")
            ad_view = AdView(**ad_view_data)
            if ad_view.user_id != user_id:
                raise ForbiddenError("Ad view belongs to another user")
            if ad_view.status == AdViewStatus.COMPLETED:
                raise AdAlreadyCompletedError(f"Ad view {ad_view_id} already completed")

            user_data = self.storage.users.get(user_id)
            if not user_data:
                raise UserNotFoundError(f"User {user_id} not found")

            self._check_cap(user_id, self._watched_today(user_data, today))

            happy_hour = self.schedule.status(now)
            breakdown = compute_reward(
                self.base_reward_points,
                user_data.get("daily_streak", 0),
                happy_hour.multiplier,
            )

            ad_view_data.update({
                "status": AdViewStatus.COMPLETED,
                "completed_at": now,
                "points_awarded": breakdown.points,
            })
            user, _ = self.ledger.credit_ad_reward(user_id, ad_view_id, breakdown, today)

        logger.info("Awarded ad reward", user_id=user_id, ad_view_id=ad_view_id,
                    points=breakdown.points, multiplier=str(breakdown.combined_multiplier))
        return AdCompleteResponse(
            points_awarded=breakdown.points,
            base_points=breakdown.base_points,
            multiplier=float(breakdown.combined_multiplier),
            happy_hour_bonus=happy_hour.label,
            tournament_points_awarded=TOURNAMENT_POINTS["ad_watch"],
            new_total=user.points,
            ads_watched_today=user.ads_watched,
            remaining_ads=self.max_ads_per_day - user.ads_watched,
        )

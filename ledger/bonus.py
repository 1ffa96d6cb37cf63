from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Optional
from zoneinfo import ZoneInfo


@dataclass(frozen=True)
class StreakTier:
    min_days: int
    multiplier: Decimal
    label: str


STREAK_TIERS: tuple[StreakTier, ...] = (
    StreakTier(0, Decimal("1.0"), "No Streak"),
    StreakTier(3, Decimal("1.1"), "3-Day Streak"),
    StreakTier(7, Decimal("1.2"), "Week Warrior"),
    StreakTier(14, Decimal("1.3"), "Fortnight Champion"),
    StreakTier(30, Decimal("1.5"), "Month Master"),
)


@dataclass(frozen=True)
class HappyHourWindow:
    start_hour: int
    end_hour: int
    multiplier: Decimal
    name: str


HAPPY_HOUR_SCHEDULE: tuple[HappyHourWindow, ...] = (
    HappyHourWindow(12, 14, Decimal("2.0"), "Lunch Rush"),
    HappyHourWindow(18, 20, Decimal("2.0"), "Evening Boost"),
    HappyHourWindow(21, 23, Decimal("1.5"), "Night Owl"),
)

WEEKEND_MULTIPLIER = Decimal("1.25")
WEEKEND_DAYS = (5, 6)  # Saturday, Sunday


@dataclass(frozen=True)
class HappyHourStatus:
    is_active: bool
    multiplier: Decimal
    session_name: Optional[str] = None
    is_weekend: bool = False

    @property
    def label(self) -> Optional[str]:
        if self.is_active and self.is_weekend:
            return f"{self.session_name} + Weekend Bonus ({self.multiplier.normalize()}x)"
        if self.is_active:
            return f"{self.session_name} ({self.multiplier.normalize()}x)"
        if self.is_weekend:
            return f"Weekend Bonus ({self.multiplier.normalize()}x)"
        return None


INACTIVE = HappyHourStatus(is_active=False, multiplier=Decimal("1.0"))


@dataclass(frozen=True)
class RewardBreakdown:
    points: int
    base_points: int
    streak_multiplier: Decimal
    streak_label: str
    happy_hour_multiplier: Decimal
    combined_multiplier: Decimal


def streak_tier(streak_days: int) -> StreakTier:
    current = STREAK_TIERS[0]
    for tier in STREAK_TIERS:
        if streak_days >= tier.min_days:
            current = tier
    return current


def compute_reward(base_reward: int, streak_days: int,
                   happy_hour_multiplier: Decimal | float = Decimal("1.0")) -> RewardBreakdown:
    """Combine the streak tier with the happy-hour multiplier.

    points = floor(base * streak * happy_hour), computed in Decimal.
    """
    if base_reward < 0:
        raise ValueError("base_reward must be non-negative")

    tier = streak_tier(max(0, streak_days))
    happy = Decimal(str(happy_hour_multiplier))
    combined = tier.multiplier * happy
    points = int((Decimal(base_reward) * combined).to_integral_value(rounding=ROUND_FLOOR))

    return RewardBreakdown(
        points=points,
        base_points=base_reward,
        streak_multiplier=tier.multiplier,
        streak_label=tier.label,
        happy_hour_multiplier=happy,
        combined_multiplier=combined,
    )


class HappyHourSchedule:
    """Scheduled bonus windows, evaluated in a fixed timezone."""

    def __init__(self, timezone_name: str = "UTC", enabled: bool = True,
                 weekend_bonus: bool = False,
                 windows: tuple[HappyHourWindow, ...] = HAPPY_HOUR_SCHEDULE):
        self.tz = ZoneInfo(timezone_name)
        self.enabled = enabled
        self.weekend_bonus = weekend_bonus
        self.windows = windows

    def status(self, now: Optional[datetime] = None) -> HappyHourStatus:
        if not self.enabled:
            return INACTIVE

        local = (now or datetime.now(timezone.utc)).astimezone(self.tz)
        window = next(
            (w for w in self.windows if w.start_hour <= local.hour < w.end_hour),
            None,
        )
        is_weekend = self.weekend_bonus and local.weekday() in WEEKEND_DAYS

        multiplier = window.multiplier if window else Decimal("1.0")
        if is_weekend:
            multiplier *= WEEKEND_MULTIPLIER

        return HappyHourStatus(
            is_active=window is not None,
            multiplier=multiplier,
            session_name=window.name if window else None,
            is_weekend=is_weekend,
        )

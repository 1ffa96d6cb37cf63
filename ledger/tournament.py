"""Weekly tournament score, kept apart from the redeemable balance.

Each qualifying action adds a flat weight per source kind. Ledger
multipliers (streak tier, happy hour) never reach this score.
"""

from datetime import datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from loguru import logger

from .errors import ValidationError
from .models import LeaderboardResponse, LeaderboardRow, TournamentEntry
from .storage import InMemoryStorage

TOURNAMENT_POINTS: dict[str, int] = {
    "survey": 50,
    "offerwall": 30,
    "mission": 20,
    "referral": 100,
    "trivia": 20,
    "news_read": 5,
    "ad_watch": 10,
    "game": 15,
    "daily_challenge": 25,
    "check_in": 5,
    "social_follow": 15,
}

TIER_THRESHOLDS = (
    (10000, "Platinum"),
    (5000, "Gold"),
    (1000, "Silver"),
)


def week_key(moment: datetime) -> str:
    year, week, _ = moment.isocalendar()
    return f"{year}-W{week:02d}"


def tier_for(points: int) -> str:
    for threshold, tier in TIER_THRESHOLDS:
        if points > threshold:
            return tier
    return "Bronze"


class TournamentBridge:
    def __init__(self, storage: InMemoryStorage,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def points_for(self, source_kind: str) -> int:
        try:
            return TOURNAMENT_POINTS[source_kind]
        except KeyError:
            raise ValidationError(f"Unknown tournament source kind: {source_kind}") from None

    def add_points(self, user_id: str, source_kind: str) -> TournamentEntry:
        points = self.points_for(source_kind)
        now = self.clock()
        key = week_key(now)

        with self.storage.transaction():
            entry_id = self.storage.tournament_index.get((key, user_id))
            if entry_id is None:
                user = self.storage.users.get(user_id) or {}
                entry_id = str(uuid4())
                self.storage.tournament_entries[entry_id] = {
                    "id": entry_id,
                    "week_key": key,
                    "user_id": user_id,
                    "display_name": user.get("display_name") or "Anonymous",
                    "points": points,
                    "joined_at": now,
                    "last_updated": now,
                    "last_activity": source_kind,
                }
                self.storage.tournament_index[(key, user_id)] = entry_id
            else:
                entry = self.storage.tournament_entries[entry_id]
                entry["points"] += points
                entry["last_updated"] = now
                entry["last_activity"] = source_kind

            entry = TournamentEntry(**self.storage.tournament_entries[entry_id])

        logger.debug("Added tournament points", user_id=user_id, source=source_kind,
                     points=points, week_key=key)
        return entry

    def get_entry(self, user_id: str, week: Optional[str] = None) -> Optional[TournamentEntry]:
        key = week or week_key(self.clock())
        entry_id = self.storage.tournament_index.get((key, user_id))
        if entry_id is None:
            return None
        return TournamentEntry(**self.storage.tournament_entries[entry_id])

    def leaderboard(self, week: Optional[str] = None, limit: int = 100,
                    user_id: Optional[str] = None) -> LeaderboardResponse:
        key = week or week_key(self.clock())
        entries = [
            e for e in self.storage.tournament_entries.values()
            if e["week_key"] == key
        ]
        entries.sort(key=lambda e: (-e["points"], e["joined_at"]))

        rows = [
            LeaderboardRow(
                user_id=e["user_id"],
                display_name=e["display_name"],
                points=e["points"],
                rank=rank,
                tier=tier_for(e["points"]),
                is_me=e["user_id"] == user_id,
            )
            for rank, e in enumerate(entries, start=1)
        ]

        me = next((row for row in rows if row.is_me), None)
        return LeaderboardResponse(week_key=key, leaderboard=rows[:limit], me=me)

from datetime import date, datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CompletionStatus(str, Enum):
    PENDING = "pending"
    CREDITED = "credited"
    REVERSED = "reversed"


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class TransactionSource(str, Enum):
    OFFERWALL = "offerwall"
    AD_WATCH = "ad_watch"


class CallbackStatus(str, Enum):
    COMPLETED = "completed"
    REVERSED = "reversed"


class AdViewStatus(str, Enum):
    STARTED = "started"
    COMPLETED = "completed"


class LedgerOutcome(str, Enum):
    CREDITED = "credited"
    ALREADY_CREDITED = "already_credited"
    IGNORED_AFTER_REVERSAL = "ignored_after_reversal"
    REVERSED = "reversed"
    REVERSED_WITHOUT_CREDIT = "reversed_without_credit"
    ALREADY_REVERSED = "already_reversed"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Offer(BaseModel):
    id: str
    provider: str
    title: str
    payout: int = Field(..., ge=0)


class OfferCompletion(BaseModel):
    id: str
    user_id: str
    offer_id: str
    provider: str
    payout: int = Field(..., ge=0)
    status: CompletionStatus = CompletionStatus.PENDING
    external_transaction_id: Optional[str] = None
    credited_amount: Optional[int] = None
    metadata: dict = Field(default_factory=dict)
    created_at: datetime
    completed_at: Optional[datetime] = None
    credited_at: Optional[datetime] = None
    reversed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_credit(self) -> bool:
        return self.status == CompletionStatus.PENDING

    def can_reverse(self) -> bool:
        return self.status in (CompletionStatus.PENDING, CompletionStatus.CREDITED)


class Transaction(BaseModel):
    id: str
    user_id: str
    type: TransactionType
    amount: int = Field(..., ge=0)
    source: TransactionSource
    source_id: str
    status: str = "completed"
    metadata: dict = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class UserAccount(BaseModel):
    id: str
    display_name: str = "Anonymous"
    points: int = 0
    total_earnings: int = 0
    ad_points: int = 0
    ads_watched: int = 0
    last_active_date: Optional[date] = None
    last_ad_started_at: Optional[datetime] = None
    daily_streak: int = 0
    created_at: datetime
    updated_at: Optional[datetime] = None


class TournamentEntry(BaseModel):
    id: str
    week_key: str
    user_id: str
    display_name: str = "Anonymous"
    points: int = 0
    joined_at: datetime
    last_updated: datetime
    last_activity: Optional[str] = None


class AdView(BaseModel):
    id: str
    user_id: str
    status: AdViewStatus = AdViewStatus.STARTED
    date_key: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    points_awarded: Optional[int] = None


class CallbackEvent(BaseModel):
    provider: str
    tracking_id: Optional[str] = None
    user_id: Optional[str] = None
    offer_id: Optional[str] = None
    transaction_id: str
    payout: int = Field(0, ge=0)
    status: CallbackStatus
    signature: Optional[str] = None


class CreateCompletionRequest(WireModel):
    tracking_id: str = Field(..., min_length=1, description="Unique caller-supplied tracking key")
    user_id: str = Field(..., min_length=1)
    offer_id: str = Field(..., min_length=1)
    provider: str = "Other"
    payout: Optional[int] = Field(None, ge=0)
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "trackingId": "kw-7f3c2a",
            "userId": "u42",
            "offerId": "O9",
            "provider": "Kiwiwall",
            "payout": 100,
        }
    })


class CallbackResult(BaseModel):
    outcome: LedgerOutcome
    completion: OfferCompletion
    transaction: Optional[Transaction] = None
    tournament_points_awarded: int = 0


class UserBalance(WireModel):
    user_id: str
    points: int
    total_earnings: int
    ledger_balance: int
    total_entries: int
    last_transaction_at: Optional[datetime] = None


class LedgerHistoryResponse(WireModel):
    user_id: str
    entries: list[Transaction]
    total_count: int
    current_balance: int


class StartAdRequest(WireModel):
    user_id: str = Field(..., min_length=1)


class CompleteAdRequest(WireModel):
    ad_view_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class AdStartResponse(WireModel):
    ad_view_id: str
    ads_watched_today: int
    remaining_ads: int
    reward_points: int


class AdCompleteResponse(WireModel):
    points_awarded: int
    base_points: int
    multiplier: float
    happy_hour_bonus: Optional[str] = None
    tournament_points_awarded: int
    new_total: int
    ads_watched_today: int
    remaining_ads: int


class LeaderboardRow(WireModel):
    user_id: str
    display_name: str
    points: int
    rank: int
    tier: str
    is_me: bool = False


class LeaderboardResponse(WireModel):
    week_key: str
    leaderboard: list[LeaderboardRow]
    me: Optional[LeaderboardRow] = None

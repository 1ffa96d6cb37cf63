from datetime import date, datetime, timezone
from typing import Callable, Optional
from uuid import uuid4

from loguru import logger

from .bonus import RewardBreakdown
from .errors import ConflictError, NotFoundError
from .models import (
    CallbackEvent,
    CallbackResult,
    CallbackStatus,
    CompletionStatus,
    CreateCompletionRequest,
    LedgerHistoryResponse,
    LedgerOutcome,
    Offer,
    OfferCompletion,
    Transaction,
    TransactionSource,
    TransactionType,
    UserAccount,
    UserBalance,
)
from .storage import InMemoryStorage
from .tournament import TournamentBridge


class IdempotencyConflictError(ConflictError):
    pass


class CompletionNotFoundError(NotFoundError):
    pass


class UserNotFoundError(NotFoundError):
    pass


class LedgerService:
    def __init__(self, storage: Optional[InMemoryStorage] = None,
                 tournament: Optional[TournamentBridge] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.storage = storage or InMemoryStorage()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.tournament = tournament or TournamentBridge(self.storage, clock=self.clock)

    def create_completion(self, request: CreateCompletionRequest) -> OfferCompletion:
        """Record a pending completion under the caller's tracking key.

        Replaying the same key for the same user and offer returns the
        existing record; reusing it for anything else is a conflict.
        """
        with self.storage.transaction():
            existing = self.storage.offer_completions.get(request.tracking_id)
            if existing:
                if existing["user_id"] != request.user_id or existing["offer_id"] != request.offer_id:
                    raise IdempotencyConflictError(
                        f"Tracking key {request.tracking_id} already belongs to another completion"
                    )
                return OfferCompletion(**existing)

            offer_data = self.storage.offers.get(request.offer_id)
            offer = Offer(**offer_data) if offer_data else None
            if request.payout is not None:
                payout = request.payout
            else:
                payout = offer.payout if offer else 0
            metadata = dict(request.metadata)
            if offer and offer.title:
                metadata.setdefault("offer_title", offer.title)

            completion_data = {
                "id": request.tracking_id,
                "user_id": request.user_id,
                "offer_id": request.offer_id,
                "provider": request.provider,
                "payout": payout,
                "status": CompletionStatus.PENDING,
                "external_transaction_id": None,
                "credited_amount": None,
                "metadata": metadata,
                "created_at": self.clock(),
                "completed_at": None,
                "credited_at": None,
                "reversed_at": None,
            }
            self.storage.offer_completions[request.tracking_id] = completion_data

        logger.info("Created pending completion", completion_id=request.tracking_id,
                    user_id=request.user_id, offer_id=request.offer_id, provider=request.provider)
        return OfferCompletion(**completion_data)

    def get_completion(self, completion_id: str) -> OfferCompletion:
        completion_data = self.storage.offer_completions.get(completion_id)
        if not completion_data:
            raise CompletionNotFoundError(f"Completion {completion_id} not found")
        return OfferCompletion(**completion_data)

    def find_pending_completions(self, user_id: str, offer_id: str) -> list[OfferCompletion]:
        return [
            OfferCompletion(**c) for c in self.storage.offer_completions.values()
            if c["user_id"] == user_id
            and c["offer_id"] == offer_id
            and c["status"] == CompletionStatus.PENDING
        ]

    def apply_callback(self, completion_id: str, event: CallbackEvent) -> CallbackResult:
        """Apply a validated provider event to one completion.

        The completion is re-read inside the transaction, so a retried or
        concurrent postback sees the status the first one left behind.
        """
        with self.storage.transaction():
            completion_data = self.storage.offer_completions.get(completion_id)
            if not completion_data:
                raise CompletionNotFoundError(f"Completion {completion_id} not found")

            if event.status == CallbackStatus.COMPLETED:
                return self._credit(completion_data, event)
            return self._reverse(completion_data, event)

    def _credit(self, completion_data: dict, event: CallbackEvent) -> CallbackResult:
        completion = OfferCompletion(**completion_data)
        if completion.status == CompletionStatus.CREDITED:
            logger.info("Completion already credited, skipping", completion_id=completion.id,
                        provider=event.provider, transaction_id=event.transaction_id)
            return CallbackResult(outcome=LedgerOutcome.ALREADY_CREDITED, completion=completion)
        if completion.status == CompletionStatus.REVERSED:
            logger.warning("Ignoring completion callback for reversed completion",
                           completion_id=completion.id, provider=event.provider)
            return CallbackResult(outcome=LedgerOutcome.IGNORED_AFTER_REVERSAL, completion=completion)

        user_data = self.storage.users.get(completion.user_id)
        if not user_data:
            raise UserNotFoundError(f"User {completion.user_id} not found")

        # The network is authoritative for the amount when it sends one
        payout = event.payout or completion.payout
        now = self.clock()

        user_data["points"] += payout
        user_data["total_earnings"] += payout
        user_data["updated_at"] = now

        completion_data.update({
            "status": CompletionStatus.CREDITED,
            "external_transaction_id": event.transaction_id,
            "credited_amount": payout,
            "completed_at": now,
            "credited_at": now,
        })

        metadata = completion.metadata
        transaction = self.append_transaction(
            user_id=completion.user_id,
            type_=TransactionType.CREDIT,
            amount=payout,
            source=TransactionSource.OFFERWALL,
            source_id=completion.id,
            metadata={
                "provider": event.provider,
                "external_transaction_id": event.transaction_id,
                "offer_title": metadata.get("offer_title") or metadata.get("offer_name") or "Unknown Offer",
            },
            now=now,
        )
        self.tournament.add_points(completion.user_id, TransactionSource.OFFERWALL.value)

        logger.info("Credited offer completion", completion_id=completion.id,
                    user_id=completion.user_id, amount=payout, balance=user_data["points"])
        return CallbackResult(
            outcome=LedgerOutcome.CREDITED,
            completion=OfferCompletion(**completion_data),
            transaction=transaction,
            tournament_points_awarded=self.tournament.points_for(TransactionSource.OFFERWALL.value),
        )

    def _reverse(self, completion_data: dict, event: CallbackEvent) -> CallbackResult:
        completion = OfferCompletion(**completion_data)
        if not completion.can_reverse():
            logger.info("Completion already reversed, skipping", completion_id=completion.id,
                        provider=event.provider)
            return CallbackResult(outcome=LedgerOutcome.ALREADY_REVERSED, completion=completion)

        now = self.clock()
        completion_data["status"] = CompletionStatus.REVERSED
        completion_data["reversed_at"] = now

        if completion.status == CompletionStatus.PENDING:
            logger.info("Reversed completion that was never credited", completion_id=completion.id,
                        provider=event.provider)
            return CallbackResult(
                outcome=LedgerOutcome.REVERSED_WITHOUT_CREDIT,
                completion=OfferCompletion(**completion_data),
            )

        amount = completion.credited_amount if completion.credited_amount is not None else completion.payout
        user_data = self.storage.users.get(completion.user_id)
        if not user_data:
            raise UserNotFoundError(f"User {completion.user_id} not found")

        # Balance is floored at zero; total_earnings keeps the historical figure
        user_data["points"] = max(0, user_data["points"] - amount)
        user_data["updated_at"] = now

        transaction = self.append_transaction(
            user_id=completion.user_id,
            type_=TransactionType.DEBIT,
            amount=amount,
            source=TransactionSource.OFFERWALL,
            source_id=completion.id,
            metadata={"reason": "reversal", "provider": event.provider},
            now=now,
        )

        logger.warning("Reversed credited completion", completion_id=completion.id,
                       user_id=completion.user_id, amount=amount, balance=user_data["points"])
        return CallbackResult(
            outcome=LedgerOutcome.REVERSED,
            completion=OfferCompletion(**completion_data),
            transaction=transaction,
        )

    def credit_ad_reward(self, user_id: str, ad_view_id: str, breakdown: RewardBreakdown,
                         today: date) -> tuple[UserAccount, Transaction]:
        """Credit one rewarded ad view and bump the daily counter."""
        with self.storage.transaction():
            user_data = self.storage.users.get(user_id)
            if not user_data:
                raise UserNotFoundError(f"User {user_id} not found")

            now = self.clock()
            watched = user_data["ads_watched"] if user_data.get("last_active_date") == today else 0

            user_data["points"] += breakdown.points
            user_data["total_earnings"] += breakdown.points
            user_data["ad_points"] = user_data.get("ad_points", 0) + breakdown.points
            user_data["ads_watched"] = watched + 1
            user_data["last_active_date"] = today
            user_data["updated_at"] = now

            transaction = self.append_transaction(
                user_id=user_id,
                type_=TransactionType.CREDIT,
                amount=breakdown.points,
                source=TransactionSource.AD_WATCH,
                source_id=ad_view_id,
                metadata={
                    "base_amount": breakdown.base_points,
                    "streak_multiplier": str(breakdown.streak_multiplier),
                    "happy_hour_multiplier": str(breakdown.happy_hour_multiplier),
                    "description": f"Watched ad #{watched + 1}",
                },
                now=now,
            )
            self.tournament.add_points(user_id, TransactionSource.AD_WATCH.value)

            return UserAccount(**user_data), transaction

    def append_transaction(self, user_id: str, type_: TransactionType, amount: int,
                            source: TransactionSource, source_id: str, metadata: dict,
                            now: datetime) -> Transaction:
        index_key = (type_.value, source.value, source_id)
        with self.storage.transaction():
            if index_key in self.storage.transaction_index:
                raise IdempotencyConflictError(
                    f"{type_.value} for {source.value}:{source_id} already recorded"
                )

            txn_id = str(uuid4())
            txn_data = {
                "id": txn_id,
                "user_id": user_id,
                "type": type_,
                "amount": amount,
                "source": source,
                "source_id": source_id,
                "status": "completed",
                "metadata": metadata,
                "created_at": now,
            }
            self.storage.transactions[txn_id] = txn_data
            self.storage.transaction_index[index_key] = txn_id
        return Transaction(**txn_data)

    def get_balance(self, user_id: str) -> UserBalance:
        user_data = self.storage.users.get(user_id)
        if not user_data:
            raise UserNotFoundError(f"User {user_id} not found")

        entries = [t for t in self.storage.transactions.values() if t["user_id"] == user_id]
        ledger_balance = sum(
            t["amount"] if t["type"] == TransactionType.CREDIT else -t["amount"]
            for t in entries
        )
        last_entry = max(entries, key=lambda t: t["created_at"]) if entries else None

        return UserBalance(
            user_id=user_id,
            points=user_data["points"],
            total_earnings=user_data["total_earnings"],
            ledger_balance=ledger_balance,
            total_entries=len(entries),
            last_transaction_at=last_entry["created_at"] if last_entry else None,
        )

    def get_ledger_history(self, user_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        balance = self.get_balance(user_id)
        all_entries = [
            Transaction(**t) for t in self.storage.transactions.values()
            if t["user_id"] == user_id
        ]
        all_entries.sort(key=lambda t: t.created_at, reverse=True)

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=all_entries[offset:offset + limit],
            total_count=len(all_entries),
            current_balance=balance.points,
        )

    def list_transactions(self, source_id: str) -> list[Transaction]:
        return [Transaction(**t) for t in self.storage.transactions.values() if t["source_id"] == source_id]

"""
Unit Tests for the Ledger Service

Tests cover:
1. Credit flow for a validated completion callback
2. Idempotency (retried postbacks credit once)
3. Reversal flow, including the zero floor
4. Completion creation under a tracking key
5. Balance and history reads
6. Transaction rollback in storage
7. Concurrent postbacks never lose an increment
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

from ledger.models import (
    CallbackEvent,
    CallbackStatus,
    CompletionStatus,
    CreateCompletionRequest,
    LedgerOutcome,
    TransactionType,
)
from ledger.service import (
    CompletionNotFoundError,
    IdempotencyConflictError,
    LedgerService,
    UserNotFoundError,
)
from ledger.storage import InMemoryStorage


# Test constants
USER_ID = "u42"
OTHER_USER_ID = "u77"
OFFER_ID = "O9"
NOW = datetime(2026, 10, 14, 9, 30, tzinfo=timezone.utc)


def make_service(points: int = 0) -> LedgerService:
    storage = InMemoryStorage()
    storage.add_user(USER_ID, display_name="Ada", points=points)
    storage.add_user(OTHER_USER_ID, display_name="Bo")
    return LedgerService(storage, clock=lambda: NOW)


def pending(service: LedgerService, tracking_id: str = "T1", payout: int = 100, user_id: str = USER_ID):
    return service.create_completion(CreateCompletionRequest(
        tracking_id=tracking_id,
        user_id=user_id,
        offer_id=OFFER_ID,
        provider="Kiwiwall",
        payout=payout,
        metadata={"offer_title": "Install and play"},
    ))


def event(status: CallbackStatus = CallbackStatus.COMPLETED, payout: int = 0,
          tracking_id: str = "T1") -> CallbackEvent:
    return CallbackEvent(
        provider="Kiwiwall",
        tracking_id=tracking_id,
        user_id=USER_ID,
        offer_id=OFFER_ID,
        transaction_id=f"ext-{tracking_id}",
        payout=payout,
        status=status,
    )


class TestCreditFlow:
    """Tests for crediting a completed offer."""

    def test_credit_pending_completion(self):
        """A completed event credits the stored payout and appends one credit."""
        service = make_service()
        pending(service)

        result = service.apply_callback("T1", event())

        assert result.outcome == LedgerOutcome.CREDITED
        assert result.completion.status == CompletionStatus.CREDITED
        assert result.completion.external_transaction_id == "ext-T1"
        assert result.completion.credited_at == NOW

        assert result.transaction.type == TransactionType.CREDIT
        assert result.transaction.amount == 100
        assert result.transaction.source.value == "offerwall"
        assert result.transaction.source_id == "T1"
        assert result.transaction.metadata["provider"] == "Kiwiwall"
        assert result.transaction.metadata["offer_title"] == "Install and play"

        balance = service.get_balance(USER_ID)
        assert balance.points == 100
        assert balance.total_earnings == 100

    def test_event_payout_overrides_stored_payout(self):
        """The network's amount wins when it sends one."""
        service = make_service()
        pending(service, payout=100)

        result = service.apply_callback("T1", event(payout=250))

        assert result.transaction.amount == 250
        assert result.completion.credited_amount == 250
        assert service.get_balance(USER_ID).points == 250

    def test_credit_adds_flat_tournament_points(self):
        """Offerwall credits add 30 tournament points whatever the payout."""
        service = make_service()
        pending(service, "T1", payout=100)
        pending(service, "T2", payout=5000)

        service.apply_callback("T1", event(tracking_id="T1"))
        result = service.apply_callback("T2", event(tracking_id="T2"))

        assert result.tournament_points_awarded == 30
        assert service.tournament.get_entry(USER_ID).points == 60

    def test_credit_for_missing_user_writes_nothing(self):
        """A missing user rolls the whole credit back."""
        service = make_service()
        pending(service, user_id="ghost")

        with pytest.raises(UserNotFoundError):
            service.apply_callback("T1", event())

        assert service.get_completion("T1").status == CompletionStatus.PENDING
        assert service.list_transactions("T1") == []
        assert service.tournament.get_entry("ghost") is None

    def test_unknown_completion_fails(self):
        service = make_service()

        with pytest.raises(CompletionNotFoundError):
            service.apply_callback("nope", event(tracking_id="nope"))


class TestIdempotency:
    """Tests for retried and out-of-order postbacks."""

    def test_replayed_completion_credits_once(self):
        """Replaying the same completed callback is a successful no-op."""
        service = make_service()
        pending(service)

        first = service.apply_callback("T1", event())
        second = service.apply_callback("T1", event())

        assert first.outcome == LedgerOutcome.CREDITED
        assert second.outcome == LedgerOutcome.ALREADY_CREDITED
        assert second.transaction is None

        assert service.get_balance(USER_ID).points == 100
        credits = [t for t in service.list_transactions("T1") if t.type == TransactionType.CREDIT]
        assert len(credits) == 1
        assert service.tournament.get_entry(USER_ID).points == 30

    def test_completed_after_reversal_is_ignored(self):
        """A reversed completion never re-enters credited."""
        service = make_service()
        pending(service)
        service.apply_callback("T1", event(CallbackStatus.REVERSED))

        result = service.apply_callback("T1", event())

        assert result.outcome == LedgerOutcome.IGNORED_AFTER_REVERSAL
        assert result.completion.status == CompletionStatus.REVERSED
        assert service.get_balance(USER_ID).points == 0
        assert service.list_transactions("T1") == []

    def test_duplicate_ledger_entry_is_rejected(self):
        """The (type, source, source id) index refuses a second entry."""
        service = make_service()
        pending(service)
        result = service.apply_callback("T1", event())

        with pytest.raises(IdempotencyConflictError):
            service.append_transaction(
                user_id=USER_ID,
                type_=TransactionType.CREDIT,
                amount=100,
                source=result.transaction.source,
                source_id="T1",
                metadata={},
                now=NOW,
            )


class TestReversalFlow:
    """Tests for chargebacks."""

    def test_reverse_credited_completion(self):
        service = make_service()
        pending(service)
        service.apply_callback("T1", event())

        result = service.apply_callback("T1", event(CallbackStatus.REVERSED))

        assert result.outcome == LedgerOutcome.REVERSED
        assert result.completion.status == CompletionStatus.REVERSED
        assert result.transaction.type == TransactionType.DEBIT
        assert result.transaction.amount == 100
        assert result.transaction.metadata == {"reason": "reversal", "provider": "Kiwiwall"}

        balance = service.get_balance(USER_ID)
        assert balance.points == 0
        assert balance.total_earnings == 100
        assert balance.ledger_balance == 0

    def test_reversal_floors_balance_at_zero(self):
        """User spent down to 60; reversing a 100 credit lands on 0, not -40."""
        service = make_service()
        pending(service, payout=100)
        service.apply_callback("T1", event())
        service.storage.users[USER_ID]["points"] = 60

        result = service.apply_callback("T1", event(CallbackStatus.REVERSED))

        assert service.get_balance(USER_ID).points == 0
        debits = [t for t in service.list_transactions("T1") if t.type == TransactionType.DEBIT]
        assert len(debits) == 1
        assert debits[0].amount == 100
        assert result.transaction.id == debits[0].id

    def test_reversal_debits_the_credited_amount(self):
        service = make_service()
        pending(service, payout=100)
        service.apply_callback("T1", event(payout=40))

        result = service.apply_callback("T1", event(CallbackStatus.REVERSED))

        assert result.transaction.amount == 40
        assert service.get_balance(USER_ID).points == 0

    def test_reverse_pending_completion_changes_status_only(self):
        """A chargeback before any credit records the status and nothing else."""
        service = make_service(points=500)
        pending(service)

        result = service.apply_callback("T1", event(CallbackStatus.REVERSED))

        assert result.outcome == LedgerOutcome.REVERSED_WITHOUT_CREDIT
        assert result.completion.status == CompletionStatus.REVERSED
        assert result.transaction is None
        assert service.get_balance(USER_ID).points == 500
        assert service.list_transactions("T1") == []

    def test_second_reversal_is_noop(self):
        service = make_service()
        pending(service)
        service.apply_callback("T1", event())
        service.apply_callback("T1", event(CallbackStatus.REVERSED))

        result = service.apply_callback("T1", event(CallbackStatus.REVERSED))

        assert result.outcome == LedgerOutcome.ALREADY_REVERSED
        assert len(service.list_transactions("T1")) == 2


class TestConcurrentCallbacks:
    """Tests for overlapping postbacks on one balance."""

    def test_parallel_replays_credit_each_completion_once(self):
        service = make_service()
        keys = [f"T{i}" for i in range(40)]
        for key in keys:
            pending(service, key, payout=25)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda key: service.apply_callback(key, event(tracking_id=key)),
                keys + keys,
            ))

        outcomes = [r.outcome for r in results]
        assert outcomes.count(LedgerOutcome.CREDITED) == 40
        assert outcomes.count(LedgerOutcome.ALREADY_CREDITED) == 40

        balance = service.get_balance(USER_ID)
        assert balance.points == balance.ledger_balance == 40 * 25
        assert balance.total_entries == 40
        assert service.tournament.get_entry(USER_ID).points == 40 * 30


class TestCompletionCreation:
    """Tests for recording pending completions."""

    def test_payout_defaults_from_offer(self):
        service = make_service()
        service.storage.add_offer(OFFER_ID, "Kiwiwall", "Reach level 10", 1500)

        completion = service.create_completion(CreateCompletionRequest(
            tracking_id="T5", user_id=USER_ID, offer_id=OFFER_ID, provider="Kiwiwall",
        ))

        assert completion.payout == 1500
        assert completion.status == CompletionStatus.PENDING
        assert completion.metadata["offer_title"] == "Reach level 10"

    def test_same_tracking_key_returns_existing(self):
        service = make_service()
        first = pending(service)
        second = pending(service)

        assert second.id == first.id
        assert len(service.storage.offer_completions) == 1

    def test_tracking_key_reuse_for_other_user_conflicts(self):
        service = make_service()
        pending(service)

        with pytest.raises(IdempotencyConflictError):
            pending(service, user_id=OTHER_USER_ID)


class TestBalanceCalculation:
    """Tests for balance and history reads."""

    def test_ledger_balance_matches_points(self):
        service = make_service()
        pending(service, "T1", payout=100)
        pending(service, "T2", payout=250)
        pending(service, "T3", payout=50)
        for key in ("T1", "T2", "T3"):
            service.apply_callback(key, event(tracking_id=key))
        service.apply_callback("T3", event(CallbackStatus.REVERSED, tracking_id="T3"))

        balance = service.get_balance(USER_ID)
        assert balance.points == 350
        assert balance.ledger_balance == 350
        assert balance.total_entries == 4  # 3 credits + 1 debit
        assert balance.last_transaction_at == NOW

    def test_ledger_history(self):
        service = make_service()
        pending(service)
        service.apply_callback("T1", event())

        history = service.get_ledger_history(USER_ID)

        assert history.user_id == USER_ID
        assert history.total_count == 1
        assert history.current_balance == 100
        assert history.entries[0].source_id == "T1"

    def test_balance_for_unknown_user(self):
        service = make_service()

        with pytest.raises(UserNotFoundError):
            service.get_balance("ghost")


class TestStorageTransaction:
    """Tests for all-or-nothing writes."""

    def test_exception_restores_every_collection(self):
        storage = InMemoryStorage()
        storage.add_user(USER_ID, points=10)

        with pytest.raises(RuntimeError):
            with storage.transaction():
                storage.users[USER_ID]["points"] = 999
                storage.transactions["x"] = {"id": "x"}
                raise RuntimeError("boom")

        assert storage.users[USER_ID]["points"] == 10
        assert "x" not in storage.transactions

    def test_nested_transaction_rolls_back_with_outer(self):
        storage = InMemoryStorage()
        storage.add_user(USER_ID, points=10)

        with pytest.raises(RuntimeError):
            with storage.transaction():
                with storage.transaction():
                    storage.users[USER_ID]["points"] = 20
                raise RuntimeError("boom")

        assert storage.users[USER_ID]["points"] == 10

    def test_rollback_removes_rows_created_in_block(self):
        storage = InMemoryStorage()

        with pytest.raises(RuntimeError):
            with storage.transaction():
                storage.add_user("fresh")
                storage.transaction_index[("credit", "offerwall", "T9")] = "x"
                raise RuntimeError("boom")

        assert "fresh" not in storage.users
        assert ("credit", "offerwall", "T9") not in storage.transaction_index

    def test_rollback_restores_deleted_rows(self):
        storage = InMemoryStorage()
        storage.add_user(USER_ID, points=10)

        with pytest.raises(RuntimeError):
            with storage.transaction():
                del storage.users[USER_ID]
                raise RuntimeError("boom")

        assert storage.users[USER_ID]["points"] == 10

    def test_rollback_leaves_untouched_rows_alone(self):
        """Only rows the block touched are copied and restored."""
        storage = InMemoryStorage()
        storage.add_user(USER_ID, points=10)
        storage.add_user(OTHER_USER_ID, points=3)
        users = storage.users
        untouched = storage.users[OTHER_USER_ID]

        with pytest.raises(RuntimeError):
            with storage.transaction():
                storage.users[USER_ID]["points"] = 0
                raise RuntimeError("boom")

        assert storage.users is users
        assert storage.users[OTHER_USER_ID] is untouched

    def test_committed_changes_survive_a_later_rollback(self):
        storage = InMemoryStorage()
        storage.add_user(USER_ID, points=10)
        with storage.transaction():
            storage.users[USER_ID]["points"] = 40

        with pytest.raises(RuntimeError):
            with storage.transaction():
                storage.users[USER_ID]["points"] = 0
                raise RuntimeError("boom")

        assert storage.users[USER_ID]["points"] == 40


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

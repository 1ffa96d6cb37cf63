"""
Points Ledger for Offerwall and Ad Rewards

This module provides:
- Append-only transactions with one entry per (type, source, source id)
- Guarded completion lifecycle: pending → credited → reversed
- Idempotent crediting of retried provider postbacks
- Floored reversal on chargeback
- Streak and happy-hour bonus multipliers for first-party ads
- Weekly tournament points kept apart from the redeemable balance
"""

from .models import (
    CallbackEvent,
    CallbackStatus,
    CompletionStatus,
    LedgerOutcome,
    OfferCompletion,
    Transaction,
    TransactionType,
    UserBalance,
)
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "CallbackEvent",
    "CallbackStatus",
    "CompletionStatus",
    "LedgerOutcome",
    "OfferCompletion",
    "Transaction",
    "TransactionType",
    "UserBalance",
    "LedgerService",
    "InMemoryStorage",
]

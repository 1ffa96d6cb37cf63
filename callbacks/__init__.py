"""
Offer Callback Pipeline

Turns provider postbacks into ledger events:
- Declarative per-provider field aliases and status encodings
- Per-provider signature verification
- Completion lookup by tracking id, or by a unique pending user/offer pair
"""

from .processor import CallbackProcessor, detect_provider
from .providers import (
    PROVIDER_ADAPTERS,
    CallbackParseError,
    ProviderAdapter,
    normalize,
)
from .resolver import CompletionResolver
from .signatures import SignatureValidator

__all__ = [
    "CallbackProcessor",
    "CallbackParseError",
    "CompletionResolver",
    "PROVIDER_ADAPTERS",
    "ProviderAdapter",
    "SignatureValidator",
    "detect_provider",
    "normalize",
]

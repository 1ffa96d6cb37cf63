from typing import Any, Mapping, Optional

from loguru import logger

from ledger.errors import PointsError, UpstreamError
from ledger.models import CallbackResult
from ledger.service import LedgerService
from ledger.settings import Settings, get_settings

from .providers import ProviderAdapter, adapter_for, canonical_provider, normalize
from .resolver import CompletionResolver
from .signatures import SignatureValidator


def detect_provider(raw_payload: Mapping[str, Any], path_provider: Optional[str] = None) -> str:
    provider = path_provider or raw_payload.get("provider") or raw_payload.get("network")
    return canonical_provider(str(provider) if provider else None)


class CallbackProcessor:
    """Normalize, authenticate, resolve, then apply one provider postback.

    Domain failures surface as their own PointsError subclass; anything
    else is logged and raised as UpstreamError.
    """

    def __init__(self, ledger: LedgerService, settings: Optional[Settings] = None,
                 validator: Optional[SignatureValidator] = None,
                 resolver: Optional[CompletionResolver] = None):
        self.settings = settings or get_settings()
        self.ledger = ledger
        self.validator = validator or SignatureValidator(self.settings)
        self.resolver = resolver or CompletionResolver(ledger, self.settings)

    def adapter(self, provider: str) -> ProviderAdapter:
        return adapter_for(provider)

    def process(self, provider: str, raw_payload: Mapping[str, Any]) -> CallbackResult:
        try:
            event = normalize(provider, raw_payload)
            self.validator.verify(event.provider, raw_payload)
            completion = self.resolver.resolve(event)
            result = self.ledger.apply_callback(completion.id, event)
        except PointsError:
            raise
        except Exception as e:
            logger.exception("Failed to process offer callback", provider=provider)
            raise UpstreamError(f"Failed to process {provider} callback") from e

        logger.info("Processed offer callback", provider=event.provider, completion_id=completion.id,
                    status=event.status.value, outcome=result.outcome.value)
        return result

"""Per-provider postback authentication.

Kiwiwall and CPX publish MD5 schemes over a few fields plus the shared
secret. Every other network is verified with HMAC-SHA256 over the sorted
``key=value`` pairs of the payload, minus the signature and routing
fields.
"""

import hashlib
import hmac
from typing import Any, Callable, Mapping, Optional

from loguru import logger

from ledger.errors import ForbiddenError
from ledger.settings import Settings, get_settings

from .providers import (
    ROUTING_FIELDS,
    SIGNATURE_FIELDS,
    ProviderAdapter,
    adapter_for,
    canonical_provider,
    first_value,
)


class InvalidSignatureError(ForbiddenError):
    pass


def _md5(text: str) -> str:
    return hashlib.md5(text.encode("utf-8")).hexdigest()


def _kiwiwall(payload: Mapping[str, Any], secret: str, adapter: ProviderAdapter) -> str:
    sub_id = first_value(payload, adapter.user_id) or ""
    amount = first_value(payload, adapter.payout) or ""
    return _md5(f"{sub_id}:{amount}:{secret}")


def _cpx(payload: Mapping[str, Any], secret: str, adapter: ProviderAdapter) -> str:
    user_id = first_value(payload, adapter.user_id) or ""
    return _md5(f"{user_id}-{secret}")


def signing_string(payload: Mapping[str, Any]) -> str:
    keys = sorted(
        k for k in payload
        if k not in SIGNATURE_FIELDS and k not in ROUTING_FIELDS
    )
    return "&".join(f"{k}={payload[k]}" for k in keys)


def _hmac_sha256(payload: Mapping[str, Any], secret: str, adapter: ProviderAdapter) -> str:
    return hmac.new(
        key=secret.encode("utf-8"),
        msg=signing_string(payload).encode("utf-8"),
        digestmod=hashlib.sha256,
    ).hexdigest()


SCHEMES: dict[str, Callable[[Mapping[str, Any], str, ProviderAdapter], str]] = {
    "Kiwiwall": _kiwiwall,
    "CPX": _cpx,
}


def expected_signature(provider: str, payload: Mapping[str, Any], secret: str) -> str:
    adapter = adapter_for(provider)
    scheme = SCHEMES.get(adapter.name, _hmac_sha256)
    return scheme(payload, secret, adapter)


class SignatureValidator:
    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def validate(self, provider: str, raw_payload: Mapping[str, Any]) -> bool:
        name = canonical_provider(provider)
        secret = self.settings.secret_for(name)
        if not secret:
            if self.settings.allow_unsigned_callbacks:
                logger.warning("No secret configured, accepting unsigned callback", provider=name)
                return True
            logger.error("No secret configured for provider, rejecting callback", provider=name)
            return False

        received = first_value(raw_payload, adapter_for(provider).signature)
        if not received:
            logger.warning("Callback is missing its signature", provider=name)
            return False

        expected = expected_signature(name, raw_payload, secret)
        if not hmac.compare_digest(expected.lower(), received.lower()):
            logger.warning("Callback signature mismatch", provider=name)
            return False
        return True

    def verify(self, provider: str, raw_payload: Mapping[str, Any]) -> None:
        if not self.validate(provider, raw_payload):
            raise InvalidSignatureError(f"Invalid signature for {canonical_provider(provider)} callback")

import math
import re
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from uuid import uuid4

from ledger.errors import ValidationError
from ledger.models import CallbackEvent, CallbackStatus

GENERIC_PROVIDER = "Other"
SIGNATURE_FIELDS = frozenset({"signature", "sig", "hash", "verifier"})
ROUTING_FIELDS = frozenset({"provider", "network"})

_LEADING_INT = re.compile(r"^\s*\+?(\d+)")


class CallbackParseError(ValidationError):
    pass


@dataclass(frozen=True)
class StatusRule:
    field: str
    reversed_values: frozenset[str]

    def matches(self, payload: Mapping[str, Any]) -> bool:
        value = payload.get(self.field)
        if value is None:
            return False
        return str(value).strip().lower() in self.reversed_values


def reversed_when(field_name: str, *values: str) -> StatusRule:
    return StatusRule(field_name, frozenset(v.lower() for v in values))


@dataclass(frozen=True)
class ProviderAdapter:
    """Field aliases and status encoding for one network's postback.

    Each alias tuple is tried in order; the first non-empty value wins.
    """

    name: str
    tracking_id: tuple[str, ...] = ()
    user_id: tuple[str, ...] = ()
    offer_id: tuple[str, ...] = ()
    transaction_id: tuple[str, ...] = ()
    payout: tuple[str, ...] = ()
    signature: tuple[str, ...] = ("signature", "sig", "hash")
    status_rules: tuple[StatusRule, ...] = ()
    always_completed: bool = False
    plain_text_response: bool = False

    def status_for(self, payload: Mapping[str, Any]) -> CallbackStatus:
        if self.always_completed:
            return CallbackStatus.COMPLETED
        if any(rule.matches(payload) for rule in self.status_rules):
            return CallbackStatus.REVERSED
        return CallbackStatus.COMPLETED


_SURVEY_ALIASES = dict(
    tracking_id=("tid", "request_uuid"),
    user_id=("uid", "user_id"),
    transaction_id=("trans_id", "transaction_id"),
    payout=("payout", "reward"),
    signature=("hash", "signature"),
    status_rules=(reversed_when("status", "reversed", "2"),),
)

PROVIDER_ADAPTERS: dict[str, ProviderAdapter] = {
    adapter.name.lower(): adapter
    for adapter in (
        ProviderAdapter(
            name="AdGem",
            tracking_id=("tid", "tracking_id"),
            user_id=("player_id", "uid"),
            offer_id=("offer_id",),
            transaction_id=("transaction_id",),
            payout=("payout", "amount"),
            signature=("signature",),
            status_rules=(reversed_when("status", "reversed"),),
        ),
        ProviderAdapter(
            name="Tapjoy",
            tracking_id=("snuid",),
            user_id=("snuid",),
            transaction_id=("id",),
            payout=("currency",),
            signature=("verifier",),
            always_completed=True,
        ),
        ProviderAdapter(
            name="OfferToro",
            tracking_id=("sub1",),
            user_id=("user_id",),
            offer_id=("offer_id",),
            transaction_id=("oid",),
            payout=("payout",),
            signature=("sig",),
            always_completed=True,
        ),
        ProviderAdapter(
            name="Wannads",
            tracking_id=("tid", "transaction_id", "trans_id"),
            user_id=("uid", "user_id", "subid"),
            offer_id=("oid", "offer_id", "campaign_id"),
            transaction_id=("tid", "transaction_id"),
            payout=("payout", "reward", "points"),
            signature=("sig", "signature", "hash"),
            status_rules=(reversed_when("status", "reversed", "chargeback"),),
        ),
        ProviderAdapter(
            name="Adgate",
            tracking_id=("tx_id", "transaction_id", "tid"),
            user_id=("s1", "user_id", "uid", "subid"),
            offer_id=("offer_id", "oid"),
            transaction_id=("tx_id", "transaction_id"),
            payout=("points", "payout", "currency"),
            signature=("signature", "sig", "hash"),
            status_rules=(
                reversed_when("status", "reversed"),
                reversed_when("type", "chargeback"),
            ),
        ),
        ProviderAdapter(
            name="Monlix",
            tracking_id=("transid", "trans_id", "tid", "transaction_id"),
            user_id=("userid", "user_id", "uid", "subid"),
            offer_id=("offerid", "offer_id", "survey_id"),
            transaction_id=("transid", "trans_id", "transaction_id"),
            payout=("payout", "reward", "points"),
            signature=("hash", "signature", "sig"),
            status_rules=(reversed_when("status", "reversed", "chargeback"),),
        ),
        ProviderAdapter(
            name="Timewall",
            tracking_id=("trans_id", "transactionID", "transaction_id"),
            user_id=("uid", "userID", "user_id"),
            transaction_id=("trans_id", "transactionID", "transaction_id"),
            payout=("amount", "revenue", "currencyAmount", "currency_amount"),
            signature=("hash", "signature"),
            status_rules=(reversed_when("type", "chargeback", "reversed"),),
        ),
        ProviderAdapter(
            name="Kiwiwall",
            tracking_id=("trans_id", "transid", "tid"),
            user_id=("sub_id", "subid", "uid", "user_id"),
            offer_id=("offer_id", "offerid"),
            transaction_id=("trans_id", "transid"),
            payout=("amount", "payout", "points"),
            signature=("signature", "sig"),
            status_rules=(reversed_when("status", "2", "reversed"),),
            plain_text_response=True,
        ),
        ProviderAdapter(
            name="CPX",
            tracking_id=("trans_id", "transaction_id", "tid"),
            user_id=("uid", "user_id", "ext_user_id"),
            transaction_id=("trans_id", "transaction_id"),
            payout=("amount", "amount_local", "payout", "reward"),
            signature=("hash", "signature"),
            status_rules=(reversed_when("status", "2", "reversed"),),
        ),
        ProviderAdapter(name="TheoremReach", **_SURVEY_ALIASES),
        ProviderAdapter(name="BitLabs", **_SURVEY_ALIASES),
        ProviderAdapter(name="Pollfish", **_SURVEY_ALIASES),
    )
}

GENERIC_ADAPTER = ProviderAdapter(
    name=GENERIC_PROVIDER,
    tracking_id=("tid", "trackingId", "tracking_id"),
    user_id=("uid", "userId", "user_id", "s1", "subid", "sub_id"),
    offer_id=("oid", "offerId", "offer_id"),
    transaction_id=("transactionId", "trans_id", "tx_id", "transaction_id"),
    payout=("payout", "points", "amount"),
    signature=("signature", "sig", "hash"),
    status_rules=(reversed_when("status", "reversed", "chargeback"),),
)


def adapter_for(provider: Optional[str]) -> ProviderAdapter:
    if not provider:
        return GENERIC_ADAPTER
    return PROVIDER_ADAPTERS.get(provider.strip().lower(), GENERIC_ADAPTER)


def canonical_provider(provider: Optional[str]) -> str:
    adapter = adapter_for(provider)
    if adapter is GENERIC_ADAPTER:
        return (provider or "").strip() or GENERIC_PROVIDER
    return adapter.name


def first_value(payload: Mapping[str, Any], aliases: tuple[str, ...]) -> Optional[str]:
    for alias in aliases:
        value = payload.get(alias)
        if value is None or isinstance(value, bool):
            continue
        text = str(value).strip()
        if text:
            return text
    return None


def parse_points(value: Any) -> Optional[int]:
    """Leading integer part of a payout value, or None if not positive."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        points = int(value)
    else:
        match = _LEADING_INT.match(str(value))
        if not match:
            return None
        points = int(match.group(1))
    return points if points > 0 else None


def first_points(payload: Mapping[str, Any], aliases: tuple[str, ...]) -> int:
    for alias in aliases:
        points = parse_points(payload.get(alias))
        if points is not None:
            return points
    return 0


def normalize(provider: Optional[str], raw_payload: Mapping[str, Any]) -> CallbackEvent:
    """Map a provider postback onto the canonical callback event.

    Raises CallbackParseError when the payload carries neither a tracking
    id nor a user id + offer id pair.
    """
    adapter = adapter_for(provider)
    tracking_id = first_value(raw_payload, adapter.tracking_id)
    user_id = first_value(raw_payload, adapter.user_id)
    offer_id = first_value(raw_payload, adapter.offer_id)

    if not tracking_id and not (user_id and offer_id):
        raise CallbackParseError(
            f"{canonical_provider(provider)} callback has neither a tracking id nor a user/offer pair"
        )

    return CallbackEvent(
        provider=canonical_provider(provider),
        tracking_id=tracking_id,
        user_id=user_id,
        offer_id=offer_id,
        transaction_id=first_value(raw_payload, adapter.transaction_id) or uuid4().hex,
        payout=first_points(raw_payload, adapter.payout),
        status=adapter.status_for(raw_payload),
        signature=first_value(raw_payload, adapter.signature),
    )

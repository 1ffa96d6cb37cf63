from typing import Optional

from loguru import logger

from ledger.errors import ConflictError, ValidationError
from ledger.models import CallbackEvent, CreateCompletionRequest, OfferCompletion
from ledger.service import CompletionNotFoundError, LedgerService
from ledger.settings import Settings, get_settings


class MissingTrackingInfoError(ValidationError):
    pass


class CompletionOwnershipError(ValidationError):
    pass


class AmbiguousCompletionError(ConflictError):
    pass


class CompletionResolver:
    """Find the completion a callback refers to.

    The tracking id is the completion's key. Without one, the
    (user, offer) pair must match exactly one pending completion.
    """

    def __init__(self, ledger: LedgerService, settings: Optional[Settings] = None):
        self.ledger = ledger
        self.settings = settings or get_settings()

    def resolve(self, event: CallbackEvent) -> OfferCompletion:
        if event.tracking_id:
            return self._by_tracking_id(event)
        if event.user_id and event.offer_id:
            return self._by_user_offer(event)
        raise MissingTrackingInfoError("Callback has neither a tracking id nor a user/offer pair")

    def _by_tracking_id(self, event: CallbackEvent) -> OfferCompletion:
        try:
            completion = self.ledger.get_completion(event.tracking_id)
        except CompletionNotFoundError:
            if not (self.settings.auto_creates(event.provider) and event.user_id):
                logger.warning("Completion not found", tracking_id=event.tracking_id,
                               provider=event.provider)
                raise
            return self._auto_create(event)

        if event.user_id and completion.user_id != event.user_id:
            logger.warning("Callback user does not own completion", tracking_id=event.tracking_id,
                           completion_user=completion.user_id, callback_user=event.user_id)
            raise CompletionOwnershipError(
                f"Completion {event.tracking_id} does not belong to user {event.user_id}"
            )
        return completion

    def _by_user_offer(self, event: CallbackEvent) -> OfferCompletion:
        matches = self.ledger.find_pending_completions(event.user_id, event.offer_id)
        if not matches:
            logger.warning("No pending completion for user/offer", user_id=event.user_id,
                           offer_id=event.offer_id, provider=event.provider)
            raise CompletionNotFoundError(
                f"No pending completion for user {event.user_id} and offer {event.offer_id}"
            )
        if len(matches) > 1:
            logger.error("Several pending completions match callback", user_id=event.user_id,
                         offer_id=event.offer_id, count=len(matches))
            raise AmbiguousCompletionError(
                f"{len(matches)} pending completions for user {event.user_id} and offer "
                f"{event.offer_id}; send the tracking id"
            )
        return matches[0]

    def _auto_create(self, event: CallbackEvent) -> OfferCompletion:
        logger.info("Creating completion from callback", tracking_id=event.tracking_id,
                    provider=event.provider, offer_id=event.offer_id)
        return self.ledger.create_completion(CreateCompletionRequest(
            tracking_id=event.tracking_id,
            user_id=event.user_id,
            offer_id=event.offer_id or "external_offer",
            provider=event.provider,
            payout=event.payout,
            metadata={"created_from_callback": True},
        ))

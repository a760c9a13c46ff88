"""
Adaptateur Stripe pour l'autorisation carte (PaymentIntent).

- retrieve_intent: lit l'id du PaymentIntent dans protectedData de la transaction
- confirm: confirme l'intent avec le moyen de paiement tokenisé du navigateur
Les appels SDK (synchrones) passent par le threadpool Starlette.
Les erreurs réseau transitoires sont rejouées par le SDK (stripe.max_network_retries).
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe
from starlette.concurrency import run_in_threadpool

from storefront.config import STRIPE_MAX_NETWORK_RETRIES, STRIPE_SECRET_KEY
from .errors import ErrorKind, ProcessorResult
from .models import CardDetails, ListingRef, Transaction
from .processes import get_process

logger = logging.getLogger(__name__)

AUTHORIZED_STATUSES = {"succeeded", "requires_capture"}


def require_stripe():
    """
    Prépare et retourne le module stripe prêt à l'emploi.
    Sans clé, les appels échouent côté SDK (AuthenticationError -> Unknown).
    """
    if STRIPE_SECRET_KEY:
        stripe.api_key = STRIPE_SECRET_KEY
    stripe.max_network_retries = STRIPE_MAX_NETWORK_RETRIES
    return stripe


@dataclass(frozen=True)
class PaymentIntent:
    id: str
    status: str
    client_secret: Optional[str] = None
    next_action: Optional[Dict[str, Any]] = None

    @property
    def is_authorized(self) -> bool:
        return self.status in AUTHORIZED_STATUSES

    @classmethod
    def from_stripe(cls, obj: Any) -> "PaymentIntent":
        data = obj.to_dict() if hasattr(obj, "to_dict") else dict(obj)
        return cls(
            id=data.get("id") or "",
            status=data.get("status") or "",
            client_secret=data.get("client_secret"),
            next_action=data.get("next_action"),
        )


@dataclass(frozen=True)
class Confirmation:
    intent: PaymentIntent
    requires_action: bool = False
    next_action: Optional[Dict[str, Any]] = field(default=None)


def payment_intent_id(transaction: Transaction) -> Optional[str]:
    intents = (transaction.protected_data or {}).get("stripePaymentIntents") or {}
    default = intents.get("default") if isinstance(intents, dict) else None
    if not isinstance(default, dict):
        return None
    return default.get("stripePaymentIntentId")


def _map_stripe_error(e: "stripe.StripeError") -> ProcessorResult:
    code = getattr(e, "code", None)
    message = getattr(e, "user_message", None) or str(e)
    if isinstance(e, stripe.CardError):
        return ProcessorResult.failure(ErrorKind.PROCESSOR_DECLINED, message=message, code=code)
    if isinstance(e, stripe.RateLimitError):
        return ProcessorResult.failure(ErrorKind.RATE_LIMITED, message=message, code=code)
    if isinstance(e, stripe.InvalidRequestError):
        return ProcessorResult.failure(ErrorKind.VALIDATION_FAILED, message=message, code=code)
    return ProcessorResult.failure(ErrorKind.UNKNOWN, message=message, code=code)


class CardAuthorizationAdapter:
    def __init__(self, client=None):
        self.stripe = client or require_stripe()

    async def retrieve_intent(self, listing: ListingRef, process_name: str, transaction: Transaction) -> ProcessorResult:
        if not get_process(process_name).requires_card:
            raise ValueError(f"Le process {process_name} n'utilise pas de paiement carte")
        intent_id = payment_intent_id(transaction)
        if not intent_id:
            logger.warning("checkout.card missing_intent tx_id=%s listing_id=%s", transaction.id, listing.id)
            return ProcessorResult.failure(ErrorKind.UNKNOWN, message="PaymentIntent absent de la transaction")
        try:
            obj = await run_in_threadpool(self.stripe.PaymentIntent.retrieve, intent_id)
        except stripe.StripeError as e:
            logger.warning("checkout.card retrieve_failed intent=%s err=%s", intent_id, e)
            return _map_stripe_error(e)
        return ProcessorResult(value=PaymentIntent.from_stripe(obj))

    async def confirm(self, intent: PaymentIntent, card: CardDetails) -> ProcessorResult:
        """
        Confirme l'intent. Retourne une Confirmation:
        - autorisé (succeeded / requires_capture)
        - requires_action: 3-D Secure à traiter côté navigateur (next_action)
        Un refus (CardError ou requires_payment_method) donne ProcessorDeclined.
        """
        kwargs: Dict[str, Any] = {"payment_method": card.payment_method_id}
        if card.save_for_future:
            kwargs["setup_future_usage"] = "off_session"
        try:
            obj = await run_in_threadpool(self.stripe.PaymentIntent.confirm, intent.id, **kwargs)
        except stripe.StripeError as e:
            logger.info("checkout.card confirm_failed intent=%s err=%s", intent.id, e)
            return _map_stripe_error(e)

        confirmed = PaymentIntent.from_stripe(obj)
        if confirmed.status == "requires_payment_method":
            return ProcessorResult.failure(ErrorKind.PROCESSOR_DECLINED, message="Carte refusée")
        if confirmed.status == "requires_action":
            return ProcessorResult(value=Confirmation(intent=confirmed, requires_action=True, next_action=confirmed.next_action))
        if not confirmed.is_authorized:
            return ProcessorResult.failure(ErrorKind.UNKNOWN, message=f"Statut inattendu: {confirmed.status}")
        logger.info("checkout.card authorized intent=%s status=%s", confirmed.id, confirmed.status)
        return ProcessorResult(value=Confirmation(intent=confirmed))

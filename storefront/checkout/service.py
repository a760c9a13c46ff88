"""
Cas d'usage 'checkout': câblage par requête et registre des tentatives en cours.

- CheckoutRegistry: orchestrateurs vivants (clé: id de session checkout + id d'annonce),
  pour que la garde anti double-soumission couvre plusieurs requêtes HTTP
- get_session_store / get_gateway / get_card_adapter: dépendances FastAPI (surchargées en tests)
"""
import logging
import secrets
from typing import Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request

from storefront.config import CHECKOUT_SESSION_BACKEND, CHECKOUT_SESSION_NAMESPACE, STRIPE_SECRET_KEY
from storefront.infra.redis_client import get_checkout_redis
from storefront.utils.security import require_user
from .card_adapter import CardAuthorizationAdapter
from .errors import SubmissionInProgress
from .gateway import TransactionGateway
from .models import CheckoutContext, StartCheckoutIn
from .orchestrator import CheckoutOrchestrator
from .session_store import RedisSessionStorage, SessionStore, handle_page_data

logger = logging.getLogger(__name__)

SID_SESSION_KEY = "checkout_sid"


class CheckoutRegistry:
    def __init__(self):
        self._items: Dict[Tuple[str, str], CheckoutOrchestrator] = {}

    def get(self, sid: str, listing_id: str) -> Optional[CheckoutOrchestrator]:
        return self._items.get((sid, listing_id))

    def put(self, sid: str, listing_id: str, orchestrator: CheckoutOrchestrator) -> None:
        previous = self._items.get((sid, listing_id))
        if previous is not None and previous.is_submitting:
            raise SubmissionInProgress("Une soumission est déjà en cours pour ce checkout")
        self._items[(sid, listing_id)] = orchestrator

    def pop(self, sid: str, listing_id: str) -> Optional[CheckoutOrchestrator]:
        return self._items.pop((sid, listing_id), None)

    def __len__(self) -> int:
        return len(self._items)


def get_registry(request: Request) -> CheckoutRegistry:
    registry = getattr(request.app.state, "checkout_registry", None)
    if registry is None:
        registry = CheckoutRegistry()
        request.app.state.checkout_registry = registry
    return registry


def get_checkout_sid(request: Request) -> str:
    """Identifiant de tentative porté par le cookie de session (un par onglet/navigateur)."""
    sid = request.session.get(SID_SESSION_KEY)
    if not sid:
        sid = secrets.token_urlsafe(16)
        request.session[SID_SESSION_KEY] = sid
    return sid


def get_session_store(request: Request, sid: str = Depends(get_checkout_sid)) -> SessionStore:
    if CHECKOUT_SESSION_BACKEND == "redis":
        return SessionStore(RedisSessionStorage(get_checkout_redis(), prefix=f"checkout:{sid}"))
    return SessionStore(request.session)


def get_gateway(request: Request, user: dict = Depends(require_user)) -> TransactionGateway:
    return TransactionGateway(
        client=request.app.state.flex_client,
        privileged_client=getattr(request.app.state, "privileged_client", None),
        user_token=user.get("token", ""),
    )


def get_card_adapter() -> Optional[CardAuthorizationAdapter]:
    # Sans clé Stripe, la branche carte est indisponible
    if not STRIPE_SECRET_KEY:
        return None
    return CardAuthorizationAdapter()


def _recover_transaction(
    context: CheckoutContext,
    previous: Optional[CheckoutOrchestrator],
    store: SessionStore,
) -> CheckoutContext:
    """
    Réponse d'initiate arrivée après la déconnexion du shopper: elle n'a été
    écrite que dans la session de la requête perdue, mais l'orchestrateur
    vivant la détient. Reprise pour la même annonce et les mêmes dates.
    """
    if previous is None or context.transaction_id:
        return context
    previous_tx = previous.context.transaction
    if previous_tx is None or not previous_tx.id:
        return context
    if previous.context.listing.id != context.listing.id:
        return context
    if previous.context.order_data.booking_dates != context.order_data.booking_dates:
        return context
    logger.info("checkout.resume recovered tx_id=%s listing_id=%s", previous_tx.id, context.listing.id)
    return store.save(CHECKOUT_SESSION_NAMESPACE, context.model_copy(update={"transaction": previous_tx}))


async def start_checkout(
    payload: Optional[StartCheckoutIn],
    listing_id: str,
    *,
    sid: str,
    registry: CheckoutRegistry,
    store: SessionStore,
    gateway: TransactionGateway,
    card_adapter: Optional[CardAuthorizationAdapter],
) -> CheckoutOrchestrator:
    """
    Hydrate ou initialise le contexte (données fraîches prioritaires), crée
    l'orchestrateur, l'enregistre et lance les garde-fous + reprise.
    """
    initial = None
    if payload is not None:
        if payload.listing.id != listing_id:
            raise HTTPException(status_code=400, detail="Annonce incohérente avec l'URL")
        initial = CheckoutContext(listing=payload.listing, order_data=payload.order_data)

    context = handle_page_data(initial, store, CHECKOUT_SESSION_NAMESPACE)
    if context is None or context.listing.id != listing_id:
        raise HTTPException(status_code=404, detail="Aucun checkout en cours pour cette annonce")
    context = _recover_transaction(context, registry.get(sid, listing_id), store)

    orchestrator = CheckoutOrchestrator(
        context,
        gateway=gateway,
        session_store=store,
        card_adapter=card_adapter,
        namespace=CHECKOUT_SESSION_NAMESPACE,
    )
    registry.put(sid, listing_id, orchestrator)
    await orchestrator.start()
    logger.info("checkout.start listing_id=%s step=%s", listing_id, orchestrator.state.step.value)
    return orchestrator


def get_checkout(
    listing_id: str,
    sid: str = Depends(get_checkout_sid),
    registry: CheckoutRegistry = Depends(get_registry),
    store: SessionStore = Depends(get_session_store),
    gateway: TransactionGateway = Depends(get_gateway),
    card_adapter: Optional[CardAuthorizationAdapter] = Depends(get_card_adapter),
) -> CheckoutOrchestrator:
    orchestrator = registry.get(sid, listing_id)
    if orchestrator is None:
        raise HTTPException(status_code=404, detail="Checkout non démarré")
    orchestrator.bind(gateway=gateway, session_store=store, card_adapter=card_adapter)
    return orchestrator

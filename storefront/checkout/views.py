import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from storefront.utils.rate_limit import optional_rate_limit
from storefront.utils.security import require_user
from .card_adapter import CardAuthorizationAdapter
from .models import CardDetails, ContactInfo, OrderDataChanges, PaymentMethodIn, StartCheckoutIn
from .orchestrator import CheckoutOrchestrator
from .service import (
    CheckoutRegistry,
    get_card_adapter,
    get_checkout,
    get_checkout_sid,
    get_gateway,
    get_registry,
    get_session_store,
    start_checkout,
)
from .session_store import SessionStore
from .gateway import TransactionGateway

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/checkout", tags=["Checkout API"], dependencies=[Depends(require_user)])


# module storefront.checkout.views
@router.post("/{listing_id}/start", dependencies=[Depends(optional_rate_limit(times=20, seconds=60))])
async def start(
    listing_id: str,
    payload: Optional[StartCheckoutIn] = Body(default=None),
    sid: str = Depends(get_checkout_sid),
    registry: CheckoutRegistry = Depends(get_registry),
    store: SessionStore = Depends(get_session_store),
    gateway: TransactionGateway = Depends(get_gateway),
    card_adapter: Optional[CardAuthorizationAdapter] = Depends(get_card_adapter),
):
    """
    Ouvre (ou reprend) un checkout pour l'annonce.
    - Corps JSON optionnel: { "listing": {...}, "orderData": {...} } depuis la fiche annonce
    - Sans corps: reprise depuis la session (rechargement de page)
    - Retour: statut du checkout (étape, méthode, détail de prix, redirection éventuelle)
    """
    orchestrator = await start_checkout(
        payload, listing_id,
        sid=sid, registry=registry, store=store, gateway=gateway, card_adapter=card_adapter,
    )
    return orchestrator.status()


@router.get("/{listing_id}")
async def status(orchestrator: CheckoutOrchestrator = Depends(get_checkout)):
    return orchestrator.status()


@router.post("/{listing_id}/payment-method")
async def choose_payment_method(payload: PaymentMethodIn, orchestrator: CheckoutOrchestrator = Depends(get_checkout)):
    try:
        await orchestrator.choose_payment_method(payload.method)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return orchestrator.status()


@router.post("/{listing_id}/change-method")
async def change_payment_method(orchestrator: CheckoutOrchestrator = Depends(get_checkout)):
    orchestrator.change_payment_method()
    return orchestrator.status()


@router.post("/{listing_id}/preview", dependencies=[Depends(optional_rate_limit(times=30, seconds=60))])
async def preview(
    changes: Optional[OrderDataChanges] = Body(default=None),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout),
):
    """Recalcule l'aperçu de prix (dates, quantité, livraison, variante)."""
    await orchestrator.preview(changes)
    return orchestrator.status()


@router.post("/{listing_id}/card", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def authorize_card(card: CardDetails, orchestrator: CheckoutOrchestrator = Depends(get_checkout)):
    """
    Initie la commande si besoin, autorise la carte (Stripe) puis confirme le paiement.
    - 3-D Secure: statut 'AwaitingCardAuthorization' avec nextAction, rappeler après authentification
    """
    await orchestrator.authorize_card(card)
    return orchestrator.status()


@router.post("/{listing_id}/cash", dependencies=[Depends(optional_rate_limit(times=10, seconds=60))])
async def submit_cash(contact: ContactInfo, orchestrator: CheckoutOrchestrator = Depends(get_checkout)):
    await orchestrator.submit_cash(contact)
    return orchestrator.status()


@router.post("/{listing_id}/refresh")
async def refresh(orchestrator: CheckoutOrchestrator = Depends(get_checkout)):
    await orchestrator.refresh()
    return orchestrator.status()


@router.delete("/{listing_id}")
async def abandon(
    listing_id: str,
    sid: str = Depends(get_checkout_sid),
    registry: CheckoutRegistry = Depends(get_registry),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout),
):
    orchestrator.abandon()
    registry.pop(sid, listing_id)
    return orchestrator.status()

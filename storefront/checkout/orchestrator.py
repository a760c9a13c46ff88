"""
Orchestrateur du checkout: pilote une tentative de commande de bout en bout.

Cycle: ChoosingMethod -> (carte: PreviewingPrice -> AwaitingCardAuthorization -> Submitting)
                      | (espèces: CollectingContactInfo -> Submitting) -> Resolved | Failed

Règles:
- une seule soumission en vol par tentative (SubmissionInProgress sinon)
- aperçu de prix: la dernière requête émise gagne, les réponses périmées sont ignorées
- initiate/transition protégés de l'annulation: la réponse est écrite en session à l'arrivée
- succès: session vidée, id de commande + chemin de redirection
- échec: retour à l'étape d'origine avec l'erreur, session conservée
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from storefront.config import CASH_PROCESS_ALIAS, CHECKOUT_SESSION_NAMESPACE
from storefront.navigation import path_by_route_name
from .breakdown import read_breakdown
from .card_adapter import CardAuthorizationAdapter
from .errors import (
    CheckoutError,
    ErrorKind,
    GatewayResult,
    IllegalTransition,
    SubmissionInProgress,
    UnknownProcessError,
)
from .gateway import TransactionGateway
from .models import (
    CardDetails,
    CheckoutContext,
    ContactInfo,
    OrderDataChanges,
    PaymentMethod,
    Transaction,
    TransitionRequest,
)
from .order_params import build_order_params
from .processes import Process, get_process, process_name_from_alias
from .session_store import SessionStore
from .state_machine import CheckoutEvent, CheckoutState, CheckoutStep, next_state

logger = logging.getLogger(__name__)

Navigate = Callable[[str, Dict[str, Any]], str]

# Droits manquants -> page "accès refusé" (les autres refus renvoient vers l'annonce)
NO_ACCESS_USER_PENDING_APPROVAL = "user-approval"
NO_ACCESS_INITIATE_TRANSACTIONS = "initiate-transactions"
_NO_ACCESS_CODES = {NO_ACCESS_USER_PENDING_APPROVAL, NO_ACCESS_INITIATE_TRANSACTIONS}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CardBranch:
    """Branche carte: seule détentrice de l'adaptateur Stripe."""

    def __init__(self, gateway: TransactionGateway, adapter: CardAuthorizationAdapter):
        self.gateway = gateway
        self.adapter = adapter


class CashBranch:
    """Branche espèces: aucun accès au processeur de paiement."""

    def __init__(self, gateway: TransactionGateway, process_alias: str):
        self.gateway = gateway
        self.process_alias = process_alias


class CheckoutOrchestrator:
    def __init__(
        self,
        context: CheckoutContext,
        *,
        gateway: TransactionGateway,
        session_store: SessionStore,
        card_adapter: Optional[CardAuthorizationAdapter] = None,
        namespace: str = CHECKOUT_SESSION_NAMESPACE,
        navigate: Navigate = path_by_route_name,
        clock: Optional[Callable[[], datetime]] = None,
        cash_process_alias: str = CASH_PROCESS_ALIAS,
    ):
        self.context = context
        self.namespace = namespace
        self.navigate = navigate
        self.clock = clock or _utcnow
        self.cash_process_alias = cash_process_alias
        self.state = CheckoutState()
        self.price_preview: Optional[Transaction] = None
        self.redirect: Optional[str] = None
        self._speculation_seq = 0
        self._submitting = False
        self._inflight: Optional[asyncio.Future] = None
        self._needs_refresh = False
        self.bind(gateway=gateway, session_store=session_store, card_adapter=card_adapter)

    def bind(
        self,
        *,
        gateway: TransactionGateway,
        session_store: SessionStore,
        card_adapter: Optional[CardAuthorizationAdapter] = None,
    ) -> None:
        """
        Rattache les collaborateurs de la requête HTTP courante (token, session).
        Sans effet pendant une soumission: ses écritures de session restent sur
        la requête qui l'a lancée.
        """
        if self.is_submitting:
            logger.info("checkout.bind skipped: submission in flight listing_id=%s", self.context.listing.id)
            return
        self.gateway = gateway
        self.store = session_store
        self.card = CardBranch(gateway, card_adapter) if card_adapter is not None else None
        self.cash = CashBranch(gateway, self.cash_process_alias)

    # ---------- helpers ----------

    @property
    def is_submitting(self) -> bool:
        return self._submitting or (self._inflight is not None and not self._inflight.done())

    def _ensure_idle(self) -> None:
        if self.is_submitting:
            raise SubmissionInProgress("Une soumission est déjà en cours pour ce checkout")

    def _save(self, **updates) -> None:
        if updates:
            self.context = self.context.model_copy(update=updates)
        self.context = self.store.save(self.namespace, self.context)

    def _store_transaction(self, tx: Transaction) -> None:
        self._save(transaction=tx)

    def _card_process(self) -> Process:
        tx = self.context.transaction
        if tx is not None and tx.process_name:
            return get_process(tx.process_name)
        return get_process(process_name_from_alias(self.context.listing.transaction_process_alias))

    def _cash_process(self) -> Process:
        return get_process(process_name_from_alias(self.cash.process_alias))

    def _process(self) -> Process:
        if self.state.payment_method == PaymentMethod.CASH:
            return self._cash_process()
        return self._card_process()

    def _listing_path(self) -> str:
        listing = self.context.listing
        return self.navigate("ListingPage", {"slug": listing.slug, "id": listing.id})

    def _apply(self, event: CheckoutEvent, **kwargs) -> CheckoutState:
        self.state = next_state(self.state, event, **kwargs)
        return self.state

    def _fatal(self, error: CheckoutError) -> CheckoutState:
        if error.code in _NO_ACCESS_CODES:
            self.redirect = self.navigate("NoAccessPage", {"missingAccessRight": error.code})
        else:
            self.redirect = self._listing_path()
        logger.warning("checkout.failed listing_id=%s kind=%s code=%s", self.context.listing.id, error.kind.value, error.code)
        return self._apply(CheckoutEvent.FATAL_ERROR, error=error)

    def _resolve(self, tx: Transaction, event: CheckoutEvent = CheckoutEvent.SUBMIT_SUCCEEDED) -> CheckoutState:
        self.store.clear(self.namespace)
        self.redirect = self.navigate("OrderDetailsPage", {"id": tx.id})
        logger.info("checkout.submit ok tx_id=%s method=%s", tx.id, self.state.payment_method.value)
        return self._apply(event, order_id=tx.id)

    def _expire(self) -> CheckoutState:
        self.store.clear(self.namespace)
        return self._fatal(CheckoutError(ErrorKind.PAYMENT_EXPIRED, message="Le délai de paiement est dépassé"))

    def _request_step(self, process: Process, extras: Optional[Dict[str, Any]]) -> Optional[TransitionRequest]:
        """
        Requête qui crée (ou fait avancer jusqu'à) la commande, ou None si la
        transaction a déjà franchi cette étape.
        """
        tx = self.context.transaction
        params = build_order_params(self.context, extras)
        if tx is None or not tx.id:
            alias = self.cash.process_alias if not process.requires_card else self.context.listing.transaction_process_alias
            return TransitionRequest.creation(alias, process.request_transition, params)
        if tx.process_name and get_process(tx.process_name).name != process.name:
            # Transaction d'un autre process (ex: demande d'information): nouvelle commande
            alias = self.cash.process_alias if not process.requires_card else self.context.listing.transaction_process_alias
            return TransitionRequest.creation(alias, process.request_transition, params)
        current = process.state_after(tx.last_transition)
        if process.inquire_transition and current == process.state_after(process.inquire_transition):
            return TransitionRequest.continuation(tx, process.name, process.request_after_inquiry_transition, params)
        if process.can_transition(tx.last_transition, process.request_transition):
            return TransitionRequest.continuation(tx, process.name, process.request_transition, params)
        return None

    async def _commit(self, request: TransitionRequest) -> GatewayResult:
        """
        initiate/transition protégé de l'annulation: si l'appelant disparaît,
        l'appel continue et la transaction est stockée à l'arrivée.
        """
        call = self.gateway.initiate if request.is_creation else self.gateway.transition

        async def _run() -> GatewayResult:
            try:
                result = await call(request)
            except Exception:
                logger.exception("checkout.commit crashed transition=%s", request.transition)
                raise
            if result.ok:
                self._store_transaction(result.transaction)
            return result

        self._inflight = asyncio.ensure_future(_run())
        return await asyncio.shield(self._inflight)

    def _submit_failed(self, error: CheckoutError) -> CheckoutState:
        if error.kind.is_fatal:
            return self._fatal(error)
        if error.kind == ErrorKind.INVALID_TRANSITION:
            self._needs_refresh = True
        logger.info("checkout.submit failed kind=%s code=%s", error.kind.value, error.code)
        return self._apply(CheckoutEvent.SUBMIT_FAILED, error=error)

    # ---------- cycle de vie ----------

    async def start(self) -> CheckoutState:
        """
        Garde-fous (annonce + process, pas sa propre annonce, compte actif,
        droit d'initier des transactions) puis reprise de la tentative.
        """
        listing = self.context.listing
        try:
            get_process(process_name_from_alias(listing.transaction_process_alias))
            has_process = bool(listing.id)
        except UnknownProcessError:
            has_process = False
        if not has_process:
            return self._fatal(CheckoutError(ErrorKind.LISTING_NOT_FOUND, message="Annonce ou process introuvable", code="missing-process"))

        user_result = await self.gateway.fetch_current_user()
        if not user_result.ok:
            return self._fatal(user_result.error)
        user = user_result.data
        if listing.author is not None and listing.author.id == user.get("id"):
            return self._fatal(CheckoutError(ErrorKind.PERMISSION_DENIED, message="Impossible de commander sa propre annonce", code="own-listing"))
        if user.get("state") == "pendingApproval":
            return self._fatal(CheckoutError(ErrorKind.PERMISSION_DENIED, message="Compte en attente de validation", code=NO_ACCESS_USER_PENDING_APPROVAL))
        if user.get("state") == "banned":
            return self._fatal(CheckoutError(ErrorKind.PERMISSION_DENIED, message="Compte suspendu", code="user-banned"))
        permissions = user.get("permissions") or {}
        if permissions.get("initiateTransactions", "permission/allow") != "permission/allow":
            return self._fatal(CheckoutError(ErrorKind.PERMISSION_DENIED, message="Droit de commander manquant", code=NO_ACCESS_INITIATE_TRANSACTIONS))

        method = self.context.order_data.payment_method
        tx = self.context.transaction
        if tx is not None and tx.id and tx.process_name:
            process = get_process(tx.process_name)
            if process.is_submitted(tx.last_transition):
                logger.info("checkout.resume already_submitted tx_id=%s", tx.id)
                return self._resolve(tx, event=CheckoutEvent.ALREADY_SUBMITTED)
            if method == PaymentMethod.UNSET:
                # Méthode non stockée: déduite du process si la commande est déjà engagée
                if not process.requires_card:
                    method = PaymentMethod.CASH
                elif process.state_after(tx.last_transition) == process.pending_payment_state:
                    method = PaymentMethod.CARD
            if process.has_payment_expired(tx.last_transition, tx.last_transitioned_at, self.clock()):
                return self._expire()

        if method == PaymentMethod.UNSET:
            return self.state
        return await self.choose_payment_method(method)

    async def choose_payment_method(self, method: PaymentMethod) -> CheckoutState:
        if method == PaymentMethod.UNSET:
            raise ValueError("Choisir 'card' ou 'cash'")
        if method == PaymentMethod.CARD and self.card is None:
            raise ValueError("Paiement carte indisponible (adaptateur Stripe absent)")
        self._ensure_idle()
        event = CheckoutEvent.CHOOSE_CARD if method == PaymentMethod.CARD else CheckoutEvent.CHOOSE_CASH
        self._apply(event)
        order_data = self.context.order_data.model_copy(update={"payment_method": method})
        self._save(order_data=order_data)
        logger.info("checkout.method chosen=%s listing_id=%s", method.value, self.context.listing.id)
        return await self.preview()

    def change_payment_method(self) -> CheckoutState:
        if self.context.transaction_id:
            raise IllegalTransition(self.state.step, CheckoutEvent.CHANGE_METHOD)
        self._ensure_idle()
        self._apply(CheckoutEvent.CHANGE_METHOD)
        self._speculation_seq += 1
        self.price_preview = None
        order_data = self.context.order_data.model_copy(update={"payment_method": PaymentMethod.UNSET})
        self._save(order_data=order_data, contact=None)
        return self.state

    async def preview(self, changes: Optional[OrderDataChanges] = None) -> CheckoutState:
        self._ensure_idle()
        if self.state.step not in (
            CheckoutStep.PREVIEWING_PRICE,
            CheckoutStep.AWAITING_CARD_AUTHORIZATION,
            CheckoutStep.COLLECTING_CONTACT_INFO,
        ):
            raise IllegalTransition(self.state.step, CheckoutEvent.PREVIEW_READY)

        if changes is not None:
            updates = changes.model_dump(exclude_unset=True, exclude_none=True)
            if "protected_data" in updates:
                updates["protected_data"] = {**self.context.order_data.protected_data, **updates["protected_data"]}
            if "booking_dates" in updates:
                updates["booking_dates"] = changes.booking_dates
            self._save(order_data=self.context.order_data.model_copy(update=updates))

        process = self._process()
        request = self._request_step(process, None)
        if request is None:
            # Transaction déjà engagée: son détail de prix fait foi
            self.price_preview = self.context.transaction
            return self._apply(CheckoutEvent.PREVIEW_READY)

        self._speculation_seq += 1
        seq = self._speculation_seq
        result = await self.gateway.speculate(request)
        if seq != self._speculation_seq:
            logger.debug("checkout.preview superseded seq=%s latest=%s", seq, self._speculation_seq)
            return self.state
        if result.ok:
            self.price_preview = result.transaction
            return self._apply(CheckoutEvent.PREVIEW_READY)
        if result.error.kind.is_fatal:
            return self._fatal(result.error)
        return self._apply(CheckoutEvent.PREVIEW_FAILED, error=result.error)

    async def _refresh(self) -> CheckoutState:
        tx_id = self.context.transaction_id
        if not tx_id:
            self._needs_refresh = False
            return self.state
        result = await self.gateway.fetch_transaction(tx_id)
        if not result.ok:
            if result.error.kind.is_fatal:
                return self._fatal(result.error)
            return self.state
        self._needs_refresh = False
        tx = result.transaction
        self._store_transaction(tx)
        logger.info("checkout.refresh tx_id=%s last_transition=%s", tx.id, tx.last_transition)
        if get_process(tx.process_name or self._process().name).is_submitted(tx.last_transition):
            return self._resolve(tx, event=CheckoutEvent.ALREADY_SUBMITTED)
        return self.state

    async def refresh(self) -> CheckoutState:
        """Relit la transaction distante (après InvalidTransition)."""
        self._ensure_idle()
        if self.state.is_terminal:
            return self.state
        return await self._refresh()

    async def authorize_card(self, card: CardDetails) -> CheckoutState:
        self._ensure_idle()
        if self.card is None or self.state.step != CheckoutStep.AWAITING_CARD_AUTHORIZATION:
            raise IllegalTransition(self.state.step, CheckoutEvent.CARD_AUTHORIZED)
        self._submitting = True
        try:
            if self._needs_refresh:
                await self._refresh()
                if self.state.is_terminal:
                    return self.state

            process = self._card_process()
            tx = self.context.transaction
            if tx is not None and tx.id and process.has_payment_expired(tx.last_transition, tx.last_transitioned_at, self.clock()):
                return self._expire()

            request = self._request_step(process, card.as_payment_extras())
            if request is not None:
                result = await self._commit(request)
                if not result.ok:
                    if result.error.kind.is_fatal:
                        return self._fatal(result.error)
                    if result.error.kind == ErrorKind.INVALID_TRANSITION:
                        self._needs_refresh = True
                    return self._apply(CheckoutEvent.AUTHORIZATION_FAILED, error=result.error)
                tx = self.context.transaction

            retrieved = await self.card.adapter.retrieve_intent(self.context.listing, process.name, tx)
            if not retrieved.ok:
                return self._apply(CheckoutEvent.AUTHORIZATION_FAILED, error=retrieved.error)
            intent = retrieved.value
            if not intent.is_authorized:
                confirmed = await self.card.adapter.confirm(intent, card)
                if not confirmed.ok:
                    return self._apply(CheckoutEvent.AUTHORIZATION_FAILED, error=confirmed.error)
                if confirmed.value.requires_action:
                    # 3-D Secure: le navigateur traite next_action puis rappelle authorize_card
                    return self._apply(CheckoutEvent.AUTHORIZATION_FAILED, next_action=confirmed.value.next_action)

            self._apply(CheckoutEvent.CARD_AUTHORIZED)
            confirm = TransitionRequest.continuation(tx, process.name, process.confirm_transition, {})
            result = await self._commit(confirm)
            if result.ok:
                return self._resolve(result.transaction)
            return self._submit_failed(result.error)
        finally:
            self._submitting = False

    async def submit_cash(self, contact: ContactInfo) -> CheckoutState:
        self._ensure_idle()
        if self.state.step != CheckoutStep.COLLECTING_CONTACT_INFO:
            raise IllegalTransition(self.state.step, CheckoutEvent.CONTACT_COLLECTED)
        self._submitting = True
        try:
            if self._needs_refresh:
                await self._refresh()
                if self.state.is_terminal:
                    return self.state

            self._save(contact=contact)
            process = self._cash_process()
            request = self._request_step(process, contact.as_payment_extras())
            self._apply(CheckoutEvent.CONTACT_COLLECTED)
            if request is None:
                return self._resolve(self.context.transaction)
            result = await self._commit(request)
            if result.ok:
                return self._resolve(result.transaction)
            return self._submit_failed(result.error)
        finally:
            self._submitting = False

    def abandon(self) -> CheckoutState:
        self._ensure_idle()
        self._speculation_seq += 1
        self.store.clear(self.namespace)
        if not self.state.is_terminal:
            self._apply(CheckoutEvent.ABANDON)
        logger.info("checkout.abandon listing_id=%s", self.context.listing.id)
        return self.state

    def status(self) -> Dict[str, Any]:
        source = self.price_preview if self.price_preview is not None else self.context.transaction
        breakdown = read_breakdown(source)
        return {
            "step": self.state.step.value,
            "paymentMethod": self.state.payment_method.value,
            "orderId": self.state.order_id,
            "transactionId": self.context.transaction_id,
            "redirect": self.redirect,
            "error": self.state.error.to_dict() if self.state.error else None,
            "nextAction": self.state.next_action,
            "breakdown": breakdown.to_dict() if breakdown else None,
            "submitting": self.is_submitting,
        }

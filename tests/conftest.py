import asyncio
import os
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional

# Avant import de l'app: pas d'init Redis pour le rate limiting
os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")

import pytest
from fastapi.testclient import TestClient

from storefront.app import create_app
from storefront.checkout.card_adapter import Confirmation, PaymentIntent
from storefront.checkout.errors import GatewayResult, ProcessorResult
from storefront.checkout.models import (
    Author,
    BookingDates,
    CheckoutContext,
    ListingRef,
    OrderData,
    PriceVariant,
    Transaction,
)
from storefront.checkout.session_store import SessionStore
from storefront.utils.security import require_user


# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)
        elif "tests/functional/" in nodeid:
            item.add_marker(pytest.mark.functional)


NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def make_listing(**overrides) -> ListingRef:
    data: Dict[str, Any] = {
        "id": "listing-1",
        "title": "Perceuse à percussion",
        "author": Author(id="provider-1", display_name="Paul"),
        "transaction_process_alias": "default-booking/release-1",
        "price_variants": [PriceVariant(name="week-end", price_in_subunits=4500, billing_unit="day")],
    }
    data.update(overrides)
    return ListingRef(**data)


def make_context(**order) -> CheckoutContext:
    listing = order.pop("listing", None) or make_listing()
    transaction = order.pop("transaction", None)
    order.setdefault("booking_dates", BookingDates(
        start=datetime(2024, 6, 1, tzinfo=timezone.utc),
        end=datetime(2024, 6, 3, tzinfo=timezone.utc),
    ))
    return CheckoutContext(listing=listing, order_data=OrderData(**order), transaction=transaction)


def make_tx(
    tx_id: str = "tx-1",
    last_transition: Optional[str] = "transition/request-payment",
    process_name: str = "default-booking",
    last_transitioned_at: Optional[datetime] = None,
    total: int = 9000,
    with_intent: bool = True,
) -> Transaction:
    protected: Dict[str, Any] = {}
    if with_intent:
        protected["stripePaymentIntents"] = {"default": {"stripePaymentIntentId": "pi_123"}}
    return Transaction.model_validate({
        "id": tx_id,
        "processName": process_name,
        "lastTransition": last_transition,
        "lastTransitionedAt": (last_transitioned_at or datetime.now(timezone.utc)).isoformat(),
        "lineItems": [{
            "code": "line-item/day",
            "quantity": 2,
            "unitPrice": {"amount": 4500, "currency": "EUR"},
            "lineTotal": {"amount": total, "currency": "EUR"},
            "includeFor": ["customer", "provider"],
        }],
        "payinTotal": {"amount": total, "currency": "EUR"},
        "protectedData": protected,
    })


class FakeGateway:
    """
    Gateway en mémoire: réponses programmables par opération (file FIFO),
    sinon une réponse par défaut cohérente avec le process.
    """

    def __init__(self):
        self.calls: List[tuple] = []
        self.queued: Dict[str, List[GatewayResult]] = {}
        self.user: Dict[str, Any] = {"id": "customer-1", "state": "active", "permissions": {"initiateTransactions": "permission/allow"}}
        self.gates: Dict[str, asyncio.Event] = {}

    def queue(self, op: str, *results: GatewayResult) -> None:
        self.queued.setdefault(op, []).extend(results)

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)

    async def _answer(self, op: str, default: GatewayResult) -> GatewayResult:
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        queue = self.queued.get(op) or []
        return queue.pop(0) if queue else default

    async def speculate(self, request):
        self.calls.append(("speculate", request))
        return await self._answer("speculate", GatewayResult(transaction=make_tx("speculative", last_transition=request.transition)))

    async def initiate(self, request):
        self.calls.append(("initiate", request))
        process_name = "reloue-booking-cash" if request.process_name == "reloue-booking-cash" else request.process_name
        return await self._answer("initiate", GatewayResult(transaction=make_tx(
            "tx-1", last_transition=request.transition, process_name=process_name,
            with_intent=process_name != "reloue-booking-cash",
        )))

    async def transition(self, request):
        self.calls.append(("transition", request))
        return await self._answer("transition", GatewayResult(transaction=make_tx(
            request.transaction_id, last_transition=request.transition, process_name=request.process_name,
        )))

    async def fetch_transaction(self, transaction_id):
        self.calls.append(("fetch_transaction", transaction_id))
        return await self._answer("fetch_transaction", GatewayResult(transaction=make_tx(transaction_id)))

    async def fetch_current_user(self):
        self.calls.append(("fetch_current_user",))
        return await self._answer("fetch_current_user", GatewayResult(data=dict(self.user)))


class FakeCardAdapter:
    def __init__(self, status: str = "requires_confirmation"):
        self.calls: List[tuple] = []
        self.status = status
        self.confirm_results: List[ProcessorResult] = []

    async def retrieve_intent(self, listing, process_name, transaction):
        self.calls.append(("retrieve_intent", transaction.id))
        return ProcessorResult(value=PaymentIntent(id="pi_123", status=self.status, client_secret="pi_123_secret"))

    async def confirm(self, intent, card):
        self.calls.append(("confirm", intent.id, card.payment_method_id))
        if self.confirm_results:
            return self.confirm_results.pop(0)
        return ProcessorResult(value=Confirmation(intent=PaymentIntent(id=intent.id, status="requires_capture")))


@pytest.fixture
def listing() -> ListingRef:
    return make_listing()


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fake_card() -> FakeCardAdapter:
    return FakeCardAdapter()


@pytest.fixture
def storage() -> Dict[str, Any]:
    return {}


@pytest.fixture
def store(storage) -> SessionStore:
    return SessionStore(storage, clock=lambda: NOW)


@pytest.fixture
def app():
    return create_app()


@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c


# Simuler un shopper authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(app):
    app.dependency_overrides[require_user] = lambda: {"token": "fake-token"}
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)


@pytest.fixture
def factories():
    """Constructeurs de données de test (annonce, contexte, transaction)."""
    from types import SimpleNamespace
    return SimpleNamespace(
        listing=make_listing,
        context=make_context,
        tx=make_tx,
        now=NOW,
        gateway=FakeGateway,
        card=FakeCardAdapter,
    )

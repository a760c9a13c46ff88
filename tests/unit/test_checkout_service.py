from datetime import datetime, timezone

import pytest

from storefront.checkout.errors import SubmissionInProgress
from storefront.checkout.models import BookingDates, CardDetails, PaymentMethod
from storefront.checkout.orchestrator import CheckoutOrchestrator
from storefront.checkout.service import CheckoutRegistry, start_checkout
from storefront.checkout.session_store import SessionStore
from storefront.checkout.state_machine import CheckoutStep

NS = "CheckoutPage"


def _live_orchestrator(context, gateway, card):
    # Orchestrateur dont la dernière session (requête perdue) n'est plus lisible
    return CheckoutOrchestrator(context, gateway=gateway, session_store=SessionStore({}), card_adapter=card)


@pytest.mark.asyncio
async def test_start_recovers_transaction_committed_after_disconnect(factories, fake_gateway, fake_card, store):
    ctx = store.save(NS, factories.context(payment_method=PaymentMethod.CARD))
    registry = CheckoutRegistry()
    registry.put("sid-1", "listing-1", _live_orchestrator(
        ctx.model_copy(update={"transaction": factories.tx("tx-1")}), fake_gateway, fake_card,
    ))

    orch = await start_checkout(
        None, "listing-1",
        sid="sid-1", registry=registry, store=store, gateway=fake_gateway, card_adapter=fake_card,
    )

    assert orch.context.transaction_id == "tx-1"
    assert store.load(NS).transaction_id == "tx-1"
    assert orch.state.step == CheckoutStep.AWAITING_CARD_AUTHORIZATION

    state = await orch.authorize_card(CardDetails(payment_method_id="pm_1"))
    assert state.step == CheckoutStep.RESOLVED
    assert fake_gateway.count("initiate") == 0


@pytest.mark.asyncio
async def test_start_ignores_transaction_for_other_dates(factories, fake_gateway, fake_card, store):
    ctx = store.save(NS, factories.context(payment_method=PaymentMethod.CARD))
    other = factories.context(
        payment_method=PaymentMethod.CARD,
        booking_dates=BookingDates(
            start=datetime(2024, 7, 1, tzinfo=timezone.utc),
            end=datetime(2024, 7, 2, tzinfo=timezone.utc),
        ),
        transaction=factories.tx("tx-old"),
    )
    registry = CheckoutRegistry()
    registry.put("sid-1", "listing-1", _live_orchestrator(other, fake_gateway, fake_card))

    orch = await start_checkout(
        None, "listing-1",
        sid="sid-1", registry=registry, store=store, gateway=fake_gateway, card_adapter=fake_card,
    )

    assert orch.context.transaction_id is None
    assert store.load(NS).transaction_id is None
    assert ctx.transaction_id is None


def test_registry_refuses_replacing_a_submitting_checkout(factories, fake_gateway, fake_card):
    registry = CheckoutRegistry()
    busy = _live_orchestrator(factories.context(), fake_gateway, fake_card)
    busy._submitting = True
    registry.put("sid-1", "listing-1", busy)
    with pytest.raises(SubmissionInProgress):
        registry.put("sid-1", "listing-1", _live_orchestrator(factories.context(), fake_gateway, fake_card))

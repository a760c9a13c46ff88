from types import SimpleNamespace

import pytest
import stripe

from storefront.checkout.card_adapter import CardAuthorizationAdapter, PaymentIntent, payment_intent_id
from storefront.checkout.errors import ErrorKind
from storefront.checkout.models import CardDetails


def _fake_stripe(retrieve=None, confirm=None):
    calls = []

    def _retrieve(intent_id):
        calls.append(("retrieve", intent_id))
        return retrieve(intent_id) if callable(retrieve) else retrieve

    def _confirm(intent_id, **kwargs):
        calls.append(("confirm", intent_id, kwargs))
        return confirm(intent_id, **kwargs) if callable(confirm) else confirm

    return calls, SimpleNamespace(PaymentIntent=SimpleNamespace(retrieve=_retrieve, confirm=_confirm))


def test_payment_intent_id_from_protected_data(factories):
    assert payment_intent_id(factories.tx()) == "pi_123"
    assert payment_intent_id(factories.tx(with_intent=False)) is None


@pytest.mark.asyncio
async def test_retrieve_intent(factories):
    calls, client = _fake_stripe(retrieve={"id": "pi_123", "status": "requires_confirmation", "client_secret": "s"})
    adapter = CardAuthorizationAdapter(client)
    result = await adapter.retrieve_intent(factories.listing(), "default-booking", factories.tx())
    assert result.ok
    assert result.value.status == "requires_confirmation"
    assert calls == [("retrieve", "pi_123")]


@pytest.mark.asyncio
async def test_retrieve_intent_missing_id_is_unknown(factories):
    calls, client = _fake_stripe()
    result = await CardAuthorizationAdapter(client).retrieve_intent(factories.listing(), "default-booking", factories.tx(with_intent=False))
    assert result.error.kind == ErrorKind.UNKNOWN
    assert calls == []


@pytest.mark.asyncio
async def test_retrieve_intent_refused_for_cash_process(factories):
    _, client = _fake_stripe()
    with pytest.raises(ValueError):
        await CardAuthorizationAdapter(client).retrieve_intent(factories.listing(), "reloue-booking-cash", factories.tx())


@pytest.mark.asyncio
async def test_confirm_authorized_and_saves_card():
    calls, client = _fake_stripe(confirm={"id": "pi_123", "status": "requires_capture"})
    intent = PaymentIntent(id="pi_123", status="requires_confirmation")
    result = await CardAuthorizationAdapter(client).confirm(intent, CardDetails(payment_method_id="pm_1", save_for_future=True))
    assert result.ok
    assert result.value.intent.is_authorized
    assert calls == [("confirm", "pi_123", {"payment_method": "pm_1", "setup_future_usage": "off_session"})]


@pytest.mark.asyncio
async def test_confirm_requires_action_returns_next_action():
    next_action = {"type": "use_stripe_sdk"}
    _, client = _fake_stripe(confirm={"id": "pi_123", "status": "requires_action", "next_action": next_action})
    result = await CardAuthorizationAdapter(client).confirm(PaymentIntent(id="pi_123", status="requires_confirmation"), CardDetails(payment_method_id="pm_1"))
    assert result.ok
    assert result.value.requires_action
    assert result.value.next_action == next_action


@pytest.mark.asyncio
async def test_card_error_is_processor_declined():
    def _decline(intent_id, **kwargs):
        raise stripe.CardError("Votre carte a été refusée.", None, "card_declined")
    _, client = _fake_stripe(confirm=_decline)
    result = await CardAuthorizationAdapter(client).confirm(PaymentIntent(id="pi_123", status="requires_confirmation"), CardDetails(payment_method_id="pm_1"))
    assert result.error.kind == ErrorKind.PROCESSOR_DECLINED
    assert result.error.code == "card_declined"


@pytest.mark.asyncio
async def test_requires_payment_method_is_processor_declined():
    _, client = _fake_stripe(confirm={"id": "pi_123", "status": "requires_payment_method"})
    result = await CardAuthorizationAdapter(client).confirm(PaymentIntent(id="pi_123", status="requires_confirmation"), CardDetails(payment_method_id="pm_1"))
    assert result.error.kind == ErrorKind.PROCESSOR_DECLINED


@pytest.mark.asyncio
async def test_api_connection_error_is_unknown(factories):
    def _down(intent_id):
        raise stripe.APIConnectionError("réseau indisponible")
    _, client = _fake_stripe(retrieve=_down)
    result = await CardAuthorizationAdapter(client).retrieve_intent(factories.listing(), "default-booking", factories.tx())
    assert result.error.kind == ErrorKind.UNKNOWN

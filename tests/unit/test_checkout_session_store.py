import json
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from storefront.checkout.errors import StaleContextError
from storefront.checkout.models import BookingDates, ContactInfo, DeliveryMethod, PaymentMethod
from storefront.checkout.session_store import RedisSessionStorage, SessionStore, handle_page_data

NS = "CheckoutPage"


def test_round_trip_keeps_order_data_and_transaction(store, factories):
    ctx = factories.context(
        payment_method=PaymentMethod.CASH,
        quantity=2,
        transaction=factories.tx("tx-9", process_name="reloue-booking-cash", last_transition="transition/request"),
    ).model_copy(update={"contact": ContactInfo(name="A. Dupont", phone="0600000000")})

    store.save(NS, ctx)
    loaded = store.load(NS)

    assert loaded.order_data == ctx.order_data
    assert loaded.transaction == ctx.transaction
    assert loaded.contact == ctx.contact
    assert loaded.stored_at == factories.now


def test_stored_value_is_camel_case_json(store, storage, factories):
    store.save(NS, factories.context(payment_method=PaymentMethod.CARD))
    raw = json.loads(storage[NS])
    assert raw["orderData"]["paymentMethod"] == "card"
    assert "bookingDates" in raw["orderData"]


def test_missing_returns_none(store):
    assert store.load(NS) is None


def test_corrupt_data_returns_none(store, storage, caplog):
    storage[NS] = "{not json"
    with caplog.at_level("WARNING"):
        assert store.load(NS) is None
    assert "checkout.session corrupt" in caplog.text


def test_expired_data_returns_none(storage, factories):
    writer = SessionStore(storage, clock=lambda: factories.now)
    writer.save(NS, factories.context())
    reader = SessionStore(storage, max_age_seconds=3600, clock=lambda: factories.now + timedelta(hours=2))
    assert reader.load(NS) is None


def test_clear(store, storage, factories):
    store.save(NS, factories.context())
    store.clear(NS)
    assert NS not in storage
    store.clear(NS)


def test_booking_window_locked_once_transaction_exists(store, factories):
    ctx = factories.context(payment_method=PaymentMethod.CARD, transaction=factories.tx("tx-1"))
    store.save(NS, ctx)

    moved = ctx.order_data.model_copy(update={"booking_dates": BookingDates(
        start=datetime(2024, 7, 1, tzinfo=timezone.utc),
        end=datetime(2024, 7, 2, tzinfo=timezone.utc),
    )})
    with pytest.raises(StaleContextError):
        store.save(NS, ctx.model_copy(update={"order_data": moved}))


def test_delivery_method_and_notes_may_be_amended(store, factories):
    ctx = factories.context(payment_method=PaymentMethod.CARD, transaction=factories.tx("tx-1"))
    store.save(NS, ctx)
    amended = ctx.order_data.model_copy(update={
        "delivery_method": DeliveryMethod.PICKUP,
        "protected_data": {"note": "sonner deux fois"},
    })
    store.save(NS, ctx.model_copy(update={"order_data": amended}))
    assert store.load(NS).order_data.delivery_method == DeliveryMethod.PICKUP


def test_redis_storage_round_trip(factories):
    client = fakeredis.FakeRedis(decode_responses=True)
    storage = RedisSessionStorage(client, prefix="checkout:sid-1", ttl_seconds=60)
    store = SessionStore(storage, clock=lambda: factories.now)

    store.save(NS, factories.context(payment_method=PaymentMethod.CARD))

    assert client.ttl("checkout:sid-1:CheckoutPage") > 0
    assert list(storage) == [NS]
    assert store.load(NS).order_data.payment_method == PaymentMethod.CARD
    store.clear(NS)
    assert len(storage) == 0


def test_handle_page_data_fresh_data_wins(store, factories):
    store.save(NS, factories.context(payment_method=PaymentMethod.CASH, quantity=3))
    fresh = factories.context(quantity=1)
    ctx = handle_page_data(fresh, store, NS)
    assert ctx.order_data.quantity == 1
    assert store.load(NS).order_data.quantity == 1


def test_handle_page_data_reload_returns_stored(store, factories):
    store.save(NS, factories.context(quantity=3))
    assert handle_page_data(None, store, NS).order_data.quantity == 3


def test_handle_page_data_keeps_initiated_transaction_for_same_selection(store, factories):
    store.save(NS, factories.context(payment_method=PaymentMethod.CARD, transaction=factories.tx("tx-1")))
    ctx = handle_page_data(factories.context(), store, NS)
    assert ctx.transaction_id == "tx-1"

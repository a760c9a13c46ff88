from datetime import datetime, timedelta, timezone

import pytest

from storefront.checkout.errors import UnknownProcessError
from storefront.checkout.processes import (
    DEFAULT_BOOKING,
    RELOUE_BOOKING_CASH,
    UNKNOWN_STATE,
    get_process,
    process_name_from_alias,
    resolve_latest_process_name,
)

NOW = datetime(2024, 5, 20, 12, 0, tzinfo=timezone.utc)


def test_privileged_flag_belongs_to_transition():
    assert DEFAULT_BOOKING.is_privileged("transition/request-payment")
    assert DEFAULT_BOOKING.is_privileged("transition/request-payment-after-inquiry")
    assert not DEFAULT_BOOKING.is_privileged("transition/confirm-payment")
    assert not RELOUE_BOOKING_CASH.is_privileged("transition/request")


def test_can_transition_follows_graph():
    assert DEFAULT_BOOKING.can_transition(None, "transition/request-payment")
    assert DEFAULT_BOOKING.can_transition("transition/inquire", "transition/request-payment-after-inquiry")
    assert DEFAULT_BOOKING.can_transition("transition/request-payment", "transition/confirm-payment")
    assert not DEFAULT_BOOKING.can_transition("transition/confirm-payment", "transition/confirm-payment")
    assert not DEFAULT_BOOKING.can_transition(None, "transition/unknown")


def test_submitted_and_pending_payment():
    assert not DEFAULT_BOOKING.is_submitted("transition/request-payment")
    assert DEFAULT_BOOKING.is_submitted("transition/confirm-payment")
    assert DEFAULT_BOOKING.is_submitted("transition/accept")
    assert not DEFAULT_BOOKING.is_submitted("transition/expire-payment")
    assert DEFAULT_BOOKING.has_passed_pending_payment("transition/confirm-payment")
    assert not DEFAULT_BOOKING.has_passed_pending_payment("transition/request-payment")
    assert RELOUE_BOOKING_CASH.is_submitted("transition/request")
    assert not RELOUE_BOOKING_CASH.has_passed_pending_payment("transition/request")


def test_payment_window_is_fifteen_minutes():
    last = "transition/request-payment"
    assert not DEFAULT_BOOKING.has_payment_expired(last, NOW - timedelta(minutes=14), NOW)
    assert DEFAULT_BOOKING.has_payment_expired(last, NOW - timedelta(minutes=15), NOW)
    assert DEFAULT_BOOKING.has_payment_expired("transition/expire-payment", NOW, NOW)
    assert not RELOUE_BOOKING_CASH.has_payment_expired("transition/request", NOW - timedelta(days=2), NOW)


def test_legacy_process_names_resolved():
    assert resolve_latest_process_name("flex-default-process") == "default-booking"
    assert resolve_latest_process_name("flex-product-default-process") == "default-purchase"
    assert process_name_from_alias("flex-hourly-default-process/release-1") == "default-booking"
    assert get_process("flex-default-process") is DEFAULT_BOOKING


def test_unknown_process_raises():
    with pytest.raises(UnknownProcessError):
        get_process("nope")
    with pytest.raises(UnknownProcessError):
        get_process(None)


def test_operator_and_cancel_transitions_are_modelled():
    assert DEFAULT_BOOKING.is_submitted("transition/cancel")
    assert DEFAULT_BOOKING.is_submitted("transition/operator-accept")
    assert DEFAULT_BOOKING.is_submitted("transition/review-1-by-customer")
    assert RELOUE_BOOKING_CASH.is_submitted("transition/operator-decline")


def test_unmodelled_transition_is_treated_as_past_submission():
    last = "transition/some-custom-operator-step"
    assert DEFAULT_BOOKING.state_after(last) == UNKNOWN_STATE
    assert DEFAULT_BOOKING.is_submitted(last)
    assert DEFAULT_BOOKING.has_passed_pending_payment(last)
    assert not DEFAULT_BOOKING.can_transition(last, "transition/confirm-payment")
    assert not DEFAULT_BOOKING.has_payment_expired(last, NOW - timedelta(days=1), NOW)

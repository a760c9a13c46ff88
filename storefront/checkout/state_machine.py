"""
Machine à états du checkout.
État = valeur immuable (CheckoutState); next_state est une fonction pure et exhaustive:
tout couple (étape, événement) absent de la table lève IllegalTransition.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional

from .errors import CheckoutError, IllegalTransition
from .models import PaymentMethod


class CheckoutStep(str, Enum):
    CHOOSING_METHOD = "ChoosingMethod"
    PREVIEWING_PRICE = "PreviewingPrice"
    AWAITING_CARD_AUTHORIZATION = "AwaitingCardAuthorization"
    COLLECTING_CONTACT_INFO = "CollectingContactInfo"
    SUBMITTING = "Submitting"
    RESOLVED = "Resolved"
    FAILED = "Failed"


class CheckoutEvent(str, Enum):
    CHOOSE_CARD = "choose_card"
    CHOOSE_CASH = "choose_cash"
    CHANGE_METHOD = "change_method"
    PREVIEW_READY = "preview_ready"
    PREVIEW_FAILED = "preview_failed"
    CARD_AUTHORIZED = "card_authorized"
    AUTHORIZATION_FAILED = "authorization_failed"
    CONTACT_COLLECTED = "contact_collected"
    SUBMIT_SUCCEEDED = "submit_succeeded"
    SUBMIT_FAILED = "submit_failed"
    ALREADY_SUBMITTED = "already_submitted"
    FATAL_ERROR = "fatal_error"
    ABANDON = "abandon"


S = CheckoutStep
E = CheckoutEvent

# SUBMITTING + SUBMIT_FAILED: retour à l'étape d'origine, résolu dans next_state
_ORIGIN = object()

_TABLE: Dict[CheckoutStep, Dict[CheckoutEvent, Any]] = {
    S.CHOOSING_METHOD: {
        E.CHOOSE_CARD: S.PREVIEWING_PRICE,
        E.CHOOSE_CASH: S.COLLECTING_CONTACT_INFO,
        E.ALREADY_SUBMITTED: S.RESOLVED,
        E.FATAL_ERROR: S.FAILED,
        E.ABANDON: S.FAILED,
    },
    S.PREVIEWING_PRICE: {
        E.PREVIEW_READY: S.AWAITING_CARD_AUTHORIZATION,
        E.PREVIEW_FAILED: S.PREVIEWING_PRICE,
        E.CHANGE_METHOD: S.CHOOSING_METHOD,
        E.ALREADY_SUBMITTED: S.RESOLVED,
        E.FATAL_ERROR: S.FAILED,
        E.ABANDON: S.FAILED,
    },
    S.AWAITING_CARD_AUTHORIZATION: {
        E.PREVIEW_READY: S.AWAITING_CARD_AUTHORIZATION,
        E.PREVIEW_FAILED: S.AWAITING_CARD_AUTHORIZATION,
        E.AUTHORIZATION_FAILED: S.AWAITING_CARD_AUTHORIZATION,
        E.CARD_AUTHORIZED: S.SUBMITTING,
        E.CHANGE_METHOD: S.CHOOSING_METHOD,
        E.ALREADY_SUBMITTED: S.RESOLVED,
        E.FATAL_ERROR: S.FAILED,
        E.ABANDON: S.FAILED,
    },
    S.COLLECTING_CONTACT_INFO: {
        E.PREVIEW_READY: S.COLLECTING_CONTACT_INFO,
        E.PREVIEW_FAILED: S.COLLECTING_CONTACT_INFO,
        E.CONTACT_COLLECTED: S.SUBMITTING,
        E.CHANGE_METHOD: S.CHOOSING_METHOD,
        E.ALREADY_SUBMITTED: S.RESOLVED,
        E.FATAL_ERROR: S.FAILED,
        E.ABANDON: S.FAILED,
    },
    S.SUBMITTING: {
        E.SUBMIT_SUCCEEDED: S.RESOLVED,
        E.SUBMIT_FAILED: _ORIGIN,
        E.FATAL_ERROR: S.FAILED,
    },
    S.RESOLVED: {},
    S.FAILED: {},
}

_FAILURE_EVENTS = {E.PREVIEW_FAILED, E.AUTHORIZATION_FAILED, E.SUBMIT_FAILED, E.FATAL_ERROR}


@dataclass(frozen=True)
class CheckoutState:
    step: CheckoutStep = CheckoutStep.CHOOSING_METHOD
    payment_method: PaymentMethod = PaymentMethod.UNSET
    error: Optional[CheckoutError] = None
    order_id: Optional[str] = None
    next_action: Optional[Dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.step in (CheckoutStep.RESOLVED, CheckoutStep.FAILED)


def _origin_step(method: PaymentMethod) -> CheckoutStep:
    if method == PaymentMethod.CARD:
        return CheckoutStep.AWAITING_CARD_AUTHORIZATION
    if method == PaymentMethod.CASH:
        return CheckoutStep.COLLECTING_CONTACT_INFO
    raise IllegalTransition(CheckoutStep.SUBMITTING, CheckoutEvent.SUBMIT_FAILED)


def next_state(
    state: CheckoutState,
    event: CheckoutEvent,
    error: Optional[CheckoutError] = None,
    order_id: Optional[str] = None,
    next_action: Optional[Dict[str, Any]] = None,
) -> CheckoutState:
    target = _TABLE[state.step].get(event)
    if target is None:
        raise IllegalTransition(state.step, event)
    if target is _ORIGIN:
        target = _origin_step(state.payment_method)

    method = state.payment_method
    if event == E.CHOOSE_CARD:
        method = PaymentMethod.CARD
    elif event == E.CHOOSE_CASH:
        method = PaymentMethod.CASH
    elif event == E.CHANGE_METHOD:
        method = PaymentMethod.UNSET

    return replace(
        state,
        step=target,
        payment_method=method,
        error=error if event in _FAILURE_EVENTS else None,
        order_id=order_id if order_id is not None else state.order_id,
        next_action=next_action,
    )

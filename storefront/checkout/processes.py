"""
Métadonnées des process de transaction.

- Graphe des transitions (état source -> état cible) par process
- Drapeau 'privileged' porté par la transition: une transition privilégiée
  passe obligatoirement par l'endpoint serveur (jamais par le token client)
- Résolution des anciens noms de process et calcul d'expiration du paiement
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

from .errors import UnknownProcessError

INITIAL_STATE = "initial"
UNKNOWN_STATE = "unknown"


@dataclass(frozen=True)
class Transition:
    name: str
    from_state: str
    to_state: str
    privileged: bool = False


@dataclass(frozen=True)
class Process:
    name: str
    alias: str
    # Ordre chronologique des états (sert à savoir si un état est dépassé)
    states: Tuple[str, ...]
    transitions: Tuple[Transition, ...]
    request_transition: str
    confirm_transition: Optional[str] = None
    inquire_transition: Optional[str] = None
    request_after_inquiry_transition: Optional[str] = None
    pending_payment_state: Optional[str] = None
    payment_expired_state: Optional[str] = None
    submitted_state: str = ""
    payment_window: timedelta = field(default=timedelta(minutes=15))
    requires_card: bool = True

    def transition(self, name: str) -> Optional[Transition]:
        return next((t for t in self.transitions if t.name == name), None)

    def is_privileged(self, name: str) -> bool:
        t = self.transition(name)
        return bool(t and t.privileged)

    def state_after(self, last_transition: Optional[str]) -> str:
        """
        État atteint après la dernière transition. Une transition absente du
        graphe (prise par l'opérateur ou l'autre partie) donne UNKNOWN_STATE.
        """
        if not last_transition:
            return INITIAL_STATE
        t = self.transition(last_transition)
        if t is None:
            return UNKNOWN_STATE
        return t.to_state

    def can_transition(self, last_transition: Optional[str], name: str) -> bool:
        t = self.transition(name)
        if t is None:
            return False
        return t.from_state == self.state_after(last_transition)

    def has_passed_state(self, last_transition: Optional[str], state: str) -> bool:
        current = self.state_after(last_transition)
        if current == UNKNOWN_STATE:
            return True
        return self.states.index(current) > self.states.index(state)

    def has_passed_pending_payment(self, last_transition: Optional[str]) -> bool:
        if not self.pending_payment_state:
            return False
        return self.has_passed_state(last_transition, self.pending_payment_state)

    def is_submitted(self, last_transition: Optional[str]) -> bool:
        """
        Vrai si la transaction a atteint (ou dépassé) l'état de commande soumise.
        État inconnu: la commande a évolué hors du checkout, considérée soumise.
        """
        current = self.state_after(last_transition)
        if current == UNKNOWN_STATE:
            return True
        if current == self.payment_expired_state:
            return False
        return self.states.index(current) >= self.states.index(self.submitted_state)

    def has_payment_expired(self, last_transition: Optional[str], last_transitioned_at: Optional[datetime], now: datetime) -> bool:
        if not self.payment_expired_state:
            return False
        current = self.state_after(last_transition)
        if current == self.payment_expired_state:
            return True
        if current != self.pending_payment_state or last_transitioned_at is None:
            return False
        if last_transitioned_at.tzinfo is None:
            last_transitioned_at = last_transitioned_at.replace(tzinfo=timezone.utc)
        return now - last_transitioned_at >= self.payment_window


def _t(name: str, src: str, dst: str, privileged: bool = False) -> Transition:
    return Transition(name=f"transition/{name}", from_state=src, to_state=dst, privileged=privileged)


DEFAULT_BOOKING = Process(
    name="default-booking",
    alias="default-booking/release-1",
    states=(
        INITIAL_STATE, "inquiry", "pending-payment", "preauthorized",
        "accepted", "declined", "expired", "cancelled", "delivered", "reviewed", "payment-expired",
    ),
    transitions=(
        _t("inquire", INITIAL_STATE, "inquiry"),
        _t("request-payment", INITIAL_STATE, "pending-payment", privileged=True),
        _t("request-payment-after-inquiry", "inquiry", "pending-payment", privileged=True),
        _t("confirm-payment", "pending-payment", "preauthorized"),
        _t("expire-payment", "pending-payment", "payment-expired"),
        _t("accept", "preauthorized", "accepted"),
        _t("operator-accept", "preauthorized", "accepted"),
        _t("decline", "preauthorized", "declined"),
        _t("operator-decline", "preauthorized", "declined"),
        _t("expire", "preauthorized", "expired"),
        _t("cancel", "accepted", "cancelled"),
        _t("complete", "accepted", "delivered"),
        _t("operator-complete", "accepted", "delivered"),
        _t("review", "delivered", "reviewed"),
        _t("review-1-by-customer", "delivered", "reviewed"),
        _t("review-1-by-provider", "delivered", "reviewed"),
        _t("expire-review-period", "delivered", "reviewed"),
    ),
    request_transition="transition/request-payment",
    confirm_transition="transition/confirm-payment",
    inquire_transition="transition/inquire",
    request_after_inquiry_transition="transition/request-payment-after-inquiry",
    pending_payment_state="pending-payment",
    payment_expired_state="payment-expired",
    submitted_state="preauthorized",
)

DEFAULT_PURCHASE = Process(
    name="default-purchase",
    alias="default-purchase/release-1",
    states=(
        INITIAL_STATE, "inquiry", "pending-payment", "purchased",
        "canceled", "delivered", "received", "completed", "reviewed", "payment-expired",
    ),
    transitions=(
        _t("inquire", INITIAL_STATE, "inquiry"),
        _t("request-payment", INITIAL_STATE, "pending-payment", privileged=True),
        _t("request-payment-after-inquiry", "inquiry", "pending-payment", privileged=True),
        _t("confirm-payment", "pending-payment", "purchased"),
        _t("expire-payment", "pending-payment", "payment-expired"),
        _t("cancel", "purchased", "canceled"),
        _t("mark-delivered", "purchased", "delivered"),
        _t("operator-mark-delivered", "purchased", "delivered"),
        _t("mark-received", "delivered", "received"),
        _t("auto-complete", "received", "completed"),
        _t("review", "completed", "reviewed"),
        _t("review-1-by-customer", "completed", "reviewed"),
        _t("review-1-by-provider", "completed", "reviewed"),
    ),
    request_transition="transition/request-payment",
    confirm_transition="transition/confirm-payment",
    inquire_transition="transition/inquire",
    request_after_inquiry_transition="transition/request-payment-after-inquiry",
    pending_payment_state="pending-payment",
    payment_expired_state="payment-expired",
    submitted_state="purchased",
)

# Réservation payée en espèces à la remise: aucune étape de paiement en ligne
RELOUE_BOOKING_CASH = Process(
    name="reloue-booking-cash",
    alias="reloue-booking-cash/release-1",
    states=(INITIAL_STATE, "pending", "accepted", "declined", "expired", "cancelled", "completed"),
    transitions=(
        _t("request", INITIAL_STATE, "pending"),
        _t("accept", "pending", "accepted"),
        _t("decline", "pending", "declined"),
        _t("expire", "pending", "expired"),
        _t("operator-accept", "pending", "accepted"),
        _t("operator-decline", "pending", "declined"),
        _t("cancel", "accepted", "cancelled"),
        _t("complete", "accepted", "completed"),
    ),
    request_transition="transition/request",
    submitted_state="pending",
    requires_card=False,
)

PROCESSES: Dict[str, Process] = {p.name: p for p in (DEFAULT_BOOKING, DEFAULT_PURCHASE, RELOUE_BOOKING_CASH)}

# Anciens noms de process encore présents sur des annonces existantes
_LEGACY_NAMES = {
    "flex-default-process": "default-booking",
    "flex-hourly-default-process": "default-booking",
    "flex-booking-default-process": "default-booking",
    "flex-product-default-process": "default-purchase",
}


def resolve_latest_process_name(name: str) -> str:
    return _LEGACY_NAMES.get(name, name)


def process_name_from_alias(alias: Optional[str]) -> Optional[str]:
    if not alias:
        return None
    return resolve_latest_process_name(alias.split("/")[0])


def get_process(name: Optional[str]) -> Process:
    resolved = resolve_latest_process_name(name or "")
    try:
        return PROCESSES[resolved]
    except KeyError:
        raise UnknownProcessError(f"Process inconnu: {name!r}") from None

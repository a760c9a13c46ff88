"""
Taxonomie d'erreurs du checkout.

- ErrorKind: catégories d'erreurs renvoyées par la gateway et le processeur de paiement,
  chacune associée au comportement attendu côté shopper (action).
- CheckoutError: erreur typée *retournée* (jamais levée) à l'orchestrateur.
- GatewayResult / ProcessorResult: résultats typés des appels distants.
- Exceptions locales: erreurs de programmation ou d'usage de l'état (levées).
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION_FAILED = "ValidationFailed"
    LISTING_NOT_FOUND = "ListingNotFound"
    INVALID_TRANSITION = "InvalidTransition"
    PERMISSION_DENIED = "PermissionDenied"
    PROCESSOR_DECLINED = "ProcessorDeclined"
    RATE_LIMITED = "RateLimited"
    PAYMENT_EXPIRED = "PaymentExpired"
    UNKNOWN = "Unknown"

    @property
    def action(self) -> str:
        return _ACTIONS[self]

    @property
    def is_fatal(self) -> bool:
        """Fatal pour la tentative en cours: sortie forcée vers la fiche annonce."""
        return _ACTIONS[self] == "exit_to_listing"


_ACTIONS = {
    ErrorKind.VALIDATION_FAILED: "show_inline",
    ErrorKind.PROCESSOR_DECLINED: "show_inline",
    ErrorKind.LISTING_NOT_FOUND: "exit_to_listing",
    ErrorKind.PERMISSION_DENIED: "exit_to_listing",
    ErrorKind.PAYMENT_EXPIRED: "exit_to_listing",
    ErrorKind.INVALID_TRANSITION: "refresh_transaction",
    ErrorKind.RATE_LIMITED: "retry",
    ErrorKind.UNKNOWN: "retry",
}


@dataclass(frozen=True)
class CheckoutError:
    kind: ErrorKind
    message: str = ""
    status_code: Optional[int] = None
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "action": self.kind.action,
            "code": self.code,
        }


@dataclass(frozen=True)
class GatewayResult:
    """Résultat d'un appel à l'API transactions: transaction ou erreur, jamais les deux."""

    transaction: Any = None
    error: Optional[CheckoutError] = None
    data: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str = "", status_code: Optional[int] = None, code: Optional[str] = None) -> "GatewayResult":
        return cls(error=CheckoutError(kind=kind, message=message, status_code=status_code, code=code))


@dataclass(frozen=True)
class ProcessorResult:
    """Résultat d'un appel Stripe (intent récupéré ou confirmation)."""

    value: Any = None
    error: Optional[CheckoutError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str = "", code: Optional[str] = None) -> "ProcessorResult":
        return cls(error=CheckoutError(kind=kind, message=message, code=code))


class OrderParamsError(ValueError):
    """Contexte de checkout mal formé: erreur de programmation, levée à l'appel."""


class StaleContextError(ValueError):
    """Modification locale interdite d'un contexte déjà lié à une transaction."""


class IllegalTransition(RuntimeError):
    """Couple (état, événement) non prévu par la machine à états."""

    def __init__(self, step, event):
        self.step = step
        self.event = event
        super().__init__(f"Transition interdite: {getattr(step, 'value', step)} + {getattr(event, 'value', event)}")


class SubmissionInProgress(RuntimeError):
    """Une soumission est déjà en cours pour cette tentative de checkout."""


class UnknownProcessError(ValueError):
    """Process de transaction absent des métadonnées connues."""

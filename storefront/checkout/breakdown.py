"""
Lecture du détail de prix d'une transaction (réelle ou spéculative).
Projection en lecture seule: aucun calcul de prix autre que les sommes d'affichage.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .models import LineItem, Transaction

logger = logging.getLogger(__name__)

# Devises sans sous-unité
_ZERO_DECIMAL_CURRENCIES = {"JPY", "KRW", "CLP", "VND", "XOF", "XAF"}


def subunit_divisor(currency: str) -> int:
    return 1 if (currency or "").upper() in _ZERO_DECIMAL_CURRENCIES else 100


def format_money(amount: int, currency: str) -> str:
    value = Decimal(amount) / subunit_divisor(currency)
    if subunit_divisor(currency) == 1:
        return f"{value:.0f} {currency.upper()}"
    return f"{value:.2f} {currency.upper()}"


@dataclass(frozen=True)
class BreakdownLine:
    code: str
    amount: int
    quantity: Optional[float] = None
    reversal: bool = False


@dataclass(frozen=True)
class PriceBreakdown:
    currency: str
    lines: List[BreakdownLine] = field(default_factory=list)
    subtotal: int = 0
    total: int = 0
    price_variant_name: Optional[str] = None
    booking_start: Optional[datetime] = None
    booking_end: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "lines": [
                {"code": l.code, "amount": l.amount, "quantity": l.quantity, "reversal": l.reversal}
                for l in self.lines
            ],
            "subtotal": self.subtotal,
            "total": self.total,
            "formattedTotal": format_money(self.total, self.currency),
            "priceVariantName": self.price_variant_name,
            "bookingStart": self.booking_start.isoformat() if self.booking_start else None,
            "bookingEnd": self.booking_end.isoformat() if self.booking_end else None,
        }


def _visible(item: LineItem, role: str) -> bool:
    return role in item.include_for


def read_breakdown(transaction: Optional[Transaction], role: str = "customer") -> Optional[PriceBreakdown]:
    """
    Retourne None si la transaction n'a pas de lignes (aperçu pas encore reçu)
    ou si ses lignes mélangent plusieurs devises.
    Total: payinTotal si fourni, sinon somme des lignes visibles par le rôle.
    """
    if transaction is None or not transaction.line_items:
        return None

    items = [li for li in transaction.line_items if _visible(li, role)]
    currencies = {li.amount.currency.upper() for li in items}
    if transaction.payin_total is not None and role == "customer":
        currencies.add(transaction.payin_total.currency.upper())
    if len(currencies) > 1:
        # Détail non affichable: le reste du statut reste servi
        logger.warning("checkout.breakdown mixed_currencies tx_id=%s currencies=%s", transaction.id, sorted(currencies))
        return None
    currency = currencies.pop() if currencies else (transaction.payin_total.currency.upper() if transaction.payin_total else "")

    lines = [BreakdownLine(code=li.code, amount=li.amount.amount, quantity=li.quantity, reversal=li.reversal) for li in items]
    # Sous-total: lignes hors commissions et remboursements
    subtotal = sum(
        (Decimal(l.amount) for l in lines if not l.reversal and "commission" not in l.code),
        Decimal(0),
    )
    total = sum((Decimal(l.amount) for l in lines), Decimal(0))
    if transaction.payin_total is not None and role == "customer":
        total = Decimal(transaction.payin_total.amount)

    variant = transaction.protected_data.get("priceVariantName")
    booking = transaction.booking
    return PriceBreakdown(
        currency=currency,
        lines=lines,
        subtotal=int(subtotal),
        total=int(total),
        price_variant_name=variant,
        booking_start=booking.start if booking else None,
        booking_end=booking.end if booking else None,
    )

"""
Construction des paramètres de commande envoyés à l'API transactions.
Fonction pure et déterministe: même contexte + mêmes extras => même dict, même JSON.
"""
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .errors import OrderParamsError
from .models import CheckoutContext, DeliveryMethod, PaymentMethod, PriceVariant

# Clés posées par le builder, jamais écrasables par les extras de paiement
_OWNED_KEYS = frozenset({
    "listingId", "bookingStart", "bookingEnd", "quantity", "deliveryMethod",
    "priceVariantName", "protectedData",
})
_OWNED_PROTECTED_KEYS = frozenset({"paymentMethod", "deliveryMethod", "unitType", "listingType"})


def _iso_utc(value: datetime) -> str:
    # Format ISO-8601 UTC à la milliseconde: 2025-06-12T14:00:00.000Z
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def prefix_price_variant_properties(variant: Optional[PriceVariant]) -> Dict[str, Any]:
    """{"name": "x", "priceInSubunits": 100} -> {"priceVariantName": "x", "priceVariantPriceInSubunits": 100}"""
    if variant is None:
        return {}
    data = variant.model_dump(by_alias=True, exclude_none=True)
    return {f"priceVariant{key[0].upper()}{key[1:]}": value for key, value in data.items()}


def build_order_params(context: CheckoutContext, payment_extras: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    order = context.order_data
    if order.payment_method == PaymentMethod.UNSET:
        raise OrderParamsError("Moyen de paiement non choisi")
    if order.quantity is not None and order.quantity <= 0:
        raise OrderParamsError(f"Quantité invalide: {order.quantity}")

    variant = None
    if order.price_variant_name:
        variant = context.listing.find_price_variant(order.price_variant_name)
        if variant is None:
            raise OrderParamsError(f"Variante de prix inconnue: {order.price_variant_name}")

    extras = dict(payment_extras or {})
    extra_protected = extras.pop("protectedData", None) or {}
    clash = (set(extras) & _OWNED_KEYS) | (set(extra_protected) & _OWNED_PROTECTED_KEYS)
    if clash:
        raise OrderParamsError(f"Extras de paiement en conflit avec le builder: {sorted(clash)}")

    params: Dict[str, Any] = {"listingId": context.listing.id}

    dates = order.booking_dates
    if dates is not None and dates.is_complete:
        params["bookingStart"] = _iso_utc(dates.start)
        params["bookingEnd"] = _iso_utc(dates.end)

    if order.quantity is not None:
        params["quantity"] = order.quantity

    delivery = order.delivery_method if order.delivery_method not in (None, DeliveryMethod.NONE) else None
    if delivery is not None:
        params["deliveryMethod"] = delivery.value

    if variant is not None:
        params["priceVariantName"] = variant.name

    protected: Dict[str, Any] = {}
    if context.listing.unit_type:
        protected["unitType"] = context.listing.unit_type
    if context.listing.listing_type:
        protected["listingType"] = context.listing.listing_type
    protected.update(order.protected_data)
    protected.update(prefix_price_variant_properties(variant))
    if delivery is not None:
        protected["deliveryMethod"] = delivery.value
    protected["paymentMethod"] = order.payment_method.value
    protected.update(extra_protected)

    params["protectedData"] = protected
    params.update(extras)
    return params


def canonical_json(params: Dict[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

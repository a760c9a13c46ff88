"""
Modèles du checkout (pydantic v2).
- Sérialisation JSON en camelCase (forme stockée en session et échangée avec l'API),
  attributs Python en snake_case.
- CheckoutContext est l'agrégat racine d'une tentative de checkout.
"""
import re
import unicodedata
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PositiveInt, field_validator, model_validator
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PaymentMethod(str, Enum):
    UNSET = "unset"
    CARD = "card"
    CASH = "cash"


class DeliveryMethod(str, Enum):
    NONE = "none"
    SHIPPING = "shipping"
    PICKUP = "pickup"


class Money(_CamelModel):
    # Montant en sous-unités (centimes)
    amount: int
    currency: str


class Author(_CamelModel):
    id: str
    display_name: Optional[str] = None


class PriceVariant(_CamelModel):
    name: str
    price_in_subunits: Optional[int] = None
    billing_unit: Optional[str] = None
    booking_length_in_minutes: Optional[int] = None


class ListingRef(_CamelModel):
    """Instantané en lecture seule de l'annonce, pris à l'ouverture du checkout."""

    id: str
    title: str = ""
    author: Optional[Author] = None
    images: List[str] = Field(default_factory=list)
    location: Optional[Dict[str, Any]] = None
    price: Optional[Money] = None
    price_variants: List[PriceVariant] = Field(default_factory=list)
    transaction_process_alias: Optional[str] = None
    listing_type: Optional[str] = None
    unit_type: Optional[str] = None
    time_zone: Optional[str] = None
    deposit_note: Optional[str] = None
    extra_features: Optional[str] = None

    @property
    def slug(self) -> str:
        text = unicodedata.normalize("NFKD", self.title or "").encode("ascii", "ignore").decode("ascii")
        slug = re.sub(r"[^a-zA-Z0-9]+", "-", text).strip("-").lower()
        return slug or "no-slug"

    def find_price_variant(self, name: str) -> Optional[PriceVariant]:
        return next((pv for pv in self.price_variants if pv.name == name), None)


class BookingDates(_CamelModel):
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.start is not None and self.end is not None

    @model_validator(mode="after")
    def _check_order(self):
        if self.is_complete and self.end <= self.start:
            raise ValueError("bookingDates.end doit être postérieure à bookingDates.start")
        return self


class OrderData(_CamelModel):
    booking_dates: Optional[BookingDates] = None
    quantity: Optional[PositiveInt] = None
    delivery_method: Optional[DeliveryMethod] = None
    price_variant_name: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.UNSET
    # Notes du shopper modifiables par la transition suivante
    protected_data: Dict[str, Any] = Field(default_factory=dict)


class LineItem(_CamelModel):
    code: str
    quantity: Optional[float] = None
    unit_price: Optional[Money] = None
    line_total: Money
    include_for: List[str] = Field(default_factory=list)
    reversal: bool = False

    @property
    def amount(self) -> Money:
        return self.line_total


class Booking(_CamelModel):
    id: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None


class Transaction(_CamelModel):
    id: Optional[str] = None
    process_name: Optional[str] = None
    last_transition: Optional[str] = None
    last_transitioned_at: Optional[datetime] = None
    line_items: List[LineItem] = Field(default_factory=list)
    payin_total: Optional[Money] = None
    protected_data: Dict[str, Any] = Field(default_factory=dict)
    booking: Optional[Booking] = None


class ContactInfo(_CamelModel):
    """Coordonnées saisies par le shopper pour un paiement en espèces."""

    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    note: Optional[str] = None

    @field_validator("name", "phone")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("champ obligatoire")
        return v

    def as_payment_extras(self) -> Dict[str, Any]:
        protected: Dict[str, Any] = {"contactName": self.name, "contactPhone": self.phone}
        if self.note and self.note.strip():
            protected["note"] = self.note.strip()
        return {"protectedData": protected}


class CardDetails(_CamelModel):
    """Moyen de paiement Stripe déjà tokenisé côté navigateur (pm_...)."""

    payment_method_id: str = Field(min_length=1)
    save_for_future: bool = False
    message: Optional[str] = None

    def as_payment_extras(self) -> Dict[str, Any]:
        extras: Dict[str, Any] = {"stripePaymentMethodId": self.payment_method_id}
        if self.save_for_future:
            extras["setupPaymentMethodForSaving"] = True
        if self.message and self.message.strip():
            extras["protectedData"] = {"messageToSeller": self.message.strip()}
        return extras


class CheckoutContext(_CamelModel):
    listing: ListingRef
    order_data: OrderData = Field(default_factory=OrderData)
    transaction: Optional[Transaction] = None
    contact: Optional[ContactInfo] = None
    stored_at: Optional[datetime] = None

    @property
    def transaction_id(self) -> Optional[str]:
        return self.transaction.id if self.transaction else None


class OrderDataChanges(_CamelModel):
    """Modifications de paramètres demandées pendant le checkout (aperçu de prix)."""

    booking_dates: Optional[BookingDates] = None
    quantity: Optional[PositiveInt] = None
    delivery_method: Optional[DeliveryMethod] = None
    price_variant_name: Optional[str] = None
    protected_data: Optional[Dict[str, Any]] = None


class TransitionRequest(_CamelModel):
    """
    Requête envoyée à la gateway.
    - Forme création: process_alias + transition + params (aucune transaction existante)
    - Forme continuation: transaction_id + transition + params
    Les deux formes sont exclusives.
    """

    transition: str
    params: Dict[str, Any] = Field(default_factory=dict)
    process_name: str
    process_alias: Optional[str] = None
    transaction_id: Optional[str] = None
    last_transition: Optional[str] = None

    @model_validator(mode="after")
    def _exclusive_forms(self):
        if bool(self.process_alias) == bool(self.transaction_id):
            raise ValueError("TransitionRequest: process_alias XOR transaction_id requis")
        return self

    @property
    def is_creation(self) -> bool:
        return self.transaction_id is None

    @classmethod
    def creation(cls, process_alias: str, transition: str, params: Dict[str, Any]) -> "TransitionRequest":
        return cls(
            process_alias=process_alias,
            process_name=process_alias.split("/")[0],
            transition=transition,
            params=params,
        )

    @classmethod
    def continuation(
        cls,
        transaction: Transaction,
        process_name: str,
        transition: str,
        params: Dict[str, Any],
    ) -> "TransitionRequest":
        return cls(
            transaction_id=transaction.id,
            process_name=process_name,
            transition=transition,
            params=params,
            last_transition=transaction.last_transition,
        )

    def body(self) -> Dict[str, Any]:
        if self.is_creation:
            return {"processAlias": self.process_alias, "transition": self.transition, "params": self.params}
        return {"id": self.transaction_id, "transition": self.transition, "params": self.params}


class StartCheckoutIn(_CamelModel):
    """Données transmises par la fiche annonce; absentes lors d'un rechargement de page."""

    listing: ListingRef
    order_data: OrderData = Field(default_factory=OrderData)


class PaymentMethodIn(_CamelModel):
    method: PaymentMethod

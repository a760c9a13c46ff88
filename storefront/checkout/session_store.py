"""
Persistance de la tentative de checkout en cours (survit à un rechargement de page).

- Stockage: mapping clé/valeur (dict de session Starlette ou RedisSessionStorage)
- Valeur: JSON camelCase du CheckoutContext, horodaté (storedAt)
- Données absentes, corrompues ou expirées: None (warning), jamais d'exception
- L'aperçu spéculatif n'est jamais stocké
"""
import json
import logging
from collections.abc import MutableMapping
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Optional

from pydantic import ValidationError

from storefront.config import CHECKOUT_SESSION_MAX_AGE_SECONDS
from .errors import StaleContextError
from .models import CheckoutContext

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    def __init__(
        self,
        storage: MutableMapping,
        max_age_seconds: int = CHECKOUT_SESSION_MAX_AGE_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.storage = storage
        self.max_age = timedelta(seconds=max_age_seconds)
        self.clock = clock

    def load(self, namespace: str) -> Optional[CheckoutContext]:
        raw = self.storage.get(namespace)
        if raw is None:
            return None
        try:
            ctx = CheckoutContext.model_validate_json(raw) if isinstance(raw, (str, bytes)) else CheckoutContext.model_validate(raw)
        except (ValidationError, ValueError) as e:
            logger.warning("checkout.session corrupt namespace=%s err=%s", namespace, e)
            return None
        if ctx.stored_at is not None:
            stored_at = ctx.stored_at if ctx.stored_at.tzinfo else ctx.stored_at.replace(tzinfo=timezone.utc)
            if self.clock() - stored_at > self.max_age:
                logger.warning("checkout.session expired namespace=%s stored_at=%s", namespace, stored_at.isoformat())
                return None
        return ctx

    def save(self, namespace: str, context: CheckoutContext) -> CheckoutContext:
        """
        Écrit le contexte (storedAt mis à jour) et le retourne.
        Refuse de modifier la fenêtre de réservation ou l'annonce d'un contexte
        déjà lié à la même transaction (StaleContextError).
        """
        previous = self.load(namespace)
        if previous is not None and previous.transaction_id and previous.transaction_id == context.transaction_id:
            if previous.listing.id != context.listing.id:
                raise StaleContextError("Annonce différente pour une transaction déjà initiée")
            if previous.order_data.booking_dates != context.order_data.booking_dates:
                raise StaleContextError("Dates de réservation modifiées après initiation de la transaction")

        stored = context.model_copy(update={"stored_at": self.clock()})
        self.storage[namespace] = json.dumps(stored.to_json_dict(), separators=(",", ":"))
        logger.debug("checkout.session saved namespace=%s tx_id=%s", namespace, stored.transaction_id)
        return stored

    def clear(self, namespace: str) -> None:
        self.storage.pop(namespace, None)
        logger.debug("checkout.session cleared namespace=%s", namespace)


class RedisSessionStorage(MutableMapping):
    """
    Stockage Redis (client synchrone) préfixé par l'identifiant de session checkout.
    Chaque écriture repositionne le TTL.
    """

    def __init__(self, client, prefix: str, ttl_seconds: int = CHECKOUT_SESSION_MAX_AGE_SECONDS):
        self.client = client
        self.prefix = prefix
        self.ttl = ttl_seconds

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    def __getitem__(self, key: str) -> Any:
        value = self.client.get(self._key(key))
        if value is None:
            raise KeyError(key)
        return value.decode("utf-8") if isinstance(value, bytes) else value

    def __setitem__(self, key: str, value: Any) -> None:
        self.client.set(self._key(key), value, ex=self.ttl)

    def __delitem__(self, key: str) -> None:
        if not self.client.delete(self._key(key)):
            raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        start = len(self.prefix) + 1
        for k in self.client.scan_iter(match=f"{self.prefix}:*"):
            k = k.decode("utf-8") if isinstance(k, bytes) else k
            yield k[start:]

    def __len__(self) -> int:
        return sum(1 for _ in self)


def handle_page_data(initial: Optional[CheckoutContext], store: SessionStore, namespace: str) -> Optional[CheckoutContext]:
    """
    Données fraîches fournies par la fiche annonce (listing + orderData): elles gagnent
    et sont stockées. Sinon (rechargement de page): contexte stocké, ou None.
    """
    if initial is not None:
        previous = store.load(namespace)
        if previous is not None and previous.listing.id == initial.listing.id and initial.transaction is None:
            # Même annonce, mêmes paramètres: on garde la transaction déjà initiée
            if previous.order_data.booking_dates == initial.order_data.booking_dates:
                initial = initial.model_copy(update={"transaction": previous.transaction})
        if initial.transaction_id is None or previous is None or previous.transaction_id != initial.transaction_id:
            # Nouvelle sélection: l'ancienne tentative est abandonnée
            store.clear(namespace)
        return store.save(namespace, initial)
    return store.load(namespace)

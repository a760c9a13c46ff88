"""
Gateway vers l'API transactions de la marketplace (httpx, asynchrone).

- speculate: aperçu de prix (transaction spéculative, rien n'est créé)
- initiate: création (forme création uniquement)
- transition: avancement d'une transaction existante (forme continuation uniquement)
- fetch_transaction / fetch_current_user: relectures (refresh, garde-fous du checkout)

Routage: le caractère privilégié est une propriété de la transition (processes.py).
- DirectTransport: appels avec le token du client; refuse toute transition privilégiée
- PrivilegedTransport: endpoint serveur initiate-privileged / transition-privileged
Jamais de repli d'un transport vers l'autre.

Les erreurs sont retournées (GatewayResult), jamais levées.
"""
import logging
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import ValidationError

from .errors import ErrorKind, GatewayResult, UnknownProcessError
from .models import Transaction, TransitionRequest
from .processes import Process, get_process

logger = logging.getLogger(__name__)

_QUERY = {"expand": "true"}
# Clés de params utiles au calcul des lignes de prix côté serveur
_ORDER_DATA_KEYS = ("bookingStart", "bookingEnd", "quantity", "deliveryMethod", "priceVariantName")


def _auth_headers(user_token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {user_token}"} if user_token else {}


def parse_transaction(payload: Any) -> Transaction:
    """
    Forme unique acceptée: {"data": {"id", "attributes": {...}, "booking"?}}.
    Toute autre forme lève ValueError.
    """
    if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
        raise ValueError("réponse sans objet 'data'")
    data = payload["data"]
    attrs = data.get("attributes")
    if not isinstance(data.get("id"), str) or not isinstance(attrs, dict):
        raise ValueError("réponse sans 'data.id' ou 'data.attributes'")
    return Transaction.model_validate({
        "id": data["id"],
        "processName": attrs.get("processName"),
        "lastTransition": attrs.get("lastTransition"),
        "lastTransitionedAt": attrs.get("lastTransitionedAt"),
        "lineItems": attrs.get("lineItems") or [],
        "payinTotal": attrs.get("payinTotal"),
        "protectedData": attrs.get("protectedData") or {},
        "booking": data.get("booking"),
    })


def map_http_error(status_code: int, payload: Any) -> GatewayResult:
    code = None
    title = ""
    if isinstance(payload, dict) and isinstance(payload.get("errors"), list) and payload["errors"]:
        first = payload["errors"][0] if isinstance(payload["errors"][0], dict) else {}
        code = first.get("code")
        title = first.get("title") or ""

    if code == "transaction-listing-not-found" or status_code == 404:
        kind = ErrorKind.LISTING_NOT_FOUND
    elif code == "transaction-invalid-transition" or status_code == 409:
        kind = ErrorKind.INVALID_TRANSITION
    elif status_code in (400, 422):
        kind = ErrorKind.VALIDATION_FAILED
    elif status_code in (401, 403):
        kind = ErrorKind.PERMISSION_DENIED
    elif status_code == 429:
        kind = ErrorKind.RATE_LIMITED
    else:
        kind = ErrorKind.UNKNOWN
    return GatewayResult.failure(kind, message=title or f"HTTP {status_code}", status_code=status_code, code=code)


async def _send(client: httpx.AsyncClient, method: str, url: str, **kwargs) -> GatewayResult:
    """Effectue l'appel et retourne le JSON brut dans GatewayResult.data (ou une erreur typée)."""
    try:
        resp = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        logger.warning("checkout.gateway timeout url=%s err=%s", url, e)
        return GatewayResult.failure(ErrorKind.UNKNOWN, message="Délai dépassé")
    except httpx.HTTPError as e:
        logger.warning("checkout.gateway transport_error url=%s err=%s", url, e)
        return GatewayResult.failure(ErrorKind.UNKNOWN, message="Erreur réseau")

    try:
        payload = resp.json()
    except ValueError:
        payload = None

    if resp.status_code >= 400:
        result = map_http_error(resp.status_code, payload)
        logger.info("checkout.gateway error url=%s status=%s kind=%s", url, resp.status_code, result.error.kind.value)
        return result
    if payload is None:
        return GatewayResult.failure(ErrorKind.UNKNOWN, message="Réponse JSON invalide", status_code=resp.status_code)
    return GatewayResult(data=payload)


def _with_transaction(result: GatewayResult) -> GatewayResult:
    if not result.ok:
        return result
    try:
        return GatewayResult(transaction=parse_transaction(result.data), data=result.data)
    except (ValueError, ValidationError) as e:
        logger.warning("checkout.gateway unexpected_shape err=%s", e)
        return GatewayResult.failure(ErrorKind.UNKNOWN, message="Réponse inattendue de l'API transactions")


class DirectTransport:
    """Appels au nom du client (token utilisateur)."""

    def __init__(self, client: httpx.AsyncClient, user_token: str, processes: Callable[[str], Process] = get_process):
        self.client = client
        self.user_token = user_token
        self.processes = processes

    async def send(self, request: TransitionRequest, speculative: bool) -> GatewayResult:
        if self.processes(request.process_name).is_privileged(request.transition):
            return GatewayResult.failure(
                ErrorKind.PERMISSION_DENIED,
                message=f"Transition privilégiée refusée en appel direct: {request.transition}",
            )
        if request.is_creation:
            endpoint = "transactions/initiate_speculative" if speculative else "transactions/initiate"
        else:
            endpoint = "transactions/transition_speculative" if speculative else "transactions/transition"
        return await _send(
            self.client, "POST", endpoint,
            params=_QUERY, json=request.body(), headers=_auth_headers(self.user_token),
        )


class PrivilegedTransport:
    """Transitions privilégiées relayées par le serveur (identifiants de confiance côté serveur)."""

    def __init__(self, client: httpx.AsyncClient, user_token: str):
        self.client = client
        self.user_token = user_token

    async def send(self, request: TransitionRequest, speculative: bool) -> GatewayResult:
        endpoint = "initiate-privileged" if request.is_creation else "transition-privileged"
        order_data = {k: request.params[k] for k in _ORDER_DATA_KEYS if k in request.params}
        body = {
            "isSpeculative": speculative,
            "orderData": order_data,
            "bodyParams": request.body(),
            "queryParams": dict(_QUERY),
        }
        return await _send(self.client, "POST", endpoint, json=body, headers=_auth_headers(self.user_token))


class TransactionGateway:
    def __init__(
        self,
        client: httpx.AsyncClient,
        privileged_client: Optional[httpx.AsyncClient] = None,
        user_token: str = "",
        processes: Callable[[str], Process] = get_process,
    ):
        self.client = client
        self.processes = processes
        self.direct = DirectTransport(client, user_token, processes)
        self.privileged = PrivilegedTransport(privileged_client, user_token) if privileged_client is not None else None

    async def _dispatch(self, request: TransitionRequest, speculative: bool) -> GatewayResult:
        try:
            process = self.processes(request.process_name)
        except UnknownProcessError as e:
            return GatewayResult.failure(ErrorKind.UNKNOWN, message=str(e))

        if process.is_privileged(request.transition):
            if self.privileged is None:
                logger.warning("checkout.gateway privileged_unavailable transition=%s", request.transition)
                return GatewayResult.failure(
                    ErrorKind.PERMISSION_DENIED,
                    message="Endpoint privilégié non configuré",
                )
            result = await self.privileged.send(request, speculative)
        else:
            result = await self.direct.send(request, speculative)
        return _with_transaction(result)

    async def speculate(self, request: TransitionRequest) -> GatewayResult:
        result = await self._dispatch(request, speculative=True)
        if result.ok:
            logger.debug("checkout.gateway speculate ok transition=%s", request.transition)
        return result

    async def initiate(self, request: TransitionRequest) -> GatewayResult:
        if not request.is_creation:
            raise ValueError("initiate() attend une requête de création (processAlias)")
        result = await self._dispatch(request, speculative=False)
        if result.ok:
            logger.info("checkout.gateway initiate ok tx_id=%s transition=%s", result.transaction.id, request.transition)
        return result

    async def transition(self, request: TransitionRequest) -> GatewayResult:
        if request.is_creation:
            raise ValueError("transition() attend une requête de continuation (id de transaction)")
        if request.last_transition is not None:
            try:
                process = self.processes(request.process_name)
                legal = process.can_transition(request.last_transition, request.transition)
            except UnknownProcessError:
                legal = True
            if not legal:
                logger.info(
                    "checkout.gateway invalid_transition tx_id=%s last=%s transition=%s",
                    request.transaction_id, request.last_transition, request.transition,
                )
                return GatewayResult.failure(
                    ErrorKind.INVALID_TRANSITION,
                    message=f"{request.transition} impossible après {request.last_transition}",
                    code="transaction-invalid-transition",
                )
        result = await self._dispatch(request, speculative=False)
        if result.ok:
            logger.info("checkout.gateway transition ok tx_id=%s transition=%s", result.transaction.id, request.transition)
        return result

    async def fetch_transaction(self, transaction_id: str) -> GatewayResult:
        result = await _send(
            self.client, "GET", "transactions/show",
            params={"id": transaction_id, "include": "booking", **_QUERY},
            headers=_auth_headers(self.direct.user_token),
        )
        return _with_transaction(result)

    async def fetch_current_user(self) -> GatewayResult:
        """data: {"id", "state", "permissions", ...} (attributs aplatis)."""
        result = await _send(
            self.client, "GET", "current_user/show",
            headers=_auth_headers(self.direct.user_token),
        )
        if not result.ok:
            return result
        data = result.data.get("data") if isinstance(result.data, dict) else None
        if not isinstance(data, dict) or not isinstance(data.get("attributes"), dict):
            return GatewayResult.failure(ErrorKind.UNKNOWN, message="Utilisateur courant illisible")
        return GatewayResult(data={"id": data.get("id"), **data["attributes"]})

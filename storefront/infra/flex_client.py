from typing import Optional

import httpx

from storefront.config import FLEX_API_BASE_URL, GATEWAY_TIMEOUT_SECONDS, PRIVILEGED_API_BASE_URL


def create_flex_client(base_url: str = FLEX_API_BASE_URL, timeout: float = GATEWAY_TIMEOUT_SECONDS) -> httpx.AsyncClient:
    """
    Client httpx partagé pour l'API transactions (token utilisateur par requête).
    À fermer dans le lifespan (aclose).
    """
    return httpx.AsyncClient(
        base_url=base_url + "/",
        timeout=httpx.Timeout(timeout),
        headers={"Accept": "application/json"},
    )


def create_privileged_client(
    base_url: str = PRIVILEGED_API_BASE_URL,
    timeout: float = GATEWAY_TIMEOUT_SECONDS,
) -> Optional[httpx.AsyncClient]:
    # Pas d'URL configurée => aucune transition privilégiée possible
    if not base_url:
        return None
    return httpx.AsyncClient(
        base_url=base_url + "/",
        timeout=httpx.Timeout(timeout),
        headers={"Accept": "application/json"},
    )

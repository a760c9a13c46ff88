from typing import Any, Dict, Optional

from fastapi import Depends, HTTPException, Request

from storefront.config import AUTH_COOKIE_NAME

COOKIE_NAME = AUTH_COOKIE_NAME


def extract_token(request: Request) -> Optional[str]:
    # Hybride: priorité au Bearer, fallback cookie
    token = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
    if not token:
        token = request.cookies.get(COOKIE_NAME)
    return token or None


def get_current_user(request: Request) -> Dict[str, Any]:
    """
    Shopper courant: seul le token est connu ici, l'API transactions le valide
    (current_user/show au démarrage du checkout).
    """
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="Non authentifié")
    return {"token": token}


def require_user(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    return user

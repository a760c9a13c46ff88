# storefront.config
from pathlib import Path
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=False)

"""
Configuration centrale du storefront.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les URLs de l'API transactions (directe et privilégiée)
- Expose les secrets Stripe, les réglages de session checkout et les chemins de navigation
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _int_env(name: str, default: int) -> int:
    try:
        return int(_clean_env(os.getenv(name) or "") or default)
    except ValueError:
        return default

def _base_url(v: str) -> str:
    # Préfixe https:// si le schéma manque, retire le slash final
    if v and not v.startswith("http"):
        v = "https://" + v
    return v.rstrip("/")

# API transactions (marketplace): appels directs avec le token du client
FLEX_API_BASE_URL = _base_url(_clean_env(os.getenv("FLEX_API_BASE_URL") or "https://flex-api.sharetribe.com/v1/api"))
# Endpoint serveur pour les transitions privilégiées (initiate-privileged / transition-privileged)
# Vide => aucune transition privilégiée possible (PermissionDenied, jamais de repli)
PRIVILEGED_API_BASE_URL = _base_url(_clean_env(os.getenv("PRIVILEGED_API_BASE_URL") or ""))
GATEWAY_TIMEOUT_SECONDS = float(_clean_env(os.getenv("GATEWAY_TIMEOUT_SECONDS") or "") or 10)

# Stripe: clés publiques/privées et contrat de retry réseau du SDK
STRIPE_PUBLIC_KEY = _clean_env(os.getenv("STRIPE_PUBLIC_KEY") or "")
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_MAX_NETWORK_RETRIES = _int_env("STRIPE_MAX_NETWORK_RETRIES", 2)

# Process de réservation en espèces (aucun appel Stripe)
CASH_PROCESS_ALIAS = _clean_env(os.getenv("CASH_PROCESS_ALIAS") or "reloue-booking-cash/release-1")

# Session checkout: namespace fixe, backend (cookie|redis), durée de validité
CHECKOUT_SESSION_NAMESPACE = _clean_env(os.getenv("CHECKOUT_SESSION_NAMESPACE") or "CheckoutPage")
CHECKOUT_SESSION_BACKEND = (_clean_env(os.getenv("CHECKOUT_SESSION_BACKEND") or "cookie")).lower()
CHECKOUT_SESSION_MAX_AGE_SECONDS = _int_env("CHECKOUT_SESSION_MAX_AGE_SECONDS", 24 * 60 * 60)
CHECKOUT_REDIS_URL = _clean_env(os.getenv("CHECKOUT_REDIS_URL") or "redis://127.0.0.1:6379/1")

# Cookies/ Sécurité
SESSION_SECRET_KEY = _clean_env(os.getenv("SESSION_SECRET_KEY") or "replace_me_with_a_long_random_secret")
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")
AUTH_COOKIE_NAME = _clean_env(os.getenv("AUTH_COOKIE_NAME") or "st_access")

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

MARKETPLACE_CURRENCY = _clean_env(os.getenv("MARKETPLACE_CURRENCY") or "EUR").upper()

# Gabarits de chemins pour la navigation post-checkout (le front résout les pages)
ROUTE_PATHS = {
    "OrderDetailsPage": os.getenv("ROUTE_ORDER_DETAILS", "/order/{id}"),
    "ListingPage": os.getenv("ROUTE_LISTING", "/l/{slug}/{id}"),
    "CheckoutPage": os.getenv("ROUTE_CHECKOUT", "/l/{slug}/{id}/checkout"),
    "NoAccessPage": os.getenv("ROUTE_NO_ACCESS", "/no-access/{missingAccessRight}"),
}

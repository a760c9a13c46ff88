"""
Middlewares transverses de l'application.
- SessionMiddleware: session signée (itsdangerous) portant l'identifiant de checkout
  et, en backend 'cookie', le contexte de checkout lui-même
- CORSMiddleware: autorise les origines définies (dev/prod)
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.sessions import SessionMiddleware

from storefront.config import CHECKOUT_SESSION_MAX_AGE_SECONDS, COOKIE_SECURE, CORS_ORIGINS, SESSION_SECRET_KEY


def register_basic_middlewares(app: FastAPI) -> None:
    app.add_middleware(
        SessionMiddleware,
        secret_key=SESSION_SECRET_KEY,
        max_age=CHECKOUT_SESSION_MAX_AGE_SECONDS,
        same_site="lax",
        https_only=COOKIE_SECURE,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

"""
Lifespan FastAPI: initialisation/arrêt des ressources partagées.
- Clients httpx de l'API transactions (direct + privilégié), fermés à l'arrêt
- Configuration Stripe (clé, retries réseau)
- Registre des checkouts en cours
- FastAPILimiter (Redis) avec options de test (fakeredis)
Variables d'environnement supportées:
  - DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS=1: désactive complètement le rate limiting (tests)
  - USE_FAKE_REDIS_FOR_TESTS=1: utilise fakeredis (tests)
  - LOCAL_RATE_LIMIT_FALLBACK=1: active un fallback local si l'init échoue
"""
import os
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi_limiter import FastAPILimiter

from storefront.checkout.card_adapter import require_stripe
from storefront.checkout.service import CheckoutRegistry
from storefront.infra.flex_client import create_flex_client, create_privileged_client


async def _init_rate_limiter(app: FastAPI, logger: logging.Logger) -> None:
    if os.getenv("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS") == "1":
        app.state.rate_limit_enabled = False
        logger.info("Rate limiting disabled by DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS")
        return
    try:
        if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
            from fakeredis.aioredis import FakeRedis  # tests only
            r = FakeRedis(decode_responses=True)
        else:
            redis_url = os.getenv("RATE_LIMIT_REDIS_URL", "redis://127.0.0.1:6379/0")
            r = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        await FastAPILimiter.init(r)
        app.state.rate_limit_enabled = True
        logger.info("Rate limiting enabled")
    except Exception as e:
        if os.getenv("LOCAL_RATE_LIMIT_FALLBACK") == "1":
            app.state.rate_limit_enabled = True
            logger.warning(f"Rate limiting falling back to local in-memory due to init error: {e}")
        else:
            app.state.rate_limit_enabled = False
            logger.warning(f"Rate limiting disabled due to init error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("uvicorn.error")
    app.state.flex_client = create_flex_client()
    app.state.privileged_client = create_privileged_client()
    if app.state.privileged_client is None:
        logger.warning("PRIVILEGED_API_BASE_URL absent: transitions privilégiées indisponibles")
    app.state.checkout_registry = CheckoutRegistry()
    require_stripe()
    await _init_rate_limiter(app, logger)
    try:
        yield
    finally:
        await app.state.flex_client.aclose()
        if app.state.privileged_client is not None:
            await app.state.privileged_client.aclose()
        if getattr(app.state, "rate_limit_enabled", False) and getattr(FastAPILimiter, "redis", None) is not None:
            await FastAPILimiter.close()

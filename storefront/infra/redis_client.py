import os
from typing import Optional

import redis

from storefront.config import CHECKOUT_REDIS_URL

_redis: Optional[redis.Redis] = None


def get_checkout_redis() -> redis.Redis:
    """
    Client Redis synchrone pour la session checkout (backend 'redis').
    USE_FAKE_REDIS_FOR_TESTS=1: fakeredis en mémoire.
    """
    global _redis
    if _redis is None:
        if os.getenv("USE_FAKE_REDIS_FOR_TESTS") == "1":
            import fakeredis  # tests only
            _redis = fakeredis.FakeRedis(decode_responses=True)
        else:
            _redis = redis.from_url(CHECKOUT_REDIS_URL, encoding="utf-8", decode_responses=True)
    return _redis


def reset_checkout_redis() -> None:
    global _redis
    if _redis is not None:
        _redis.close()
    _redis = None

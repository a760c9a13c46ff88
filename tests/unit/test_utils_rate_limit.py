from fastapi import Depends, FastAPI
from fastapi.testclient import TestClient

from storefront.utils.rate_limit import optional_rate_limit
from storefront.utils.security import COOKIE_NAME


def _make_app(times=2, seconds=60):
    app = FastAPI()

    @app.post("/api/v1/checkout/{listing_id}/card", dependencies=[Depends(optional_rate_limit(times, seconds))])
    def card(listing_id: str):
        return {"ok": True}

    @app.post("/api/v1/checkout/{listing_id}/cash", dependencies=[Depends(optional_rate_limit(times, seconds))])
    def cash(listing_id: str):
        return {"ok": True}

    return app


def test_fallback_blocks_after_limit(monkeypatch):
    monkeypatch.setenv("LOCAL_RATE_LIMIT_FALLBACK", "1")
    client = TestClient(_make_app(times=2))

    assert client.post("/api/v1/checkout/l-1/card").status_code == 200
    assert client.post("/api/v1/checkout/l-1/card").status_code == 200
    assert client.post("/api/v1/checkout/l-1/card").status_code == 429


def test_fallback_is_per_path_and_token(monkeypatch):
    monkeypatch.setenv("LOCAL_RATE_LIMIT_FALLBACK", "1")
    client = TestClient(_make_app(times=1))
    client.cookies.set(COOKIE_NAME, "shopper-token")

    assert client.post("/api/v1/checkout/l-1/card").status_code == 200
    assert client.post("/api/v1/checkout/l-1/card").status_code == 429
    # Autre chemin: compteur indépendant
    assert client.post("/api/v1/checkout/l-1/cash").status_code == 200


def test_disabled_flag_bypasses_limit(monkeypatch):
    monkeypatch.delenv("LOCAL_RATE_LIMIT_FALLBACK", raising=False)
    app = _make_app(times=1)
    app.state.rate_limit_enabled = False
    client = TestClient(app)

    for _ in range(3):
        assert client.post("/api/v1/checkout/l-1/card").status_code == 200

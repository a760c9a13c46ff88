from fastapi import FastAPI

from storefront.checkout.views import router as checkout_router


def register_routers(app: FastAPI) -> None:
    """Enregistre les routers API."""
    app.include_router(checkout_router)

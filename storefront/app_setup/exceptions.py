"""
Gestionnaires d'exceptions.
- Erreurs d'usage du checkout (soumission déjà en cours, transition interdite,
  contexte périmé) -> 409 JSON {"detail": ...}
- Paramètres de commande invalides / process inconnu -> 400
"""
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from storefront.checkout.errors import (
    IllegalTransition,
    OrderParamsError,
    StaleContextError,
    SubmissionInProgress,
    UnknownProcessError,
)

logger = logging.getLogger(__name__)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(SubmissionInProgress)
    async def submission_in_progress(request: Request, exc: SubmissionInProgress):
        logger.info("checkout.double_submit path=%s", request.url.path)
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(IllegalTransition)
    async def illegal_transition(request: Request, exc: IllegalTransition):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(StaleContextError)
    async def stale_context(request: Request, exc: StaleContextError):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(OrderParamsError)
    async def order_params_error(request: Request, exc: OrderParamsError):
        logger.warning("checkout.order_params invalid path=%s err=%s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(UnknownProcessError)
    async def unknown_process(request: Request, exc: UnknownProcessError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

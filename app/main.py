# app/main.py
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from app.core.config import Settings, settings
from app.api.endpoints import weather
from app.x402.middleware import X402Middleware
from app.x402.replay import ReferenceLedger
from app.x402.settlement import BalanceOracle, Broadcaster
import logging

# Configure basic logging
logging.basicConfig(level=settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Unknown paths and unsupported methods both answer 404."""
    if exc.status_code in (404, 405):
        return JSONResponse(status_code=404, content={"error": "Not found"})
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


def create_app(
    balance_oracle: Optional[BalanceOracle] = None,
    broadcaster: Optional[Broadcaster] = None,
    ledger: Optional[ReferenceLedger] = None,
    config: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Services default to a Solana JSON-RPC client on SOLANA_RPC_URL; tests
    inject their own.
    """
    config = config or settings
    application = FastAPI(
        title=config.PROJECT_NAME,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    # "/weather/" is a different path and answers 404
    application.router.redirect_slashes = False

    application.include_router(weather.router, tags=["weather"])
    application.add_exception_handler(StarletteHTTPException, http_exception_handler)
    application.add_middleware(
        X402Middleware,
        balance_oracle=balance_oracle,
        broadcaster=broadcaster,
        ledger=ledger,
        config=config,
    )

    logger.info(
        f"{config.PROJECT_NAME} charging {config.X402_PRICE} of {config.X402_ASSET} "
        f"on {config.X402_NETWORK}"
    )
    return application


app = create_app()

# Deployment note: a client that disconnects mid-request does not cancel an
# in-flight broadcast; the payment may still land on chain.

"""HTTP API of the relay.

Routes::

    GET  /health
    GET  /api/market/info
    POST /api/trading/order
    GET  /api/wallet/check/{address}
    POST /api/wallet/create
    POST /api/wallet/authorize

Errors are returned as::

    {"status": "err", "error": "ExchangeRejected", "message": "...", "response": "..."}

where ``response`` is the exchange's own error text for exchange rejections.

Run with::

    perp-relay

or ``uvicorn --factory perp_relay.server.app:create_app_from_env``.
"""

import datetime
import logging

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from requests.exceptions import RequestException

from perp_relay.errors import (
    ConfigurationError,
    ExchangeRejected,
    IdentityUnavailable,
    PersistenceError,
    RecordNotFound,
    RelayError,
    UserRejected,
    ValidationError,
    WalletRequestFailed,
)
from perp_relay.hyperliquid.api_wallet import ApiWalletRegistry
from perp_relay.hyperliquid.exchange import HyperliquidExchangeClient
from perp_relay.hyperliquid.relay import HyperliquidRelay
from perp_relay.server.config import ServerConfig
from perp_relay.utils import setup_console_logging

logger = logging.getLogger(__name__)

#: Error class -> HTTP status.
#:
#: Checked in order, so subclasses must come before their bases.
ERROR_STATUS_CODES = [
    (ValidationError, 400),
    (UserRejected, 400),
    (ExchangeRejected, 400),
    (RecordNotFound, 404),
    (IdentityUnavailable, 403),
    (WalletRequestFailed, 502),
    (PersistenceError, 500),
    (ConfigurationError, 500),
]


class OrderRequest(BaseModel):
    action: dict
    nonce: int
    userAddress: str | None = None
    signature: dict | None = None
    vaultAddress: str | None = None


class CreateWalletRequest(BaseModel):
    userAddress: str


class AuthorizeWalletRequest(BaseModel):
    userAddress: str
    apiWalletAddress: str
    signedAction: dict


def get_status_code(error: RelayError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


def error_response(status_code: int, error: str, message: str, response=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "err",
            "error": error,
            "message": message,
            "response": response,
        },
    )


async def handle_relay_error(request: Request, exc: RelayError) -> JSONResponse:
    status_code = get_status_code(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc)
    else:
        logger.warning("%s %s failed: %s: %s", request.method, request.url.path, exc.__class__.__name__, exc)

    response = exc.reason if isinstance(exc, ExchangeRejected) else None
    return error_response(status_code, exc.__class__.__name__, str(exc), response)


async def handle_request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    message = "; ".join(f"{'.'.join(str(part) for part in e['loc'])}: {e['msg']}" for e in exc.errors())
    return error_response(400, ValidationError.__name__, message)


async def handle_upstream_error(request: Request, exc: RequestException) -> JSONResponse:
    logger.error("Exchange API request failed: %s", exc)
    return error_response(502, "ExchangeUnavailable", str(exc))


def create_relay(config: ServerConfig) -> HyperliquidRelay:
    return HyperliquidRelay(
        registry=ApiWalletRegistry(config.api_wallets_file),
        exchange=HyperliquidExchangeClient(config.api_url),
        is_mainnet=config.is_mainnet,
        default_identity=config.create_default_identity(),
        default_vault_address=config.vault_address,
        strict_signer_check=config.strict_signer_check,
    )


def create_app(config: ServerConfig, relay: HyperliquidRelay | None = None) -> FastAPI:
    """Build the application.

    :param relay:
        Use this relay instead of one built from the config. Used in tests.
    """
    app = FastAPI(title="perp-relay")
    app.state.config = config
    app.state.relay = relay or create_relay(config)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RelayError, handle_relay_error)
    app.add_exception_handler(RequestValidationError, handle_request_validation_error)
    app.add_exception_handler(RequestException, handle_upstream_error)

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "network": config.network_name,
            "timestamp": datetime.datetime.now(datetime.UTC).isoformat(),
        }

    @app.get("/api/market/info")
    def market_info(request: Request):
        return request.app.state.relay.fetch_market_info()

    @app.post("/api/trading/order")
    def place_order(body: OrderRequest, request: Request):
        relay: HyperliquidRelay = request.app.state.relay
        submission = relay.place_order(
            body.action,
            body.nonce,
            owner=body.userAddress,
            signature=body.signature,
            vault_address=body.vaultAddress,
        )
        return {
            "status": "ok",
            "response": submission.response.payload,
            "signatureVerified": submission.verification.matches,
        }

    @app.get("/api/wallet/check/{address}")
    def check_wallet(address: str, request: Request):
        return request.app.state.relay.check_api_wallet(address)

    @app.post("/api/wallet/create")
    def create_wallet(body: CreateWalletRequest, request: Request):
        return request.app.state.relay.create_api_wallet(body.userAddress)

    @app.post("/api/wallet/authorize")
    def authorize_wallet(body: AuthorizeWalletRequest, request: Request):
        relay: HyperliquidRelay = request.app.state.relay
        result = relay.authorize_api_wallet(body.userAddress, body.apiWalletAddress, body.signedAction)
        return {"success": True, "result": result}

    return app


def create_app_from_env() -> FastAPI:
    return create_app(ServerConfig.from_env())


def main():
    setup_console_logging()
    config = ServerConfig.from_env()
    app = create_app(config)
    logger.info("Starting relay on %s:%d for %s", config.host, config.port, config.network_name)
    uvicorn.run(app, host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()

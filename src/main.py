"""
Facilitator Main Entry Point
Starts a FastAPI server verifying and settling x402 payments on Stellar.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exception_handlers import request_validation_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from config import config
from database import close_database, init_database
from facilitator import X402Facilitator
from idempotency import InMemoryIdempotencyStore, SqlIdempotencyStore
from logging_setup import setup_logging
from mechanism import ExactStellarMechanism
from monitoring import attach_prometheus_middleware, start_monitoring_server
from ratelimit import get_settle_rate_limit, get_verify_rate_limit, limiter, setup_rate_limiting
from schemas import (
    ErrorReason,
    SettleRequest,
    SettleResponse,
    SettlementRecordResponse,
    SupportedResponse,
    VerifyRequest,
    VerifyResponse,
)
from settlement import SettlementSettings
from stellar_ledger import StellarLedgerClient

# Setup initial logging (console only)
setup_logging()
logger = logging.getLogger(__name__)

SERVICE_NAME = "stellar-facilitator"

# Failures detected before any ledger I/O: the request itself is wrong
REQUEST_SHAPE_REASONS = frozenset({
    ErrorReason.INVALID_PAYLOAD,
    ErrorReason.INVALID_NETWORK,
    ErrorReason.INVALID_PAYMENT_REQUIREMENTS,
    ErrorReason.INVALID_SCHEME,
    ErrorReason.UNSUPPORTED_SCHEME,
    ErrorReason.INVALID_X402_VERSION,
})
UNEXPECTED_REASONS = frozenset({
    ErrorReason.UNEXPECTED_VERIFY_ERROR,
    ErrorReason.UNEXPECTED_SETTLE_ERROR,
    ErrorReason.UNEXPECTED_ERROR,
})

# Global facilitator instance
x402_facilitator = X402Facilitator()


async def _init_idempotency_store() -> None:
    """Swap in the database-backed store when configured (required for workers > 1)."""
    if config.idempotency_backend != "database":
        x402_facilitator.store = InMemoryIdempotencyStore(max_records=config.idempotency_max_records)
        if config.server_workers > 1:
            logger.warning("Memory idempotency backend with multiple workers: settlement dedupe is per worker")
        return

    database_url = await config.get_database_url()
    max_overflow = max(0, config.database_max_open_conns - config.database_max_idle_conns)
    await init_database(
        database_url,
        pool_size=config.database_max_idle_conns,
        max_overflow=max_overflow,
        pool_recycle=config.database_max_life_time,
        pool_pre_ping=True,
        ssl_mode=config.database_ssl_mode,
    )
    x402_facilitator.store = SqlIdempotencyStore(stale_after_seconds=config.idempotency_stale_after)
    logger.info("Database idempotency store initialized")


def _register_networks() -> None:
    settings = SettlementSettings(
        default_timeout=config.settlement_default_timeout,
        poll_interval=config.settlement_poll_interval,
        retry_initial_backoff=config.settlement_retry_initial_backoff,
        retry_max_backoff=config.settlement_retry_max_backoff,
    )
    for network in config.networks:
        passphrase = config.get_network_passphrase(network)
        ledger = StellarLedgerClient(
            network,
            config.get_rpc_url(network),
            network_passphrase=passphrase,
            request_timeout=config.get_request_timeout(network),
        )
        mechanism = ExactStellarMechanism(
            network,
            passphrase,
            ledger,
            x402_facilitator.store,
            settings,
        )
        x402_facilitator.register([network], mechanism)
        logger.info(f"Facilitator registered for {network} via {config.get_rpc_url(network)}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    logger.info("Initializing application...")

    config.load_from_yaml()
    logger.info("Configuration loaded")

    # Re-setup logging with configuration (file logging)
    setup_logging(config.logging_config)
    logger.info("Logging configured")

    start_monitoring_server(instrumentator, app, config)

    await _init_idempotency_store()
    _register_networks()

    yield

    logger.info("Shutting down...")
    await x402_facilitator.close()
    await close_database()


# Init app
app = FastAPI(
    title="X402 Stellar Facilitator",
    description="Facilitator service for the x402 payment protocol on Stellar",
    version="1.0.0",
    lifespan=lifespan,
)

# Setup sub-systems
setup_rate_limiting(app)
instrumentator = attach_prometheus_middleware(app)

# Add CORS middleware (allow_credentials=False when using "*" per CORS spec)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _dump(model) -> dict[str, Any]:
    return model.model_dump(mode="json", exclude_none=True)


def _status_for(reason: Optional[ErrorReason]) -> int:
    if reason is None:
        return 200
    if reason in REQUEST_SHAPE_REASONS:
        return 400
    if reason in UNEXPECTED_REASONS:
        return 500
    return 200


def _network_from_body(body: Any) -> str:
    """Best-effort network of a malformed settle body, for the response envelope."""
    if isinstance(body, dict):
        for key in ("paymentRequirements", "paymentPayload"):
            section = body.get(key)
            if isinstance(section, dict) and isinstance(section.get("network"), str):
                return section["network"]
    return config.default_network


@app.exception_handler(RequestValidationError)
async def request_shape_error_handler(request: Request, exc: RequestValidationError):
    """Schema violations on /verify and /settle become invalid_payload with HTTP 400."""
    path = request.url.path
    if path == "/verify":
        logger.info(f"Malformed verify request: {exc.errors()}")
        result = VerifyResponse(isValid=False, invalidReason=ErrorReason.INVALID_PAYLOAD)
        return JSONResponse(status_code=400, content=_dump(result))
    if path == "/settle":
        logger.info(f"Malformed settle request: {exc.errors()}")
        result = SettleResponse(
            success=False,
            errorReason=ErrorReason.INVALID_PAYLOAD,
            transaction="",
            network=_network_from_body(exc.body),
        )
        return JSONResponse(status_code=400, content=_dump(result))
    return await request_validation_exception_handler(request, exc)


@app.get("/health")
async def health():
    """Health check for K8s / load balancer liveness probe. No rate limit."""
    return {"status": "ok", "service": SERVICE_NAME}


@app.get("/supported", response_model=SupportedResponse, response_model_exclude_none=True)
async def supported(request: Request):
    """Get supported (scheme, network) kinds"""
    return x402_facilitator.supported()


@app.post("/verify", response_model=VerifyResponse, response_model_exclude_none=True)
@limiter.limit(get_verify_rate_limit)
async def verify(request: Request, verify_request: VerifyRequest):
    """Verify payment payload"""
    try:
        result = await x402_facilitator.verify(
            verify_request.paymentPayload, verify_request.paymentRequirements
        )
    except Exception:
        logger.exception("Verify failed")
        result = VerifyResponse(isValid=False, invalidReason=ErrorReason.UNEXPECTED_VERIFY_ERROR)
    return JSONResponse(status_code=_status_for(result.invalidReason), content=_dump(result))


@app.post("/settle", response_model=SettleResponse, response_model_exclude_none=True)
@limiter.limit(get_settle_rate_limit)
async def settle(request: Request, request_data: SettleRequest):
    """Settle payment on the ledger. Repeated calls for the same envelope return the cached outcome."""
    try:
        result = await x402_facilitator.settle(
            request_data.paymentPayload, request_data.paymentRequirements
        )
    except Exception:
        logger.exception("Settle failed")
        result = SettleResponse(
            success=False,
            errorReason=ErrorReason.UNEXPECTED_SETTLE_ERROR,
            transaction="",
            network=request_data.paymentRequirements.network,
        )
    return JSONResponse(status_code=_status_for(result.errorReason), content=_dump(result))


@app.get("/settlements/{fingerprint}", response_model=SettlementRecordResponse)
async def get_settlement(request: Request, fingerprint: str):
    """Get the idempotency record of an envelope fingerprint (SHA-256 hex of invokeHostOpXDR)."""
    record = await x402_facilitator.get_settlement(fingerprint.lower())
    if record is None:
        raise HTTPException(status_code=404, detail="Settlement not found")
    return SettlementRecordResponse(
        fingerprint=record.fingerprint,
        state=record.state.value,
        network=record.network,
        txHash=record.tx_hash,
        transaction=record.transaction,
        payer=record.payer,
        errorReason=record.error_reason.value if record.error_reason else None,
        createdAt=record.created_at,
        updatedAt=record.updated_at,
    )


def main():
    """Start the facilitator server"""
    print("Starting X402 Stellar Facilitator Server")
    config.load_from_yaml()
    uvicorn.run(
        "main:app",
        host=config.server_host,
        port=config.server_port,
        log_level="info",
        workers=config.server_workers,
    )


if __name__ == "__main__":
    main()

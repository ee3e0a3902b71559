"""
LTC Payments API.

Provides REST endpoints for:
- Creating payments (POST /payments)
- Looking up payment status (GET /payments/{id})
- Health checks (GET /health)

The sweeper runs as a background task in the same event loop.

Usage:
    uvicorn --factory ltc_payments.main:create_app
"""

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .auth import get_gateway, verify_api_token
from .bitcoin import btc_to_sats, sats_to_btc
from .config import Settings, load_settings
from .errors import ChainCallError
from .gateway import PaymentGateway
from .logs import configure_logging
from .models import (
    CreatePaymentRequest,
    HealthResponse,
    PaymentResponse,
    PaymentStatusResponse,
)

logger = structlog.get_logger()


def create_app(
    gateway: Optional[PaymentGateway] = None,
    start_sweeper: bool = True,
) -> FastAPI:
    """
    Build the ASGI app.

    Without a gateway, settings are loaded here (an invalid configuration
    raises ConfigurationError) and the gateway is built from them when the
    app starts. Either way the app closes the gateway on shutdown.
    """
    settings: Settings = gateway.settings if gateway else load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if app.state.gateway is None:
            configure_logging(settings.log_level, settings.log_json)
            app.state.gateway = PaymentGateway.from_settings(settings)

        gw: PaymentGateway = app.state.gateway
        sweeper_task = None
        if start_sweeper:
            sweeper_task = asyncio.create_task(gw.sweeper.run())

        logger.info("API started", version=__version__, electrum=gw.settings.electrum_host)

        yield

        gw.sweeper.stop()
        if sweeper_task is not None:
            sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper_task
        await gw.close()

        logger.info("API stopped")

    app = FastAPI(
        title="LTC Payments API",
        description="Custodial payment gateway with automatic cold-storage sweeps",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        max_age=3600,
    )

    @app.get("/health", response_model=HealthResponse)
    async def health_check(gw: PaymentGateway = Depends(get_gateway)) -> HealthResponse:
        """Service status and Electrum connectivity."""
        electrum_ok = await asyncio.to_thread(gw.chain.check_connectivity)
        state = gw.sweeper.state
        return HealthResponse(
            status="ok" if electrum_ok else "degraded",
            version=__version__,
            electrum=electrum_ok,
            sweeper_running=state.is_running,
            sweeper_cycles=state.cycles,
            sweeps_completed=state.swept,
            sweeps_failed=state.failed,
        )

    @app.post(
        "/payments",
        response_model=PaymentResponse,
        dependencies=[Depends(verify_api_token)],
    )
    async def create_payment(
        request: CreatePaymentRequest,
        gw: PaymentGateway = Depends(get_gateway),
    ) -> PaymentResponse:
        """Create a payment with a fresh receiving address."""
        try:
            amount = btc_to_sats(request.amount)
        except ValueError as e:
            raise HTTPException(status_code=422, detail=str(e))

        payment = await asyncio.to_thread(gw.create_payment, amount, request.expires_in)
        return PaymentResponse(**payment.public_dict())

    @app.get(
        "/payments/{payment_id}",
        response_model=PaymentStatusResponse,
        dependencies=[Depends(verify_api_token)],
    )
    async def get_payment(
        payment_id: str,
        gw: PaymentGateway = Depends(get_gateway),
    ) -> PaymentStatusResponse:
        """Payment record with live confirmations and received amount."""
        try:
            status = await asyncio.to_thread(gw.lookup, payment_id)
        except ChainCallError as e:
            logger.error("payment_lookup_failed", payment_id=payment_id, error=str(e))
            raise HTTPException(status_code=502, detail="electrum error")

        if status is None:
            raise HTTPException(status_code=404, detail="payment not found")

        return PaymentStatusResponse(
            **status.payment.public_dict(),
            confirmations=status.confirmations,
            confirmations_needed=status.confirmations_needed,
            received=float(sats_to_btc(status.received)),
        )

    return app


"""FastAPI application factory for the billing service."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from src.api.v1.endpoints import billing
from src.core.config import settings
from src.core.exceptions import BillingError, ErrorKind, IntegrationError
from src.core.logging import setup_logging
from src.services.billing_service import BillingServiceClient
from src.services.events import EventBus
from src.services.gateway import StripeGatewayClient
from src.services.guards import OperationGuard
from src.services.limits import close_redis_client
from src.services.provisioning import PaymentMethodProvisioningCoordinator
from src.services.subscriptions import SubscriptionLifecycleManager


logger = logging.getLogger(__name__)

ERROR_STATUS = {
    ErrorKind.ALREADY_IN_PROGRESS: status.HTTP_409_CONFLICT,
    ErrorKind.INVALID_STATE: status.HTTP_409_CONFLICT,
    ErrorKind.GATEWAY_REJECTED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorKind.SECRET_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ErrorKind.CANCELLATION_FAILED: status.HTTP_502_BAD_GATEWAY,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    billing_client = BillingServiceClient()
    gateway_client = StripeGatewayClient()
    guard = OperationGuard()
    events = EventBus()

    app.state.events = events
    app.state.account_source = billing_client
    app.state.coordinator = PaymentMethodProvisioningCoordinator(
        billing_client, gateway_client, billing_client, guard=guard, events=events
    )
    app.state.lifecycle_manager = SubscriptionLifecycleManager(
        billing_client, billing_client, guard=guard, events=events
    )
    logger.info("Billing service started (env=%s, guard=%s)", settings.ENV, settings.guard.backend)
    try:
        yield
    finally:
        await gateway_client.aclose()
        await billing_client.aclose()
        await close_redis_client()


async def billing_error_handler(_request: Request, exc: BillingError) -> JSONResponse:
    return JSONResponse(
        status_code=ERROR_STATUS.get(exc.kind, status.HTTP_400_BAD_REQUEST),
        content={"message": exc.message, "kind": exc.kind.value},
    )


async def integration_error_handler(_request: Request, exc: IntegrationError) -> JSONResponse:
    logger.warning("Billing service call failed: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_502_BAD_GATEWAY,
        content={"message": "Billing service unavailable. Please try again later."},
    )


async def http_error_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


def create_application() -> FastAPI:
    setup_logging()

    app = FastAPI(title="Billing Provisioning Service", lifespan=lifespan)
    app.add_exception_handler(BillingError, billing_error_handler)
    app.add_exception_handler(IntegrationError, integration_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)

    api_router = APIRouter(prefix=f"{settings.API_PREFIX}/v1")
    api_router.include_router(billing.router)
    app.include_router(api_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict:
        return {"status": "ok"}

    return app


app = create_application()

__all__ = ["create_application", "app"]

"""FastAPI application for the payments mirror.

Run with ``uvicorn payments_mirror.api:app``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from .auth import create_limiter, enforce_rate_limit, parse_rate_limit
from .config import Settings
from .connectors import SimulatedProvider
from .database import DatabaseManager
from .errors import (
    PaymentsMirrorError,
    LocalValidationError,
    NotFoundError,
    RefundRejectedError,
    SignatureInvalidError,
    InvalidEventPayloadError,
    ProviderRequestError,
    CredentialsMissingError,
    RateLimitedError,
)
from .reconciliation.api import router, get_service
from .reconciliation.service import ReconciliationService, build_service

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (LocalValidationError, 400),
    (SignatureInvalidError, 400),
    (InvalidEventPayloadError, 400),
    (RefundRejectedError, 409),
    (ProviderRequestError, 502),
    (CredentialsMissingError, 503),
    (RateLimitedError, 429),
)


def status_code_for(error: PaymentsMirrorError) -> int:
    for error_class, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


async def payments_error_handler(request: Request, exc: PaymentsMirrorError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.to_dict()}")
    else:
        logger.info(f"{request.method} {request.url.path} rejected: {exc.to_dict()}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[ReconciliationService] = None,
    simulator: Optional[SimulatedProvider] = None,
) -> FastAPI:
    """Build the API application.

    Args:
        settings: Application settings. Read from the environment when omitted.
        service: Prebuilt ReconciliationService. When omitted, one is built on
            startup over the configured database.
        simulator: Simulated provider to use when ``settings.provider`` is
            ``simulator``.

    Returns:
        Configured FastAPI application.
    """
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "service", None) is not None:
            yield
            return
        db_manager = DatabaseManager(settings.database_url)
        await db_manager.initialize()
        app.state.service = build_service(settings, db_manager.session_factory, simulator)
        logger.info(
            f"Payments mirror started in {settings.default_mode.value} mode "
            f"with the {settings.provider} provider"
        )
        try:
            yield
        finally:
            app.state.service = None
            await db_manager.shutdown()

    app = FastAPI(title="Payments Mirror", lifespan=lifespan)
    app.state.service = service

    app.state.limiter = create_limiter(settings.rate_limit_enabled)
    app.state.rate_limit = parse_rate_limit(settings.rate_limit)
    app.add_exception_handler(PaymentsMirrorError, payments_error_handler)

    # Webhooks and /health are not rate limited
    app.include_router(router, dependencies=[Depends(enforce_rate_limit)])

    @app.post("/webhooks/stripe", tags=["webhooks"])
    async def stripe_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None),
    ):
        """
        Receive a provider notification.

        Authenticated by signature only. Failures other than a bad signature
        or body return 5xx so the provider redelivers.
        """
        service = get_service(request)
        body = await request.body()
        result = await service.ingest_notification_event(body, stripe_signature or "")
        return {"received": True, **result.to_dict()}

    @app.get("/health", tags=["health"])
    async def health(request: Request):
        service = getattr(request.app.state, "service", None)
        return {
            "status": "healthy",
            "service": "payments-mirror",
            "provider": service.provider_health() if service is not None else None,
        }

    return app


app = create_app()

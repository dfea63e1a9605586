"""Billing gateway HTTP application"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from billing_gateway.api.dependencies import get_request_id
from billing_gateway.api.middleware import MetricsMiddleware, RequestIDMiddleware
from billing_gateway.api.v1 import subscriptions, webhooks
from billing_gateway.config import settings
from billing_gateway.domain.exceptions import AuditPersistenceError
from billing_gateway.infrastructure.observability.logging import setup_logging

setup_logging(settings.log_level)

logger = logging.getLogger(__name__)


async def audit_failure_handler(request: Request, exc: AuditPersistenceError) -> JSONResponse:
    # The transaction was rolled back with the audit entry; the caller may retry
    logger.critical(
        f"Audit trail unavailable: {exc}",
        extra={"request_id": get_request_id(request), "path": request.url.path},
    )
    return JSONResponse(
        status_code=500,
        content={"detail": "Operation not recorded, try again", "request_id": get_request_id(request)},
    )


def create_app() -> FastAPI:
    """Build the app: tracing and latency middleware, health, metrics, v1 billing routers"""
    app = FastAPI(
        title="Billing Gateway",
        description="Subscription lifecycle and payment processing service",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # Last added runs first, so request ids exist before latency is labelled
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_exception_handler(AuditPersistenceError, audit_failure_handler)

    @app.get("/health")
    def health_check():
        return {"status": "ok", "service": settings.service_name, "gateway": settings.payment_gateway}

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(subscriptions.router, prefix="/v1", tags=["subscriptions"])
    app.include_router(webhooks.router, prefix="/v1", tags=["webhooks"])

    return app


app = create_app()


def serve() -> None:
    """Run the API under uvicorn (billing-api console script)"""
    import uvicorn

    uvicorn.run(
        "billing_gateway.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        workers=settings.api_workers,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    serve()

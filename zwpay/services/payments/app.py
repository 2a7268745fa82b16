"""Application factory: registry wiring and the FastAPI app around the orchestrator."""

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from zwpay.common.config import CommonSettings, settings
from zwpay.common.logging import trace_id_ctx
from zwpay.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from zwpay.services.payments.api import router
from zwpay.services.payments.registry import (
    PAYMENT_METHOD_REPO,
    TRANSACTION_REPO,
    ProviderRegistry,
    RepositoryRegistry,
)
from zwpay.services.payments.repository import PaymentMethodRepository, TransactionRepository
from zwpay.services.payments.service import PaymentService
from zwpay.services.provider_adapter.sandbox import SandboxAdapter
from zwpay.services.provider_adapter.stripe_adapter import StripeAdapter


def build_service(session_factory, config: CommonSettings = settings) -> PaymentService:
    """Populate and freeze both registries, then wire the orchestrator."""

    providers = ProviderRegistry()
    if config.stripe_secret_key:
        stripe_adapter = StripeAdapter(
            config.stripe_secret_key, config.stripe_webhook_secret, config.webhook_tolerance_seconds
        )
        providers.register(stripe_adapter.identify(), stripe_adapter)
    if config.sandbox_enabled:
        sandbox = SandboxAdapter(config.sandbox_webhook_secret, config.webhook_tolerance_seconds)
        providers.register(sandbox.identify(), sandbox)
    providers.freeze()

    repositories = RepositoryRegistry()
    repositories.register(TRANSACTION_REPO, TransactionRepository(session_factory))
    repositories.register(PAYMENT_METHOD_REPO, PaymentMethodRepository(session_factory))
    repositories.freeze()

    return PaymentService(providers, repositories, config)


def create_app(service: PaymentService) -> FastAPI:
    app = FastAPI(title="zwpay Payments")
    app.state.payment_service = service

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency, and bind the caller's trace id."""

        trace_id_ctx.set(request.headers.get("x-trace-id") or request.headers.get("x-correlation-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(
                service=service.service_name,
                route=route,
                method=method,
            ).observe(elapsed)
            http_requests_total.labels(
                service=service.service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    app.include_router(router)
    return app

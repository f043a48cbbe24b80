from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from coris.api.bills import router as bills_router
from coris.api.deps import client_key
from coris.api.error_handling import error_response, register_exception_handlers
from coris.api.routes import router as auth_router
from coris.logging import get_logger, set_correlation_id
from coris.service.errors import RateLimitedError
from coris.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    runtime: Runtime = app.state.runtime
    try:
        if runtime.cache is not None:
            await runtime.cache.close()
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the API around ``runtime`` (or the process-wide one).

    Serve with ``uvicorn coris.app:create_app --factory``.
    """
    runtime = runtime or get_runtime()
    settings = runtime.settings

    app = FastAPI(title="CORIS", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def request_gate(request: Request, call_next):
        """CSRF then session checks for protected /v1/ paths; binds the principal."""
        request.state.principal = None
        if runtime.gate.classify(request.url.path) == "protected":
            allowed = await check_rate_limit(
                runtime,
                f"global:{client_key(request)}",
                settings.global_rate_limit_per_minute,
                60,
            )
            if not allowed:
                exc = RateLimitedError()
                return error_response(exc.status_code, exc.message)
        decision = await runtime.gate.evaluate(request)
        if not decision.allowed:
            return error_response(decision.error.status_code, decision.error.message)
        request.state.principal = decision.principal
        return await call_next(request)

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag log lines with X-Request-ID (client supplied or generated) and echo it."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    # Added last so it wraps everything, including gate rejections
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if settings.cors_allow_all else settings.allowed_origins,
        allow_origin_regex=".*" if settings.cors_allow_all else None,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-CSRF-Token", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    register_exception_handlers(app)
    app.include_router(auth_router)
    app.include_router(bills_router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        return {"ok": True}

    logger.info("app_created", version=__version__, csrf_enabled=settings.csrf_enabled)
    return app

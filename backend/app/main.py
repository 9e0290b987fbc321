"""Escrow Payments Backbone: FastAPI application entry point."""

import signal
import uuid
from contextlib import asynccontextmanager

# configure_structlog must run before the other app imports create their loggers
from app.core.logging import configure_structlog
from app.core.config import get_settings as _get_settings_early

_early_settings = _get_settings_early()
configure_structlog(
    log_level="DEBUG" if _early_settings.debug else "INFO",
    json_logs=not _early_settings.debug,
)

import structlog

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from app.api.routes import api_router
from app.core.config import get_settings
from app.core.exceptions import EscrowError
from app.db import close_db, init_db
from app.middleware.correlation import get_correlation_id, setup_correlation_middleware

logger = structlog.get_logger(__name__)

# Never echo processor or infrastructure text to callers
_PUBLIC_DETAIL = {
    "EXTERNAL_CALL_FAILED": "The payment provider could not complete the request",
}


def validate_secrets() -> None:
    """Refuse to start without webhook and worker secrets, except in debug mode."""
    settings = get_settings()
    if settings.debug:
        return
    missing = [
        name
        for name, value in (
            ("STRIPE_WEBHOOK_SECRET", settings.stripe_webhook_secret),
            ("WORKER_SECRET", settings.worker_secret),
        )
        if not value
    ]
    if missing:
        raise RuntimeError(f"Missing required secrets at startup: {missing}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # SIGTERM flips the flag so /health answers 503 while connections drain
    app.state.shutting_down = False

    def handle_sigterm(signum, frame):
        app.state.shutting_down = True
        logger.info("sigterm_received", action="draining")

    signal.signal(signal.SIGTERM, handle_sigterm)

    settings = get_settings()
    logger.info("startup_begin", app_name=settings.app_name, environment=settings.environment)
    validate_secrets()
    await init_db()
    logger.info("db_initialized")

    yield

    await close_db()
    logger.info("shutdown_complete")


def _error_response(request: Request, status_code: int, detail: str, event: str, code: str | None = None, **log_fields) -> JSONResponse:
    """Log with a fresh debug id and return the sanitized body callers see."""
    debug_id = str(uuid.uuid4())
    log = logger.error if status_code >= 500 else logger.warning
    log(
        event,
        status_code=status_code,
        debug_id=debug_id,
        code=code,
        correlation_id=get_correlation_id(),
        path=request.url.path,
        method=request.method,
        user_id=getattr(request.state, "user_id", None),
        **log_fields,
    )
    content = {"detail": detail, "debug_id": debug_id}
    if code is not None:
        content["code"] = code
    return JSONResponse(status_code=status_code, content=content)


async def escrow_exception_handler(request: Request, exc: EscrowError) -> JSONResponse:
    detail = _PUBLIC_DETAIL.get(exc.code, exc.message)
    if exc.status_code >= 500 and exc.code not in _PUBLIC_DETAIL and exc.code != "INVALID_SIGNATURE":
        detail = "Internal server error"
    return _error_response(request, exc.status_code, detail, "escrow_error", code=exc.code, error=exc.message)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return _error_response(request, exc.status_code, exc.detail, "http_exception")


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    return _error_response(
        request,
        500,
        "Internal server error",
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Payment-event backbone for an escrow marketplace",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    setup_correlation_middleware(app)

    app.add_exception_handler(EscrowError, escrow_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(api_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)

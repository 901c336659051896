import logging
import uuid

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .config import get_settings
from .db import init_db, session_scope
from .errors import QboConnectError
from .logging_config import configure_logging
from .metrics import metrics
from .routers import qbo_integration


def create_app() -> FastAPI:
    configure_logging()
    logger = logging.getLogger(__name__)
    try:
        init_db()
    except Exception:
        # Do not block startup if the database is temporarily unavailable.
        logger.exception("init_db_failed_startup_continue")

    app = FastAPI(
        title="QuickBooks Connection Service",
        description="OAuth credential lifecycle and permission-gated QuickBooks access.",
        version="0.1.0",
    )

    settings = get_settings()
    # Log only high-level, non-sensitive configuration.
    logger.info(
        "app_config_summary_sanitized",
        extra={
            "environment": settings.environment,
            "qbo_configured": settings.quickbooks.configured,
            "qbo_sandbox": settings.quickbooks.sandbox,
            "encryption_key_configured": bool(settings.credentials.encryption_key),
            "refresh_buffer_seconds": settings.credentials.refresh_buffer_seconds,
        },
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = rid
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    @app.exception_handler(QboConnectError)
    async def qbo_error_handler(request: Request, exc: QboConnectError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log(
            "qbo_request_failed",
            extra={
                "path": request.url.path,
                "code": exc.code,
                "status_code": exc.status_code,
                "detail": str(exc),
                "request_id": getattr(request.state, "request_id", None),
            },
        )
        headers = {"Retry-After": "5"} if exc.retryable else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.to_body().model_dump()},
            headers=headers,
        )

    app.include_router(
        qbo_integration.router, prefix="/v1/integrations/qbo", tags=["quickbooks"]
    )

    @app.get("/healthz", tags=["health"])
    async def health_check() -> dict:
        return {"status": "ok"}

    @app.get("/readyz", tags=["health"])
    async def readiness_check() -> dict:
        """Ready once the database answers a trivial query."""
        db_healthy = False
        try:
            with session_scope() as session:
                session.execute(text("SELECT 1"))
            db_healthy = True
        except Exception:
            logger.warning("readiness_db_check_failed", exc_info=True)
        return {"status": "ok" if db_healthy else "degraded", "database": db_healthy}

    @app.get("/metrics", tags=["health"])
    async def metrics_snapshot() -> dict:
        return metrics.as_dict()

    return app


app = create_app()

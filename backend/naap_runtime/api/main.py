"""
NaaP Runtime - FastAPI Application
==================================

Main application factory with all routers and middleware.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from naap_runtime.api import gateway_admin, lifecycle
from naap_runtime.core.config import settings
from naap_runtime.core.database import AsyncSessionLocal, close_db, get_db_session, init_db
from naap_runtime.core.exceptions import ErrorCode, RuntimeServiceError
from naap_runtime.core.gateway.templates import seed_templates
from naap_runtime.core.runtime import build_services
from naap_runtime.core.schemas import ErrorResponse, HealthResponse

logger = structlog.get_logger()


def configure_logging(json_logs: bool) -> None:
    """Install the structlog pipeline; JSON lines in production, console otherwise."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ==========================================================================
# Lifespan
# ==========================================================================

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan handler.

    Startup:
    - Create tables and seed connector templates
    - Rebuild the port table and restart plugin monitors

    Shutdown:
    - Stop every monitor and flush pending audit writes
    - Close database connections
    """
    logger.info("Starting NaaP runtime", version=settings.APP_VERSION)

    await init_db()
    async with get_db_session() as db:
        seeded = await seed_templates(db)
    logger.info("Database initialized", templates_seeded=seeded)

    services = app.state.services
    await services.start()

    yield

    logger.info("Shutting down NaaP runtime")
    await services.stop()
    await close_db()
    logger.info("Database connections closed")


# ==========================================================================
# Error Rendering
# ==========================================================================

def render_error(exc: RuntimeServiceError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=exc.message,
            code=exc.code.value,
            details=exc.details or None,
        ).model_dump(exclude_none=True),
    )


# ==========================================================================
# App Factory
# ==========================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    The app owns its RuntimeServices; tests replace app.state.services
    before the first request.
    """
    configure_logging(json_logs=settings.is_production)

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="NaaP plugin lifecycle and service gateway runtime",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        openapi_url="/openapi.json" if settings.is_development else None,
        lifespan=lifespan,
    )
    app.state.services = build_services(AsyncSessionLocal)

    # ==========================================================================
    # Middleware
    # ==========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ==========================================================================
    # Exception Handlers
    # ==========================================================================

    @app.exception_handler(RuntimeServiceError)
    async def runtime_error_handler(request: Request, exc: RuntimeServiceError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.info
        log("request_failed", path=request.url.path, code=exc.code.value, error=exc.message)
        return render_error(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=422,
            content=ErrorResponse(
                error="Request validation failed",
                code=ErrorCode.VALIDATION_ERROR.value,
                details={"errors": jsonable_errors(exc)},
            ).model_dump(exclude_none=True),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
        )

        if settings.is_development:
            detail = str(exc)
        else:
            detail = "An unexpected error occurred"

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(
                error="Internal Server Error",
                detail=detail,
                code=ErrorCode.INTERNAL_ERROR.value,
            ).model_dump(exclude_none=True),
        )

    # ==========================================================================
    # Routers
    # ==========================================================================

    @app.get(
        "/health",
        response_model=HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    async def health_check() -> HealthResponse:
        """Application and database status."""
        database = "connected"
        try:
            async with app.state.services.session_factory() as db:
                await db.execute(text("SELECT 1"))
        except Exception as e:
            logger.warning("Health check could not reach the database", error=str(e))
            database = "unreachable"

        return HealthResponse(
            status="healthy" if database == "connected" else "degraded",
            version=settings.APP_VERSION,
            environment=settings.ENVIRONMENT,
            database=database,
        )

    app.include_router(gateway_admin.router, prefix=settings.API_V1_PREFIX)
    app.include_router(lifecycle.router, prefix=settings.API_V1_PREFIX)

    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


# ==========================================================================
# Application Instance
# ==========================================================================

app = create_app()


# ==========================================================================
# Development Server
# ==========================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "naap_runtime.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level="info",
    )

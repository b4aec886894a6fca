"""
FastAPI application entry point.

This module creates and configures the FastAPI application.
Using an application factory pattern (create_app function) because:
- Easier to test with different configurations
- Explicit about initialization order

For local development:
    uvicorn r2migrate.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.routes import health, migration
from .config.settings import get_settings
from .core.errors import (
    AuthorizationError,
    ConfigurationError,
    MigrationError,
    ProtocolError,
)

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log configuration problems on startup; nothing to clean up on shutdown."""
    settings = get_settings()
    logging.getLogger().setLevel(settings.log_level.upper())

    logger.info(
        "R2 migration API starting",
        extra={
            "version": settings.api_version,
            "mock_mode": {
                "snowflake": settings.snowflake_mock_mode,
                "r2": settings.r2_mock_mode,
            }
        }
    )

    missing_fields = settings.validate_required_fields()
    if missing_fields:
        # Requests that need the missing pieces fail with 500 until fixed
        logger.error(
            "Missing required configuration",
            extra={"missing_fields": missing_fields}
        )

    yield

    logger.info("R2 migration API shutting down")


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": message})


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the migration error taxonomy to HTTP status codes.

    Routes raise HTTPException for request problems; anything from the
    engine that escapes a route lands here.
    """

    @app.exception_handler(AuthorizationError)
    async def authorization_error_handler(request: Request, exc: AuthorizationError):
        return _error_response(status.HTTP_403_FORBIDDEN, str(exc))

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError):
        logger.error(
            "Configuration error",
            extra={"path": request.url.path, "error": str(exc)}
        )
        return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc))

    @app.exception_handler(ProtocolError)
    async def protocol_error_handler(request: Request, exc: ProtocolError):
        logger.error(
            "Object store rejected request",
            extra={"path": request.url.path, "error": str(exc), "status_code": exc.status_code}
        )
        return _error_response(status.HTTP_502_BAD_GATEWAY, str(exc))

    @app.exception_handler(MigrationError)
    async def migration_error_handler(request: Request, exc: MigrationError):
        logger.error(
            "Migration error",
            extra={"path": request.url.path, "error": str(exc)}
        )
        return _error_response(status.HTTP_502_BAD_GATEWAY, str(exc))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """
        Catch-all exception handler.

        Prevents stack traces from leaking to clients. We log the full
        error server-side but return a generic message.
        """
        logger.error(
            "Unhandled exception",
            extra={
                "path": request.url.path,
                "method": request.method,
                "error": str(exc),
            },
            exc_info=exc,
        )
        return _error_response(
            status.HTTP_500_INTERNAL_SERVER_ERROR,
            "Internal server error. Please contact support if this persists.",
        )


def create_app() -> FastAPI:
    """
    Application factory.

    Creates and configures the FastAPI application.
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="""
        Moves legacy videos and thumbnails into Cloudflare R2.

        ## Authentication

        Every call needs an admin API key in the `X-API-Key` header.

        ## Workflow

        1. `get-stats` / `get-pending` to see what is left
        2. Either `migrate-video` to move one item server-side, or drive the
           upload yourself with `initiate-multipart`, `get-part-url`,
           `complete-multipart` and then `update-video-urls`
        3. `mark-failed` to record a failed client-side attempt
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # Configure allowed origins via CORS_ORIGINS environment variable
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(
        health.router,
        prefix="/health",
        tags=["Health"],
    )

    app.include_router(
        migration.router,
        prefix="/api/v1/migrate-to-r2",
        tags=["Migration"],
    )

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "message": settings.api_title,
            "version": settings.api_version,
            "docs": "/docs",
            "health": "/health",
        }

    register_exception_handlers(app)

    logger.info(
        "FastAPI application created",
        extra={
            "title": settings.api_title,
            "version": settings.api_version,
        }
    )

    return app


# Create the application instance
# This is what uvicorn will import
app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()

    uvicorn.run(
        "r2migrate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level=settings.log_level.lower(),
    )

"""FastAPI application entry point."""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from matchguard.api.api import api_router
from matchguard.core.config import Settings, settings as default_settings
from matchguard.core.exceptions import AppException, SecurityBlockError
from matchguard.services.container import SecurityServices, build_services

# Configure logging
logging.basicConfig(
    level=getattr(logging, default_settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def _check_config(settings: Settings) -> None:
    """Fail fast on security configuration errors outside DEBUG mode."""
    warnings, errors = settings.validate_security()
    for warning in warnings:
        logger.warning(f"Config Warning: {warning}")
    if errors and not settings.DEBUG:
        logger.error("=" * 60)
        logger.error("FATAL: Security configuration errors detected")
        logger.error("=" * 60)
        for i, error in enumerate(errors, 1):
            logger.error(f"  {i}. {error}")
        logger.error("In development, set DEBUG=true to bypass strict validation.")
        raise RuntimeError(
            f"Critical security configuration errors ({len(errors)} issues). "
            "Check logs for details."
        )


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[SecurityServices] = None,
) -> FastAPI:
    """Build the application. Tests pass their own settings and services."""
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"{settings.SITE_NAME} login defense API starting up...")
        _check_config(settings)
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        yield
        logger.info("Shutting down...")
        app.state.services.shutdown()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="MatchGuard API",
        description="Adaptive login defense and session integrity",
        version="1.0.0",
        debug=settings.DEBUG,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
    )

    app.include_router(api_router)

    # ── Global Exception Handlers ──

    @app.exception_handler(AppException)
    async def app_exception_handler(request: Request, exc: AppException):
        """Convert AppException subclasses to structured JSON responses."""
        headers = exc.headers() if isinstance(exc, SecurityBlockError) else None
        return JSONResponse(
            status_code=exc.http_status,
            content=exc.to_dict(),
            headers=headers,
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        """Catch-all handler to prevent stack trace leaking in production."""
        logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error": "INTERNAL_ERROR",
                "message": "An unexpected error occurred." if not settings.DEBUG else str(exc),
                "details": {},
            },
        )

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        cache_ok = app.state.services.cache.ping() if app.state.services else False
        return {"status": "healthy" if cache_ok else "degraded", "cache": cache_ok}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("matchguard.main:app", host="0.0.0.0", port=8000, reload=True)

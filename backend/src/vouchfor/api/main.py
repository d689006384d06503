"""Main FastAPI application for the vouchfor referral ledger."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from starlette.middleware.base import BaseHTTPMiddleware

from vouchfor import __version__
from vouchfor.api.deps import LedgerServices
from vouchfor.api.links import router as links_router
from vouchfor.api.rate_limit import limiter
from vouchfor.api.v1.programs import router as programs_router
from vouchfor.api.v1.tracking import router as tracking_router
from vouchfor.api.v1.webhooks import router as webhooks_router
from vouchfor.ledger.exceptions import LedgerError
from vouchfor.logging_config import configure_logging, get_logger
from vouchfor.settings import settings
from vouchfor.storage.db import Database

logger = get_logger(__name__)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses.

    The API serves JSON and redirects only, so nothing may be framed or
    sniffed and referrers are trimmed to the origin across sites.
    """

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        return response


def create_app(db: Database | None = None) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        db: Database to bind the services to (defaults to settings.database_url)

    Returns:
        Configured FastAPI app
    """
    configure_logging()
    db = db or Database()
    is_production = settings.is_production

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan handler."""
        logger.info("app_starting", env=settings.env, version=__version__)

        db.create_tables()
        logger.info("database_tables_created")

        yield

        logger.info("app_shutting_down")
        db.dispose()

    app = FastAPI(
        title="Vouchfor API",
        description="Referral attribution and commission ledger",
        version=__version__,
        docs_url=None if is_production else "/api/docs",
        redoc_url=None if is_production else "/api/redoc",
        openapi_url=None if is_production else "/api/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = LedgerServices.from_database(db)

    # Security Headers middleware (must be added before CORS)
    app.add_middleware(SecurityHeadersMiddleware)

    # The tracker beacon is posted from vendor sites, so wildcard origins are
    # allowed, but never together with credentials
    allowed_origins = [
        origin.strip()
        for origin in settings.allowed_origins.split(",")
        if origin.strip()
    ]
    wildcard = "*" in allowed_origins
    if is_production and wildcard:
        logger.warning("cors_wildcard_enabled", credentials=False)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=not wildcard,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "Stripe-Signature"],
        max_age=3600,  # Cache preflight for 1 hour
    )

    # Rate limiting (shared instance from rate_limit module)
    app.state.limiter = limiter

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
        return JSONResponse(
            status_code=429,
            content={"error": "Too many requests. Please try again later."},
        )

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        if exc.status_code >= 500:
            logger.error("request_failed", path=request.url.path, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    # Tracking links live at the root so they stay short
    app.include_router(links_router)

    app.include_router(webhooks_router, prefix="/api/v1")
    app.include_router(tracking_router, prefix="/api/v1")
    app.include_router(programs_router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": __version__,
            "env": settings.env,
        }

    return app


# Create app instance
app = create_app()

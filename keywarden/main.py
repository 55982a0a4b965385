"""KeyWarden - access control and credential protection service."""

import logging
import os
import tomllib
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from keywarden.api import api_router
from keywarden.config import RATE_LIMIT_CAPACITY, RATE_LIMIT_WINDOW_SECONDS, get_encryption_key
from keywarden.db import init_db
from keywarden.exceptions import (
    AlreadyResolvedError,
    DecryptionError,
    DeviceFlowError,
    DuplicateError,
    NoGuardiansError,
    NotGuardianError,
    PermissionDeniedError,
    RateLimitedError,
    RequestExpiredError,
    RequestNotFoundError,
    ResourceNotFoundError,
    SSRFProtectionError,
)
from keywarden.services.notifications import create_notifier
from keywarden.services.rate_limiter import RateLimiter
from keywarden.utils.encryption import validate_encryption_config
from keywarden.utils.security import sanitize_log_message


def get_version() -> str:
    """Read version from pyproject.toml (single source of truth)."""
    try:
        pyproject_path = Path(__file__).parent.resolve().parent / "pyproject.toml"
        if not pyproject_path.exists():
            logger.warning(f"pyproject.toml not found at {pyproject_path}")
            return "0.0.0-dev"

        with open(pyproject_path, "rb") as f:
            data = tomllib.load(f)
        return data["project"]["version"]
    except (FileNotFoundError, KeyError) as e:
        logger.warning(f"Could not read version from pyproject.toml: {e}")
        return "0.0.0-dev"


# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class EndpointFilter(logging.Filter):
    """Filter to exclude specific endpoints from Granian access logs."""

    def __init__(self, excluded_paths: list[str]) -> None:
        super().__init__()
        self.excluded_paths = excluded_paths

    def filter(self, record: logging.LogRecord) -> bool:
        """Return False if the log record is for an excluded endpoint."""
        message = record.getMessage()
        return not any(path in message for path in self.excluded_paths)


logging.getLogger("granian.access").addFilter(EndpointFilter(["/health"]))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown.

    A missing or malformed encryption key raises ConfigurationError here,
    which aborts startup before any request is served.
    """
    logger.info("Starting KeyWarden...")

    app.state.cipher = validate_encryption_config(get_encryption_key())
    logger.info("Encryption key validated")

    await init_db()
    logger.info("Database initialized")

    limiter = RateLimiter(RATE_LIMIT_CAPACITY, RATE_LIMIT_WINDOW_SECONDS)
    limiter.start()
    app.state.limiter = limiter

    notifier = create_notifier()
    app.state.notifier = notifier
    logger.info(f"Approval notifications via {notifier.service_name}")

    yield

    await limiter.stop()
    await notifier.close()
    logger.info("Shutting down KeyWarden...")


app = FastAPI(
    title="KeyWarden",
    description="Access control and credential protection engine",
    version=get_version(),
    lifespan=lifespan,
)

# CORS: explicit origins only, nothing by default
cors_origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
if cors_origins:
    if cors_origins == ["*"]:
        logger.warning("CORS configured with wildcard (*) - not recommended for production")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=cors_origins != ["*"],
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key", "Accept"],
    )


@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Cache-Control"] = "no-store"
    return response


# ============================================================================
# Domain exception handlers
# ============================================================================


def _error(status_code: int, detail: str, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail}, headers=headers)


@app.exception_handler(RateLimitedError)
async def rate_limited_handler(request: Request, exc: RateLimitedError):
    headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
    return _error(429, str(exc), headers)


@app.exception_handler(DecryptionError)
async def decryption_error_handler(request: Request, exc: DecryptionError):
    # Never tell the caller whether the value exists but cannot be read
    return _error(404, "Field not found")


@app.exception_handler(ResourceNotFoundError)
@app.exception_handler(RequestNotFoundError)
async def not_found_handler(request: Request, exc: Exception):
    return _error(404, str(exc) or "Not found")


@app.exception_handler(PermissionDeniedError)
@app.exception_handler(NotGuardianError)
async def permission_denied_handler(request: Request, exc: Exception):
    return _error(403, "Access denied")


@app.exception_handler(DuplicateError)
@app.exception_handler(AlreadyResolvedError)
async def conflict_handler(request: Request, exc: Exception):
    return _error(409, str(exc))


@app.exception_handler(RequestExpiredError)
async def expired_handler(request: Request, exc: RequestExpiredError):
    return _error(410, str(exc) or "Request expired")


@app.exception_handler(NoGuardiansError)
async def no_guardians_handler(request: Request, exc: NoGuardiansError):
    return _error(422, str(exc) or "Resource has no guardians")


@app.exception_handler(SSRFProtectionError)
async def ssrf_handler(request: Request, exc: SSRFProtectionError):
    return _error(400, str(exc))


@app.exception_handler(DeviceFlowError)
async def device_flow_handler(request: Request, exc: DeviceFlowError):
    """OAuth2 device grant errors use ``{"error": code}`` on the wire."""
    return JSONResponse(status_code=400, content={"error": exc.error_code})


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Generic exception handler to prevent stack trace exposure.

    In DEBUG mode (KEYWARDEN_DEBUG=true), detailed errors are shown for
    development. All errors are still logged internally with full details.
    """
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {sanitize_log_message(str(exc))}",
        exc_info=True,
        extra={
            "path": request.url.path,
            "method": request.method,
            "client": request.client.host if request.client else "unknown",
        },
    )

    if os.getenv("KEYWARDEN_DEBUG", "false").lower() == "true":
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc), "type": type(exc).__name__, "debug": True},
        )

    return JSONResponse(
        status_code=500,
        content={"detail": "An internal error occurred. Please contact support if this persists."},
    )


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "keywarden"}


app.include_router(api_router)

"""
Immigration Case API
====================

FastAPI application for immigration case management.

Endpoints (all under /api/v1):
- /auth/*   - Registration, login, session and password management
- /users/*  - Admin account management
- /cases/*  - Case CRUD, search, statistics, documents, notes, timeline

Health:
- GET /health, GET /api/health

Run with:
    uvicorn immigration_api.api:app --host 0.0.0.0 --port 8000
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api_auth import router as auth_router
from .api_cases import router as cases_router
from .api_users import router as users_router
from .config import get_settings
from .db.session import get_db_session, init_db
from .errors import AppError
from .middleware import RateLimitMiddleware, SecurityHeadersMiddleware
from .schemas import HealthResponse

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"


# =============================================================================
# FastAPI App
# =============================================================================

settings = get_settings()

app = FastAPI(
    title="Immigration Case API",
    description="Case management for immigration law practices",
    version=settings.service_version,
    docs_url="/docs",
    redoc_url="/redoc",
)

CORS_ALLOW_ORIGINS = settings.cors_origins()
logger.info(f"CORS allow origins: {CORS_ALLOW_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=["*"],
)

app.add_middleware(SecurityHeadersMiddleware)
logger.info("Security headers middleware enabled")

if settings.rate_limit_enabled:
    app.add_middleware(RateLimitMiddleware)
    logger.info(f"Rate limiting enabled ({settings.rate_limit_per_hour}/hour per IP)")

app.include_router(auth_router, prefix=API_PREFIX)
app.include_router(users_router, prefix=API_PREFIX)
app.include_router(cases_router, prefix=API_PREFIX)


# =============================================================================
# Health
# =============================================================================

def _database_status() -> str:
    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
        return "ok"
    except SQLAlchemyError as e:
        logger.warning(f"Health check database ping failed: {e.__class__.__name__}")
        return "unavailable"


@app.get("/health", response_model=HealthResponse, tags=["Health"])
@app.get("/api/health", response_model=HealthResponse, tags=["Health"])
def health_check():
    """Health check endpoint"""
    database = _database_status()
    return HealthResponse(
        status="ok" if database == "ok" else "degraded",
        version=get_settings().service_version,
        database=database,
    )


# =============================================================================
# Lifecycle
# =============================================================================

@app.on_event("startup")
def startup_event():
    """Initialize on startup"""
    current = get_settings()
    logger.info(f"Starting Immigration Case API v{current.service_version} ({current.environment})")
    for warning in current.validate_security_config():
        logger.warning(f"Security config: {warning}")
    init_db()
    logger.info("Database tables ready")


# =============================================================================
# Error handlers
# =============================================================================

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    """Operational errors raised by the services."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(StarletteHTTPException)
async def api_http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Framework errors (unknown route, method not allowed) in the API envelope."""
    message = exc.detail if isinstance(exc.detail, str) and exc.detail else "Request failed"
    if exc.status_code == 404 and message == "Not Found":
        message = f"Can't find {request.url.path} on this server!"
    return JSONResponse(
        status_code=exc.status_code,
        content={"status": "fail" if exc.status_code < 500 else "error", "message": message},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def api_validation_exception_handler(request: Request, exc: RequestValidationError):
    """Return structured validation errors without leaking inputs."""
    sanitized_errors = [
        {"loc": err.get("loc"), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={
            "status": "fail",
            "message": "Invalid input data",
            "errors": sanitized_errors,
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler - always return valid JSON"""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    content = {"status": "error", "message": "Something went very wrong!"}
    if not get_settings().is_production:
        content["error"] = exc.__class__.__name__
    return JSONResponse(status_code=500, content=content)


# =============================================================================
# Main (for direct execution)
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "immigration_api.api:app",
        host="0.0.0.0",
        port=8000,
        reload=True
    )

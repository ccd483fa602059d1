"""QuickJob Backend API - FastAPI application."""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .config import get_settings
from .logging_config import get_logger, setup_logging
from .payments import PaymentGatewayError, StripeGateway
from .rate_limit import limiter
from .routes import (
    admin_router,
    auth_router,
    clients_router,
    incidents_router,
    jobs_router,
    maintenance_router,
    payments_router,
    students_router,
)

logger = get_logger("quickjob.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()
    setup_logging(settings.log_level)
    logger.info(f"Starting QuickJob Backend API (debug={settings.debug})")

    app.state.payment_gateway = None
    if settings.stripe_secret_key:
        try:
            app.state.payment_gateway = StripeGateway.from_settings(settings)
        except PaymentGatewayError as e:
            logger.error(f"Stripe not configured: {e}")
    else:
        logger.warning("STRIPE_SECRET_KEY not set; payment routes will answer 503")

    yield
    logger.info("Shutting down QuickJob Backend API")


app = FastAPI(
    title="QuickJob Backend API",
    description="Student job marketplace: jobs, applications, payments and incidents",
    version=__version__,
    lifespan=lifespan,
)

# Rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# Errors are always rendered as {"error": "..."}
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
        message = first.get("msg", "Invalid request")
        detail = f"{field}: {message}" if field else message
    else:
        detail = "Invalid request"
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": detail})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Internal server error"},
    )


# CORS middleware
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(auth_router)
app.include_router(jobs_router)
app.include_router(clients_router)
app.include_router(students_router)
app.include_router(payments_router)
app.include_router(incidents_router)
app.include_router(admin_router)
app.include_router(maintenance_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "service": "quickjob-backend",
        "version": __version__,
        "status": "ok",
    }


@app.get("/health")
async def health():
    """Detailed health check with actual database verification."""
    from .database import JOBS_TABLE, get_supabase_client

    db_status = "disconnected"
    try:
        db = get_supabase_client()
        db.table(JOBS_TABLE).select("id").limit(1).execute()
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:50]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "database": db_status,
        "payments": "configured" if getattr(app.state, "payment_gateway", None) else "disabled",
    }

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Import models so they're registered with SQLAlchemy Base before create_all
from . import models_google_calendar  # noqa: F401
from .cache import build_cache
from .config import CALENDAR_PROVIDER
from .database import Base, engine
from .domain.calendar.router import router as calendar_router
from .domain.calendar.errors import (
    AuthError,
    CalendarError,
    InvalidTransition,
    NotConfigured,
    NotFound,
    ProviderError,
    ProviderErrorKind,
    SlotUnavailable,
)
from .domain.calendar.provider import get_calendar_provider

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    try:
        Base.metadata.create_all(bind=engine, checkfirst=True)
        logger.info("Database tables created successfully")
    except Exception as e:
        # Ignore "already exists" errors from race conditions between workers
        error_msg = str(e)
        if "already exists" in error_msg or "duplicate key" in error_msg:
            logger.info("Database tables already exist (created by another worker)")
        else:
            logger.error(f"Failed to create database tables: {e}")
            raise

    if not hasattr(app.state, "cache"):
        app.state.cache = build_cache()
    if not hasattr(app.state, "calendar_provider"):
        app.state.calendar_provider = get_calendar_provider(CALENDAR_PROVIDER)
        logger.info(f"Calendar provider: {CALENDAR_PROVIDER}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Calendar Booking API", version="1.0.0", lifespan=lifespan)


# ============================================================================
# DOMAIN ERRORS
# ============================================================================

PROVIDER_ERROR_STATUS = {
    ProviderErrorKind.REAUTHORIZE: 401,
    ProviderErrorKind.RATE_LIMITED: 429,
    ProviderErrorKind.RETRYABLE: 503,
    ProviderErrorKind.INVALID_REQUEST: 502,
}


def _error_response(status_code: int, exc: CalendarError, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "code": exc.code, **extra},
    )


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    logger.warning(f"Calendar re-authorization required for {request.url.path}: {exc.message}")
    return _error_response(401, exc)


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError):
    logger.error(f"❌ {request.method} {request.url.path} - {exc}")
    response = JSONResponse(
        status_code=PROVIDER_ERROR_STATUS[exc.kind],
        content={"detail": exc.message, "code": exc.kind.value},
    )
    if exc.kind == ProviderErrorKind.RATE_LIMITED:
        response.headers["Retry-After"] = "30"
    return response


@app.exception_handler(SlotUnavailable)
async def slot_unavailable_handler(request: Request, exc: SlotUnavailable):
    alternatives = [slot.model_dump(mode="json") for slot in exc.alternatives]
    return _error_response(409, exc, alternatives=alternatives)


@app.exception_handler(NotConfigured)
async def not_configured_handler(request: Request, exc: NotConfigured):
    return _error_response(412, exc)


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return _error_response(404, exc)


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return _error_response(409, exc)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    # ctx may carry the raw ValueError from a validator
    errors = [{k: v for k, v in error.items() if k != "ctx"} for error in exc.errors()]
    return JSONResponse(status_code=422, content={"detail": errors})


# CORS Configuration
ALLOWED_ORIGINS = os.getenv(
    "ALLOWED_ORIGINS",
    "http://localhost:5173,http://localhost:3000",
).split(",")

logger.info(f"CORS allowed origins: {ALLOWED_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
)

# Routes
app.include_router(calendar_router)


@app.get("/")
def root():
    return {"message": "Calendar Booking API is running"}


@app.get("/health")
def health():
    return {"status": "healthy"}

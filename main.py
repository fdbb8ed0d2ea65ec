"""
main.py
FastAPI application entry point.
Registers all routers, middleware, exception handlers and the
startup/shutdown lifecycle.

Production features:
- Multiple instances behind a load balancer; realtime events cross
  instances through Redis pub/sub
- Unauthenticated rate limiting
- Request ids and structured JSON logs
- Prometheus metrics
"""

import json
import logging
import os
import time
import uuid
from contextlib import asynccontextmanager
from logging import LogRecord

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from config.database import close_db, init_db
from config.redis_client import RateLimiter, close_redis, init_redis
from config.settings import settings
from shared.utils.exceptions import DispatchError, TransientError, ValidationError

# Service routers
from services.booking.router import router as booking_router
from services.notification.fanout import FanoutListener, session_registry
from services.notification.router import router as notification_router
from services.review.router import router as review_router
from services.search.router import router as search_router
from services.worker.router import router as worker_router


# ── Logging ──────────────────────────────────────────────────

_RESERVED = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record: LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "instance": os.getenv("INSTANCE_NAME", "unknown"),
        }
        # Fields passed through `extra=`
        for key, value in record.__dict__.items():
            if key not in _RESERVED and not key.startswith("_"):
                log_data[key] = value
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if settings.DEBUG else logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)


# ── Lifespan (startup/shutdown) ───────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle handler."""
    logger.info("Starting API", extra={"app": settings.APP_NAME, "env": settings.APP_ENV})

    await init_db()
    logger.info("Database connected")

    listener = None
    if settings.FANOUT_BACKEND == "redis":
        await init_redis()
        logger.info("Redis connected")

        from config.redis_client import get_redis
        listener = FanoutListener(get_redis(), session_registry, settings.FANOUT_CHANNEL_PREFIX)
        listener.start()

    logger.info("API ready", extra={"version": settings.APP_VERSION})
    yield

    if listener:
        await listener.stop()
    await close_redis()
    await close_db()
    logger.info("Server shutdown complete")


# ── Error rendering ───────────────────────────────────────────

def _error_response(request: Request, exc: DispatchError) -> JSONResponse:
    body = exc.to_dict()
    body["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=exc.status_code, content=body)


def _field_errors(exc: RequestValidationError) -> list:
    errors = []
    for err in exc.errors():
        loc = [str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")]
        message = str(err.get("msg", "Invalid value"))
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": ".".join(loc) or "body", "message": message})
    return errors


# ── App Factory ───────────────────────────────────────────────

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="""
## Home Repair Dispatch API

Matches homeowners with nearby available workers and coordinates each job:
- **Search**: nearby workers for homeowners, nearby pending requests for workers
- **Bookings**: pending → accepted → in_progress → completed, or cancelled
- **Payments**: payment confirmation closes the job
- **Reviews**: one per booking, worker rating recomputed on every submit
- **Notifications**: durable in-app journal + live WebSocket events

### Authentication
All protected endpoints require `Authorization: Bearer <access_token>`
issued by the identity service.

### Roles
- `homeowner`: create, cancel, pay and review bookings
- `worker`: accept and progress bookings, manage profile and availability
        """,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ── Middleware ─────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Process-Time"],
    )

    # GZip compression
    app.add_middleware(GZipMiddleware, minimum_size=500)

    # ── Custom Middleware ──────────────────────────────────────────

    @app.middleware("http")
    async def rate_limit_middleware(request: Request, call_next):
        """
        Per-IP limit for unauthenticated callers. Authenticated traffic is
        limited upstream. Fails open when Redis is unavailable.
        """
        skip_paths = {"/health", "/docs", "/redoc", "/openapi.json", "/metrics"}
        if request.url.path in skip_paths:
            return await call_next(request)
        if request.headers.get("Authorization", "").startswith("Bearer "):
            return await call_next(request)

        from config.redis_client import redis_client
        if redis_client:
            client_ip = request.client.host if request.client else "unknown"
            try:
                allowed = await RateLimiter(redis_client).allow(
                    f"rate:unauth:{client_ip}", settings.RATE_LIMIT_UNAUTH_PER_MINUTE
                )
            except Exception:
                logger.warning("Rate limit check failed", exc_info=True)
                allowed = True
            if not allowed:
                logger.warning("Rate limit exceeded", extra={"client_ip": client_ip})
                return JSONResponse(
                    status_code=429,
                    content={"detail": "Rate limit exceeded. Please slow down.", "code": "rate_limited"},
                    headers={"Retry-After": "60"},
                )

        return await call_next(request)

    @app.middleware("http")
    async def process_time_middleware(request: Request, call_next):
        """Track and expose request processing time."""
        start = time.perf_counter()
        response = await call_next(request)
        process_time = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Process-Time"] = f"{process_time}ms"
        return response

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add unique X-Request-ID to every request for distributed tracing."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    # ── Exception Handlers ─────────────────────────────────────────

    @app.exception_handler(DispatchError)
    async def dispatch_error_handler(request: Request, exc: DispatchError):
        return _error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error_response(request, ValidationError(_field_errors(exc)))

    @app.exception_handler(OperationalError)
    @app.exception_handler(InterfaceError)
    @app.exception_handler(PoolTimeoutError)
    async def store_unavailable_handler(request: Request, exc: Exception):
        """Durable store failure: the caller may retry the whole request."""
        logger.error(
            "Database unavailable",
            extra={"request_id": getattr(request.state, "request_id", None)},
            exc_info=True,
        )
        return _error_response(request, TransientError())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Catch-all exception handler. Never expose internals to the caller."""
        request_id = getattr(request.state, "request_id", None)
        logger.error("Unhandled exception", extra={"request_id": request_id}, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "detail": "An internal server error occurred",
                "code": "internal_error",
                "request_id": request_id,
            },
        )

    # ── Routes ────────────────────────────────────────────────────

    # Health check (public)
    @app.get("/health", tags=["Health"], include_in_schema=False)
    async def health_check():
        from config.redis_client import redis_client
        from sqlalchemy import text
        from config.database import AsyncSessionLocal

        checks = {"status": "ok", "version": settings.APP_VERSION}

        # DB check
        try:
            async with AsyncSessionLocal() as session:
                await session.execute(text("SELECT 1"))
            checks["database"] = "ok"
        except Exception:
            logger.warning("Health check: database unreachable", exc_info=True)
            checks["database"] = "error"
            checks["status"] = "degraded"

        # Redis check
        if settings.FANOUT_BACKEND == "redis":
            try:
                if not redis_client:
                    raise RuntimeError("Redis not initialized")
                await redis_client.ping()
                checks["redis"] = "ok"
            except Exception:
                logger.warning("Health check: redis unreachable", exc_info=True)
                checks["redis"] = "error"
                checks["status"] = "degraded"
        else:
            checks["redis"] = "disabled"

        status_code = 200 if checks["status"] == "ok" else 503
        return JSONResponse(content=checks, status_code=status_code)

    @app.get("/", include_in_schema=False)
    async def root():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "docs": "/docs",
            "health": "/health",
        }

    # Register all service routers
    app.include_router(booking_router)
    app.include_router(review_router)
    app.include_router(worker_router)
    app.include_router(search_router)
    app.include_router(notification_router)

    # ── Prometheus Metrics ─────────────────────────────────────────
    Instrumentator().instrument(app).expose(app, endpoint="/metrics", tags=["Monitoring"])

    return app


# ── Entry Point ───────────────────────────────────────────────

app = create_app()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1 if settings.DEBUG else settings.WORKERS,
        log_level="debug" if settings.DEBUG else "info",
        access_log=True,
    )

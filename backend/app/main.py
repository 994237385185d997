"""FastAPI application factory for the QE Coach backend."""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api import admin, chat, history, me
from app.config import get_settings
from app.db import engine as _db_engine_mod
from app.db.models import Base
from app.logging_config import configure_logging
from app.middleware.auth import AuthMiddleware
from app.middleware.metering import MeteringMiddleware
from app.middleware.rate_limit import RateLimitMiddleware
from app.middleware.request_id import RequestIdMiddleware

logger = logging.getLogger(__name__)

VERSION = "1.0.0"


async def _ensure_schema() -> None:
    """Create missing tables. Alembic owns real migrations."""
    _engine = _db_engine_mod.engine  # Use module attribute (overridable by tests)
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables + connect Redis. Shutdown: cleanup."""
    settings = get_settings()

    await _ensure_schema()

    try:
        app.state.redis = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
        )
        await app.state.redis.ping()
        logger.info("Redis connected at %s", settings.redis_url)
    except Exception:
        logger.warning("Redis not available; rate limiting and metrics disabled")
        app.state.redis = None

    yield

    if app.state.redis:
        await app.state.redis.aclose()
    await _db_engine_mod.engine.dispose()


async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"ok": False, "error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


async def _validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {
            "ok": False,
            "error": "Invalid request",
            "details": jsonable_errors(exc),
        },
        status_code=400,
    )


def jsonable_errors(exc: RequestValidationError) -> list[dict]:
    """Strip non-serializable context (e.g. exception objects) from errors."""
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="QE Coach API",
        version=VERSION,
        description="Risk-based QA coaching and test review with credit billing.",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.redis = None

    origins = settings.get_cors_origins()
    allow_credentials = True
    if origins == ["*"]:
        allow_credentials = False  # Browser forbids * with credentials
        logger.warning("CORS_ORIGINS=* disables credentials; use exact origins in production")

    # Last added runs first: CORS → RequestId → Metering → Auth → RateLimit → routes
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(AuthMiddleware)
    app.add_middleware(MeteringMiddleware)
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-Id", "X-RateLimit-Limit", "X-RateLimit-Remaining",
                        "X-RateLimit-Reset", "Retry-After"],
    )

    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)

    app.include_router(chat.router, prefix="/api", tags=["chat"])
    app.include_router(history.router, prefix="/api", tags=["history"])
    app.include_router(me.router, prefix="/api", tags=["identity"])
    app.include_router(admin.router, prefix="/api/admin", tags=["admin"])

    @app.get("/health")
    async def health():
        redis_ok = False
        redis = getattr(app.state, "redis", None)
        if redis:
            try:
                await redis.ping()
                redis_ok = True
            except Exception:
                logger.warning("Redis ping failed")

        return {
            "status": "ok",
            "version": VERSION,
            "redis": "connected" if redis_ok else "unavailable",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run("app.main:app", host=_settings.api_host, port=_settings.api_port)

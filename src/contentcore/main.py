"""FastAPI application factory and main entry point."""
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from contentcore.api.errors import register_error_handlers
from contentcore.core.cache import check_cache_connection, close_cache
from contentcore.core.config import settings
from contentcore.core.database import check_database_connection, close_database
from contentcore.core.logging import configure_logging, get_logger
from contentcore.core.middleware import RequestIDMiddleware
from contentcore.core.tracing import configure_tracing, instrument_fastapi_app

VERSION = "0.1.0"

# Configure logging and tracing on module import
configure_logging()
configure_tracing()
logger = get_logger(__name__)


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: release the database engine and cache client on shutdown."""
    logger.info("Starting contentcore API", version=VERSION, environment=settings.environment)

    yield

    logger.info("Shutting down contentcore API")
    await close_database()
    await close_cache()


async def _timed_check(check: Any) -> dict[str, Any]:
    start = time.time()
    healthy = await check()
    return {
        "status": "healthy" if healthy else "unhealthy",
        "response_time_ms": round((time.time() - start) * 1000, 2),
        "timestamp": _utc_timestamp(),
    }


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="contentcore API",
        description="Cached entity access for content services",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestIDMiddleware)
    register_error_handlers(app)

    @app.get("/health", tags=["health"], status_code=200)
    async def health_check() -> dict[str, Any]:
        """Report database and cache reachability.

        ``status`` is "healthy" when both checks pass and "degraded" otherwise.
        """
        checks = {
            "database": await _timed_check(check_database_connection),
            "cache": await _timed_check(check_cache_connection),
        }
        overall = "healthy" if all(c["status"] == "healthy" for c in checks.values()) else "degraded"

        logger.info(
            "Health check completed",
            status=overall,
            database=checks["database"]["status"],
            cache=checks["cache"]["status"],
        )
        return {
            "status": overall,
            "service": "contentcore-api",
            "version": VERSION,
            "timestamp": _utc_timestamp(),
            "checks": checks,
        }

    instrument_fastapi_app(app)
    logger.info("FastAPI application created", cors_origins=settings.cors_origins_list)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "contentcore.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=not settings.is_production,
        log_config=None,  # Use our structlog config
    )

"""
FastAPI application entry point.

APEX ARENA - LLM trading agents competing on simulated markets
"""

import json
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..core.config import get_settings
from ..db.database import close_db, get_session_factory, init_db
from ..db.seed import seed_agents
from ..monitoring.metrics import get_metrics_collector
from ..monitoring.middleware import setup_prometheus_middleware
from .routes import leaderboard, metrics, runs
from .run_manager import ArenaRuntime, build_runtime
from .websocket import ConnectionManager
from .websocket import router as websocket_router


class JSONFormatter(logging.Formatter):
    """JSON log formatter for production structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


def _configure_logging() -> None:
    """Configure logging based on environment."""
    _settings = get_settings()

    if _settings.environment == "production":
        # Structured JSON logs for production (easier to aggregate/parse)
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(JSONFormatter(datefmt="%Y-%m-%dT%H:%M:%S"))
        logging.root.handlers = [handler]
        logging.root.setLevel(logging.INFO)
    else:
        # Human-readable logs for development
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


_configure_logging()
logger = logging.getLogger(__name__)


def _attach_runtime(app: FastAPI, runtime: ArenaRuntime) -> None:
    app.state.runtime = runtime
    app.state.connections = ConnectionManager(runtime.broadcaster)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    settings = get_settings()

    # Startup
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")
    logger.info(f"Environment: {settings.environment}")
    logger.info(f"Mock services: {settings.use_mock_services}")

    owns_runtime = getattr(app.state, "runtime", None) is None
    if owns_runtime:
        # Note: there are no migrations; missing tables are created on startup
        if settings.is_debug:
            try:
                await init_db()
                created = await seed_agents(get_session_factory(), settings)
                logger.info(f"Database: Connected and initialized ({len(created)} agents seeded)")
            except Exception as e:
                logger.error(f"Database: Connection failed - {e}")
        _attach_runtime(app, build_runtime(get_session_factory(), settings))

    collector = get_metrics_collector()
    collector.set_app_info(settings.app_version, settings.environment)
    logger.info("Prometheus Metrics: Enabled")

    yield

    # Shutdown
    logger.info(f"Shutting down {settings.app_name}")

    try:
        await app.state.runtime.runs.shutdown()
        logger.info("Run Manager: Stopped")
    except Exception as e:
        logger.error(f"Run Manager: Error stopping - {e}")

    if owns_runtime:
        await close_db()


def create_app(runtime: Optional[ArenaRuntime] = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        runtime: Pre-wired collaborators; built from settings at startup when omitted
    """
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="LLM trading agents competing on a shared simulated market",
        lifespan=lifespan,
        docs_url="/api/docs" if settings.is_debug else None,
        redoc_url="/api/redoc" if settings.is_debug else None,
        openapi_url="/api/openapi.json" if settings.is_debug else None,
    )
    if runtime is not None:
        _attach_runtime(app, runtime)

    # Prometheus metrics middleware (inner layer)
    setup_prometheus_middleware(app)

    # CORS middleware - added LAST = outermost = runs first
    cors_origins = settings.get_cors_origins()
    logger.info(f"CORS origins: {cors_origins}")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Accept", "X-Requested-With"],
    )

    app.include_router(runs.router, prefix="/api")
    app.include_router(leaderboard.router, prefix="/api")
    app.include_router(metrics.router)
    app.include_router(websocket_router)

    # Health check
    @app.get("/health")
    async def health_check():
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
        }

    @app.get("/")
    async def root():
        return {
            "name": settings.app_name,
            "version": settings.app_version,
            "api": "/api",
            "docs": "/api/docs" if settings.is_debug else None,
        }

    return app


# Create app instance
app = create_app()

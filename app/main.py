"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
wires the import orchestrator and registers the API routers.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.routers import imports, tasks
from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import create_tables, get_session_local
from .domain.imports.dispatch import build_dispatcher
from .domain.imports.orchestrator import ImportOrchestrator
from .integrations.notifications import DatabaseNotifier
from .integrations.queue import build_queue_client
from .integrations.storage import build_file_source

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)


def build_orchestrator(executor=None) -> ImportOrchestrator:
    """Wire the orchestrator from settings."""
    session_factory = get_session_local()
    queue_client = build_queue_client() if settings.import_dispatch_mode == "queue" else None
    return ImportOrchestrator(
        session_factory,
        build_file_source(),
        build_dispatcher(settings.import_dispatch_mode, queue_client, executor),
        DatabaseNotifier(session_factory),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle - startup and shutdown events."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
    else:
        try:
            create_tables()
            logger.info("Database tables ready")
        except Exception as e:
            logger.error("Failed to initialize database tables: %s", e)
            raise  # Refuse to start with a broken database

    executor = None
    if getattr(app.state, "orchestrator", None) is None:
        if settings.import_dispatch_mode == "inline":
            executor = ThreadPoolExecutor(
                max_workers=settings.inline_dispatch_workers, thread_name_prefix="import-worker"
            )
        app.state.orchestrator = build_orchestrator(executor)
        logger.info("Import dispatch mode: %s", settings.import_dispatch_mode)

    yield  # Application runs here

    if executor is not None:
        executor.shutdown(wait=False)


# Initialize FastAPI application
app = FastAPI(
    title="Lead Import API",
    version="1.0.0",
    description="Bulk lead import pipeline: parse, map, validate, deduplicate and commit CSV/Excel files",
    lifespan=lifespan,
)

# Allow origins from environment variable or defaults for development
allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)
app.include_router(tasks.router)


@app.get("/")
async def root():
    """Root endpoint returning API information."""
    return {
        "message": "Lead Import API",
        "version": "1.0.0",
    }


@app.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "service": "lead-import-api",
    }

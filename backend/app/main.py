from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.artifacts import router as artifacts_router
from .api.connections import router as connections_router
from .api.jobs import router as jobs_router
from .api.uploads import router as uploads_router
from .core.config import Settings, settings as default_settings
from .core.logging import setup_logging
from .core.security import SecretBox, load_or_create_key
from .db.connections import SQLiteConnectionStore
from .db.sqlite import SQLiteJobStore
from .services.cleanup import CleanupSweeper
from .services.jobs import JobRegistry
from .services.storage import LocalArtifactStorage


logger = logging.getLogger(__name__)


def _cors_allow_origins() -> list[str]:
    """CORS origins for browser-based clients (e.g. Streamlit).

    Configure with `CORS_ALLOW_ORIGINS` as a comma-separated list.
    Defaults to local dev Streamlit origins.
    """
    env = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if env:
        return [o.strip().rstrip("/") for o in env.split(",") if o.strip()]
    return [
        "http://localhost:8501",
        "http://127.0.0.1:8501",
    ]


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings)

    storage = LocalArtifactStorage(settings.storage_root)
    store = SQLiteJobStore(settings.db_dir / "jobs.sqlite3")
    box = SecretBox(settings.secrets_encryption_key or load_or_create_key(settings.key_path))
    connections = SQLiteConnectionStore(settings.db_dir / "connections.sqlite3", box)
    registry = JobRegistry(store, storage, connections, settings)
    registry.recover()
    sweeper = CleanupSweeper(registry, settings.cleanup_interval_seconds)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        sweeper.start()
        logger.info("%s started (storage: %s)", settings.app_name, settings.storage_root)
        try:
            yield
        finally:
            sweeper.stop()
            registry.shutdown(timeout=settings.cancel_grace_seconds + 1)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.storage = storage
    app.state.connections = connections
    app.state.registry = registry
    app.state.sweeper = sweeper

    @app.get("/")
    def root() -> dict:
        return {"ok": True, "docs": "/docs", "health": "/healthz"}

    @app.get("/healthz")
    def healthz() -> dict:
        return {"ok": True}

    # Allow the local Streamlit frontend to talk directly to this API from the browser.
    # In production set CORS_ALLOW_ORIGINS to your Streamlit URL(s).
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors_allow_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(connections_router)
    app.include_router(uploads_router)
    app.include_router(jobs_router)
    app.include_router(artifacts_router)
    return app


app = create_app()

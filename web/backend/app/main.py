"""FastAPI application for the nodesync control plane.

Provides REST API endpoints wrapping the nodesync package for:
- Slave node registration and health probes (leader)
- Configuration export, import and digests
- Node mode, leader connection and manual sync (follower)
"""

from __future__ import annotations

import logging
import sys
import threading
from contextlib import asynccontextmanager
from pathlib import Path

# Ensure the nodesync package is importable by adding the project root to sys.path.
_project_root = str(Path(__file__).resolve().parents[3])
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from nodesync import __version__
from nodesync.config import get_settings
from nodesync.errors import NodeSyncError
from nodesync.logging_setup import setup_logging

from web.backend.app.routers import node_sync, nodes, system
from web.backend.app.services import get_puller, get_status_checker

logger = logging.getLogger("nodesync.web")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Run the follower pull loop and the stale-node checker beside the API."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)

    stop = threading.Event()
    workers = [
        threading.Thread(target=get_puller().run_forever, args=(stop,), name="sync-puller", daemon=True),
        threading.Thread(target=get_status_checker().run_forever, args=(stop,), name="stale-checker", daemon=True),
    ]
    for worker in workers:
        worker.start()
    logger.info("nodesync API started")
    try:
        yield
    finally:
        stop.set()
        for worker in workers:
            worker.join(timeout=5)


app = FastAPI(
    title="nodesync API",
    description=(
        "REST API for leader/follower configuration sync. "
        "Provides endpoints for node registration, snapshot export and import, "
        "and node mode management."
    ),
    version=__version__,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS middleware (allow all origins for development)
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------


@app.exception_handler(NodeSyncError)
async def nodesync_error_handler(request: Request, exc: NodeSyncError):
    """Answer every nodesync error with its own status and a ``detail`` body."""
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    content = {"detail": exc.message}
    if exc.details is not None:
        content["details"] = str(exc.details)
    return JSONResponse(status_code=exc.status_code, content=content)


# ---------------------------------------------------------------------------
# Include routers
# ---------------------------------------------------------------------------
app.include_router(nodes.router)
app.include_router(node_sync.router)
app.include_router(system.router)


# ---------------------------------------------------------------------------
# Root and health-check endpoints
# ---------------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root():
    """Return basic API information."""
    return {
        "name": "nodesync API",
        "version": __version__,
        "description": "Leader/follower configuration sync",
        "docs": "/docs",
        "openapi": "/openapi.json",
    }


@app.get("/health", tags=["meta"])
async def health_check():
    """Unauthenticated health check."""
    return {"status": "healthy"}

"""FastAPI application factory.

Lifespan
--------
On startup the app opens a single SQLite connection, initialises the schema
and builds the :class:`~canopy.store.ChatStore` (shared across all requests
via ``request.app.state.store``), restoring the active workspace.  On shutdown
it finishes pending title tasks, flushes debounced saves and closes the
connection.

Routers
-------
    /graph      : conversation graph: nodes, edges, messages, active path
    /workspaces : workspace directory, consent, export / import, stats
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from canopy.config import configure_logging
from canopy.store import open_store

from canopy.api.routers import graph as graph_router
from canopy.api.routers import workspaces as workspaces_router


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the store on startup and close it on shutdown."""
    store = open_store()
    app.state.store = store
    try:
        yield
    finally:
        store.close()
        store.storage.conn.close()


def create_app() -> FastAPI:
    """Return a fully-configured FastAPI application instance."""
    configure_logging()
    app = FastAPI(
        title="Canopy API",
        description=(
            "REST interface for the Canopy branching-conversation backend. "
            "Exposes the conversation graph, per-node message histories, "
            "model replies (plain and Server-Sent Events), and the "
            "workspace directory with export / import."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    # Allow browser frontends on any origin (tighten for production).
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(graph_router.router, prefix="/graph", tags=["graph"])
    app.include_router(workspaces_router.router, prefix="/workspaces", tags=["workspaces"])

    return app


# Module-level instance used by uvicorn:
#   uvicorn canopy.api.app:app --reload
app = create_app()

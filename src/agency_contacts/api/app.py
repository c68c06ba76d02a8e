"""Contacts API — FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that opens and closes the database pool
- Health endpoint at GET /api/health
- The contacts router
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agency_contacts.api.middleware import register_error_handlers
from agency_contacts.api.routers import contacts
from agency_contacts.config import ContactsConfig
from agency_contacts.db import Database
from agency_contacts.service import ContactsService

logger = logging.getLogger(__name__)


def _lifespan(config: ContactsConfig):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Open the pool and wire the service on startup; close it on shutdown."""
        db = Database.from_config(config.database)
        await db.connect()
        service = ContactsService(db.pool, config)
        app.state.db = db
        app.dependency_overrides.setdefault(contacts._get_service, lambda: service)
        logger.info("Contacts API started (db=%s)", db.db_name)

        yield

        await db.close()

    return lifespan


def create_app(config: ContactsConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration. Defaults to :class:`ContactsConfig` defaults
        (database from the environment, CORS for the local dev server).
    """
    config = config or ContactsConfig()

    app = FastAPI(
        title="Agency Contacts API",
        version="0.1.0",
        lifespan=_lifespan(config),
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(contacts.router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app

"""Application factory that serves both the client API and the admin UI."""
from __future__ import annotations

from typing import Dict, Optional

from fastapi import FastAPI

from .admin import create_app as create_admin_app
from .api import create_app as create_api_app
from .config import PanelSettings
from .database import Database


def create_application(
    *,
    settings: Optional[PanelSettings] = None,
    database: Optional[Database] = None,
) -> FastAPI:
    """Create the combined ASGI application."""

    if settings is None:
        settings = PanelSettings.from_env()
    if database is None:
        database = Database(settings.database_path, app_key=settings.app_key)
    database.initialize()

    api_app = create_api_app(database=database, settings=settings)
    admin_app = create_admin_app(database=database, settings=settings)

    app = FastAPI(
        title="Game Server Panel",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.database = database
    app.state.settings = settings
    app.state.api = api_app
    app.state.admin = admin_app

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    app.mount("/api", api_app)
    app.mount("/admin", admin_app)

    return app


__all__ = ["create_application"]

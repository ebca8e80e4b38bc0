"""Browser-based administration interface for the panel."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, Form, Request, status
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError
from starlette.middleware.sessions import SessionMiddleware

from .approvals import ApprovalService, ApprovalSettingsForm
from .config import PanelSettings
from .database import Database
from .models import User

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

logger = logging.getLogger("panel.admin")


def create_app(
    *,
    database: Optional[Database] = None,
    settings: Optional[PanelSettings] = None,
    session_secret: Optional[str] = None,
    initialize_database: bool = False,
) -> FastAPI:
    """Create the administration web application."""

    if settings is None:
        settings = PanelSettings.from_env()

    if database is None:
        database = Database(settings.database_path, app_key=settings.app_key)
        database.initialize()
    elif initialize_database:
        database.initialize()

    if session_secret is None:
        session_secret = settings.app_key
    if not session_secret:
        raise RuntimeError("APP_KEY must be configured to use the administration interface")

    app = FastAPI(
        title="Panel Administration",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.database = database
    app.state.approvals = ApprovalService(database)

    app.add_middleware(
        SessionMiddleware,
        secret_key=session_secret,
        session_cookie="panel_session",
        https_only=settings.secure_cookies,
        same_site="lax",
        max_age=60 * 60 * 24 * 7,
    )

    templates = Jinja2Templates(directory=str(TEMPLATE_DIR))
    templates.env.globals["app_url"] = settings.app_url

    def _flash(request: Request, message: str, *, category: str = "info") -> None:
        messages = request.session.get("flash_messages")
        if not isinstance(messages, list):
            messages = []
        messages.append({"message": message, "category": category})
        request.session["flash_messages"] = messages

    def _consume_flash(request: Request) -> List[Dict[str, str]]:
        messages = request.session.pop("flash_messages", [])
        if isinstance(messages, list):
            return messages
        return []

    def _get_current_admin(request: Request) -> Optional[User]:
        user_id = request.session.get("user_id")
        if not user_id:
            return None
        try:
            user = database.get_user(int(user_id))
        except (TypeError, ValueError):
            user = None
        if user is None or not user.root_admin:
            request.session.pop("user_id", None)
            return None
        return user

    def _redirect(request: Request, name: str) -> RedirectResponse:
        return RedirectResponse(request.url_for(name), status_code=status.HTTP_303_SEE_OTHER)

    def _approvals(request: Request) -> ApprovalService:
        return request.app.state.approvals

    @app.get("/", name="index")
    async def index(request: Request):
        if _get_current_admin(request) is None:
            return _redirect(request, "show_login")
        return _redirect(request, "approvals")

    @app.get("/login", response_class=HTMLResponse, name="show_login")
    async def login_form(request: Request):
        if _get_current_admin(request) is not None:
            return _redirect(request, "approvals")
        error = request.session.pop("login_error", None)
        return templates.TemplateResponse(request, "login.html", {"error": error})

    @app.post("/login", name="process_login")
    async def process_login(request: Request, login: str = Form(...), password: str = Form(...)):
        user = database.authenticate_user(login, password)
        if user is None or not user.root_admin:
            logger.warning("Rejected administration login for %s", login)
            request.session["login_error"] = "Invalid credentials or insufficient permissions."
            return _redirect(request, "show_login")

        request.session.clear()
        request.session["user_id"] = user.id
        return _redirect(request, "approvals")

    @app.get("/logout", name="logout")
    async def logout(request: Request):
        request.session.clear()
        return _redirect(request, "show_login")

    @app.get("/approvals", response_class=HTMLResponse, name="approvals")
    async def approvals_index(request: Request):
        admin = _get_current_admin(request)
        if admin is None:
            return _redirect(request, "show_login")
        service = _approvals(request)
        return templates.TemplateResponse(
            request,
            "approvals.html",
            {
                "user": admin,
                "enabled": service.is_enabled(),
                "webhook": service.webhook(),
                "users": service.pending_users(),
                "messages": _consume_flash(request),
            },
        )

    @app.post("/approvals", name="update_approvals")
    async def update_approvals(
        request: Request,
        enabled: str = Form(...),
        webhook: Optional[str] = Form(None),
    ):
        if _get_current_admin(request) is None:
            return _redirect(request, "show_login")
        try:
            form = ApprovalSettingsForm(enabled=enabled, webhook=webhook)
        except ValidationError as exc:
            for error in exc.errors():
                field = ".".join(str(part) for part in error.get("loc", ())) or "form"
                _flash(request, f"{field}: {error.get('msg')}", category="error")
            return _redirect(request, "approvals")

        _approvals(request).update(form)
        _flash(request, "Approval settings have been updated.", category="success")
        return _redirect(request, "approvals")

    @app.post("/approvals/bulk/{action}", name="bulk_approvals")
    async def bulk_action(request: Request, action: str):
        if _get_current_admin(request) is None:
            return _redirect(request, "show_login")
        count = _approvals(request).bulk(action)
        if action == "approve":
            _flash(request, f"All pending users have been approved ({count}).", category="success")
        else:
            _flash(request, f"All pending users have been denied ({count}).", category="success")
        return _redirect(request, "approvals")

    @app.post("/approvals/{user_id}/approve", name="approve_user")
    async def approve_user(request: Request, user_id: int):
        if _get_current_admin(request) is None:
            return _redirect(request, "show_login")
        user = _approvals(request).approve(user_id)
        if user is None:
            _flash(request, "That user could not be found.", category="error")
        else:
            _flash(request, f"{user.username} has been approved.", category="success")
        return _redirect(request, "approvals")

    @app.post("/approvals/{user_id}/deny", name="deny_user")
    async def deny_user(request: Request, user_id: int):
        if _get_current_admin(request) is None:
            return _redirect(request, "show_login")
        user = _approvals(request).deny(user_id)
        if user is None:
            _flash(request, "That user could not be found or has already been approved.", category="error")
        else:
            _flash(request, f"{user.username} has been denied.", category="success")
        return _redirect(request, "approvals")

    return app


__all__ = ["create_app"]

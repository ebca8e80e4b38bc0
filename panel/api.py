"""FastAPI application that exposes the client API of the panel."""
from __future__ import annotations

import logging
from functools import partial
from typing import Callable, Dict, Optional

import anyio
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from .analytics import usage_percentages
from .approvals import ApprovalService
from .config import PanelSettings
from .coupons import redeem_coupon
from .daemon import DaemonServerRepository
from .database import Database
from .exceptions import DisplayException, register_exception_handlers
from .models import Node, Server, User
from .security import APIKeyAuth
from .store import (
    CreateServerRequest,
    StoreCreationService,
    deploy_server,
    deployable_nodes,
    eggs_for_nest,
    public_nests,
    store_summary,
)
from .transformers import (
    collection,
    item,
    transform_analytics,
    transform_egg,
    transform_nest,
    transform_node,
    transform_ticket,
)

logger = logging.getLogger("panel.api")

PASSWORD_MIN_LENGTH = 8

DaemonFactory = Callable[[Node], DaemonServerRepository]


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=191)
    email: EmailStr
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)
    name: Optional[str] = Field(default=None, max_length=191)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("username must not be empty")
        return stripped


class UpdatePasswordRequest(BaseModel):
    current_password: str = Field(..., min_length=1)
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)
    password_confirmation: str

    @model_validator(mode="after")
    def _passwords_match(self):  # type: ignore[override]
        if self.password != self.password_confirmation:
            raise ValueError("The password confirmation does not match.")
        return self


class RedeemCouponRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=191)


class CreateTicketRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=191)
    content: str = Field(..., min_length=1)


def user_to_attributes(user: User) -> Dict[str, object]:
    return {
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "name": user.name,
        "root_admin": user.root_admin,
        "verified": user.verified,
        "approved": user.approved,
        "created_at": user.created_at.isoformat(),
    }


def create_app(
    *,
    database: Database | None = None,
    settings: PanelSettings | None = None,
    auth: APIKeyAuth | None = None,
    daemon_factory: DaemonFactory | None = None,
    initialize_database: bool = False,
) -> FastAPI:
    if settings is None:
        settings = PanelSettings.from_env()

    if database is None:
        database = Database(settings.database_path, app_key=settings.app_key)
        database.initialize()
    elif initialize_database:
        database.initialize()

    approvals = ApprovalService(database)
    if auth is None:
        auth = APIKeyAuth(database, approvals)

    app = FastAPI(
        title="Panel Client API",
        description="Client API for deploying and managing game servers",
        version="1.0.0",
    )
    app.state.database = database
    app.state.settings = settings
    app.state.daemon_factory = daemon_factory
    register_exception_handlers(app)

    def _build_repository(node: Node) -> DaemonServerRepository:
        override = getattr(app.state, "daemon_factory", None)
        if callable(override):
            return override(node)
        return DaemonServerRepository(node, timeout=settings.daemon_timeout)

    def get_db() -> Database:
        return database

    async def get_current_user(request: Request) -> User:
        return await auth(request)

    def get_owned_server(
        identifier: str,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Server:
        server = db.get_server_by_identifier(identifier)
        if server is None or server.owner_id != current_user.id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
        return server

    @app.post("/auth/register", status_code=status.HTTP_201_CREATED)
    async def register(payload: RegisterRequest, db: Database = Depends(get_db)) -> Dict[str, object]:
        needs_approval = approvals.is_enabled()
        try:
            user = db.create_user(
                payload.username,
                payload.email,
                payload.password,
                name=payload.name,
                approved=not needs_approval,
            )
        except ValueError as exc:
            raise DisplayException(str(exc)) from exc

        api_key = db.create_api_key(user.id, "Registration")
        logger.info("Registered user %s (%s)", user.id, user.username)
        if needs_approval:
            await anyio.to_thread.run_sync(approvals.notify_pending, user)

        response = item("user", user_to_attributes(user))
        response["meta"] = {"api_key": api_key}
        return response

    client = APIRouter(prefix="/client")

    @client.get("/account")
    async def read_account(current_user: User = Depends(get_current_user)) -> Dict[str, object]:
        return item("user", user_to_attributes(current_user))

    @client.put("/account/password", status_code=status.HTTP_204_NO_CONTENT)
    async def update_password(
        payload: UpdatePasswordRequest,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Response:
        if not db.verify_user_password(current_user.id, payload.current_password):
            raise DisplayException("The password provided was invalid for this account.")
        db.set_user_password(current_user.id, payload.password)
        logger.info("User %s changed their password", current_user.id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @client.get("/store")
    async def read_store(current_user: User = Depends(get_current_user)) -> Dict[str, object]:
        return item("store", store_summary(current_user))

    @client.get("/store/nodes")
    async def list_nodes(
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        return collection(deployable_nodes(db), transform_node)

    @client.get("/store/nests")
    async def list_nests(
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        return collection(public_nests(db), transform_nest)

    @client.get("/store/eggs")
    async def list_eggs(
        id: Optional[int] = None,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        eggs = eggs_for_nest(db, id)
        if eggs is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
        return collection(eggs, transform_egg)

    @client.post("/store/servers")
    async def create_server(
        payload: CreateServerRequest,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, str]:
        service = StoreCreationService(db, _build_repository)
        server = await anyio.to_thread.run_sync(partial(deploy_server, db, service, current_user, payload))
        return {"id": server.uuid_short}

    @client.post("/store/coupons")
    async def redeem(
        payload: RedeemCouponRequest,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        amount = redeem_coupon(db, current_user, payload.code.strip())
        refreshed = db.get_user(current_user.id) or current_user
        return item("coupon_redemption", {"amount": amount, "balance": refreshed.store_balance})

    @client.get("/tickets")
    async def list_tickets(
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        return collection(db.list_tickets_for_user(current_user.id), transform_ticket)

    @client.post("/tickets", status_code=status.HTTP_201_CREATED)
    async def create_ticket(
        payload: CreateTicketRequest,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        ticket = db.create_ticket(current_user.id, title=payload.title.strip(), content=payload.content)
        return transform_ticket(ticket)

    @client.get("/tickets/{ticket_id}")
    async def read_ticket(
        ticket_id: int,
        current_user: User = Depends(get_current_user),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        ticket = db.get_ticket_for_user(current_user.id, ticket_id)
        if ticket is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
        return transform_ticket(ticket)

    @client.get("/servers/{identifier}/analytics")
    async def server_analytics(
        server: Server = Depends(get_owned_server),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        return collection(db.list_analytics(server.id), transform_analytics)

    @client.get("/servers/{identifier}/resources")
    async def server_resources(
        server: Server = Depends(get_owned_server),
        db: Database = Depends(get_db),
    ) -> Dict[str, object]:
        node = db.get_node(server.node_id)
        if node is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
        repository = _build_repository(node).set_server(server)
        details = await anyio.to_thread.run_sync(repository.get_details)
        utilization = details.get("utilization") or {}
        return item(
            "stats",
            {
                "state": details.get("state"),
                "usage": usage_percentages(server, utilization),
                "resources": {
                    "cpu_absolute": utilization.get("cpu_absolute", 0),
                    "memory_bytes": utilization.get("memory_bytes", 0),
                    "disk_bytes": utilization.get("disk_bytes", 0),
                },
            },
        )

    app.include_router(client)
    return app


__all__ = ["create_app", "user_to_attributes"]

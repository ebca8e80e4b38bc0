"""Store deployment: users spend quota to provision new servers."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from .daemon import DaemonServerRepository
from .database import Database
from .exceptions import (
    DaemonConnectionException,
    DisplayException,
    NoViableAllocationException,
    NoViableNodeException,
)
from .models import Egg, Nest, Node, Server, User

logger = logging.getLogger("panel.store")

RepositoryFactory = Callable[[Node], DaemonServerRepository]


class CreateServerRequest(BaseModel):
    name: str = Field(..., min_length=3, max_length=191)
    description: Optional[str] = Field(default=None, max_length=191)
    cpu: int = Field(..., ge=50)
    memory: int = Field(..., ge=256)
    disk: int = Field(..., ge=256)
    ports: int = Field(..., ge=1)
    backups: int = Field(default=0, ge=0)
    databases: int = Field(default=0, ge=0)
    egg: int
    nest: int
    node: int

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if len(stripped) < 3:
            raise ValueError("name must be at least 3 characters")
        return stripped

    @field_validator("description")
    @classmethod
    def _strip_description(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return value.strip() or None


_RESOURCE_CHECKS = (
    ("cpu", "store_cpu", "CPU"),
    ("memory", "store_memory", "memory"),
    ("disk", "store_disk", "disk"),
    ("ports", "store_ports", "ports"),
    ("backups", "store_backups", "backups"),
    ("databases", "store_databases", "databases"),
)


def _deployment_cost(request: CreateServerRequest, node: Node) -> Dict[str, int]:
    return {
        "balance": node.deploy_fee,
        "cpu": request.cpu,
        "memory": request.memory,
        "disk": request.disk,
        "slots": 1,
        "ports": request.ports,
        "backups": request.backups,
        "databases": request.databases,
    }


class StoreCreationService:
    """Create a server from a store request and register it with the node agent."""

    def __init__(self, database: Database, repository_factory: RepositoryFactory) -> None:
        self._database = database
        self._repository_factory = repository_factory

    def handle(self, user: User, request: CreateServerRequest) -> Server:
        node = self._database.get_node(request.node)
        if node is None or not node.deployable:
            raise NoViableNodeException("The selected node is not available for deployment.")

        egg = self._database.get_egg(request.egg)
        if egg is None or egg.nest_id != request.nest:
            raise DisplayException("The selected egg does not belong to the selected nest.")

        for field_name, store_field, label in _RESOURCE_CHECKS:
            if getattr(user, store_field) < getattr(request, field_name):
                raise DisplayException(f"You do not have enough {label} available to deploy this server.")
        if user.store_balance < node.deploy_fee:
            raise DisplayException("You do not have enough credits to pay the deployment fee for this node.")

        free = self._database.list_allocations(node.id, free_only=True)
        if len(free) < request.ports:
            raise NoViableAllocationException("There are not enough free allocations on the selected node.")

        # The user record above may be stale; the debit itself is the source of truth.
        cost = _deployment_cost(request, node)
        if not self._database.reserve_store_resources(user.id, **cost):
            raise DisplayException("You no longer have enough store resources available to deploy this server.")

        try:
            server = self._database.create_server(
                name=request.name,
                description=request.description,
                owner_id=user.id,
                node_id=node.id,
                nest_id=request.nest,
                egg_id=egg.id,
                memory=request.memory,
                disk=request.disk,
                cpu=request.cpu,
                allocation_ids=[allocation.id for allocation in free[: request.ports]],
                allocation_limit=request.ports,
                backup_limit=request.backups,
                database_limit=request.databases,
            )
        except ValueError as exc:
            self._database.adjust_store_resources(user.id, **cost)
            raise NoViableAllocationException(str(exc)) from exc

        try:
            self._repository_factory(node).set_server(server).create()
        except DaemonConnectionException:
            logger.error("Node %s rejected server %s, removing it from the panel", node.name, server.uuid)
            self._database.delete_server(server.id)
            self._database.adjust_store_resources(user.id, **cost)
            raise

        logger.info("Created server %s (%s) for user %s on node %s", server.uuid_short, server.name, user.id, node.name)
        return server


def deploy_server(
    database: Database,
    creation_service: StoreCreationService,
    user: User,
    request: CreateServerRequest,
) -> Server:
    """Validate a store deployment, create the server and debit the user's store."""

    if not user.verified:
        raise DisplayException("Server deployment is unavailable for unverified accounts.")

    nest = database.get_nest(request.nest)
    if nest is None:
        raise DisplayException("The selected nest does not exist.")
    if nest.private:
        raise DisplayException("This nest is private and cannot be deployed to.")

    if user.store_slots < 1:
        raise DisplayException("You do not have enough server slots to deploy a server.")

    return creation_service.handle(user, request)


def deployable_nodes(database: Database) -> List[Node]:
    return database.list_nodes(deployable=True)


def public_nests(database: Database) -> List[Nest]:
    return database.list_nests(private=False)


def eggs_for_nest(database: Database, nest_id: Optional[int]) -> Optional[List[Egg]]:
    """Eggs of a public nest, defaulting to the first public nest.

    Returns ``None`` when the requested nest is missing or private.
    """

    if nest_id is None:
        nests = public_nests(database)
        if not nests:
            return []
        return database.list_eggs(nests[0].id)

    nest = database.get_nest(nest_id)
    if nest is None or nest.private:
        return None
    return database.list_eggs(nest.id)


def store_summary(user: User) -> Dict[str, int]:
    return {
        "balance": user.store_balance,
        "cpu": user.store_cpu,
        "memory": user.store_memory,
        "disk": user.store_disk,
        "slots": user.store_slots,
        "ports": user.store_ports,
        "backups": user.store_backups,
        "databases": user.store_databases,
    }


__all__ = [
    "CreateServerRequest",
    "StoreCreationService",
    "deploy_server",
    "deployable_nodes",
    "eggs_for_nest",
    "public_nests",
    "store_summary",
]

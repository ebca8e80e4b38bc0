"""Domain records persisted by the panel database."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class User:
    """Represents a panel account together with its store quota."""

    id: int
    username: str
    email: Optional[str]
    name: str
    root_admin: bool
    verified: bool
    approved: bool
    store_balance: int
    store_cpu: int
    store_memory: int
    store_disk: int
    store_slots: int
    store_ports: int
    store_backups: int
    store_databases: int
    created_at: datetime


@dataclass(frozen=True)
class Node:
    """A machine running the node agent daemon."""

    id: int
    uuid: str
    name: str
    fqdn: str
    scheme: str
    daemon_listen: int
    daemon_token: str
    memory: int
    disk: int
    deployable: bool
    deploy_fee: int
    created_at: datetime

    @property
    def daemon_base_url(self) -> str:
        return f"{self.scheme}://{self.fqdn}:{self.daemon_listen}"


@dataclass(frozen=True)
class Allocation:
    id: int
    node_id: int
    ip: str
    port: int
    server_id: Optional[int]


@dataclass(frozen=True)
class Nest:
    id: int
    uuid: str
    name: str
    description: Optional[str]
    private: bool


@dataclass(frozen=True)
class Egg:
    id: int
    uuid: str
    nest_id: int
    name: str
    description: Optional[str]
    docker_image: str
    startup: str


@dataclass(frozen=True)
class Server:
    """A managed server instance hosted on a node."""

    id: int
    uuid: str
    uuid_short: str
    name: str
    description: Optional[str]
    owner_id: int
    node_id: int
    nest_id: int
    egg_id: int
    allocation_id: Optional[int]
    memory: int
    disk: int
    cpu: int
    allocation_limit: int
    backup_limit: int
    database_limit: int
    status: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class Coupon:
    id: int
    code: str
    cr_amount: int
    uses: int
    expires: Optional[datetime]
    expired: bool
    created_at: datetime


@dataclass(frozen=True)
class AnalyticsData:
    """A single utilisation sample collected for a server."""

    id: int
    server_id: int
    cpu: float
    memory: float
    disk: float
    created_at: datetime


@dataclass(frozen=True)
class Ticket:
    id: int
    user_id: int
    title: str
    content: str
    status: str
    created_at: datetime


__all__ = [
    "Allocation",
    "AnalyticsData",
    "Coupon",
    "Egg",
    "Nest",
    "Node",
    "Server",
    "Ticket",
    "User",
]

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import httpx
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from panel.daemon import DaemonServerRepository
from panel.database import Database
from panel.models import Egg, Nest, Node, Server, User

APP_KEY = "tests-app-key"
PASSWORD = "Sup3rSecurePwd!"


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "panel.sqlite3", app_key=APP_KEY)
    db.initialize()
    return db


@pytest.fixture()
def make_user(database: Database) -> Callable[..., User]:
    counter = {"value": 0}

    def _make(*, verified: bool = True, approved: bool = True, root_admin: bool = False, **store: int) -> User:
        counter["value"] += 1
        index = counter["value"]
        user = database.create_user(
            f"user{index}",
            f"user{index}@example.com",
            PASSWORD,
            verified=verified,
            approved=approved,
            root_admin=root_admin,
        )
        if store:
            user = database.set_store_resources(user.id, **store)
        return user

    return _make


@pytest.fixture()
def node(database: Database) -> Node:
    created = database.create_node(
        name="node-1",
        fqdn="node1.example.com",
        daemon_token="daemon-secret",
        scheme="https",
        daemon_listen=8080,
        memory=16384,
        disk=100000,
        deploy_fee=25,
    )
    database.create_allocations(created.id, "203.0.113.10", range(25565, 25570))
    return created


@pytest.fixture()
def nest(database: Database) -> Nest:
    return database.create_nest("Minecraft", description="Block game")


@pytest.fixture()
def egg(database: Database, nest: Nest) -> Egg:
    return database.create_egg(
        nest.id,
        name="Paper",
        docker_image="ghcr.io/example/java:17",
        startup="java -jar server.jar",
    )


@pytest.fixture()
def make_server(database: Database, node: Node, nest: Nest, egg: Egg) -> Callable[..., Server]:
    def _make(owner: User, *, cpu: int = 100, memory: int = 1024, disk: int = 2048) -> Server:
        free = database.list_allocations(node.id, free_only=True)
        return database.create_server(
            name="Survival",
            description=None,
            owner_id=owner.id,
            node_id=node.id,
            nest_id=nest.id,
            egg_id=egg.id,
            memory=memory,
            disk=disk,
            cpu=cpu,
            allocation_ids=[free[0].id],
            allocation_limit=1,
            backup_limit=0,
            database_limit=0,
        )

    return _make


class DaemonStub:
    """Record node agent requests and answer them from canned responses."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.details: Dict[str, Dict[str, object]] = {}
        self.fail_create: Optional[str] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST" and request.url.path == "/api/servers":
            if self.fail_create:
                return httpx.Response(500, json={"error": self.fail_create})
            return httpx.Response(202)
        if request.method == "GET" and request.url.path.startswith("/api/servers/"):
            server_uuid = request.url.path.rsplit("/", 1)[-1]
            if server_uuid not in self.details:
                return httpx.Response(404, json={"error": "The requested resource does not exist on this instance."})
            return httpx.Response(200, json=self.details[server_uuid])
        return httpx.Response(204)

    def factory(self, node: Node) -> DaemonServerRepository:
        return DaemonServerRepository(node, transport=httpx.MockTransport(self.handler))


@pytest.fixture()
def daemon() -> DaemonStub:
    return DaemonStub()

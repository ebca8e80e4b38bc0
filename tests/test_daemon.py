from __future__ import annotations

import json

import httpx
import pytest

from panel.daemon import DaemonServerRepository
from panel.exceptions import DaemonConnectionException


def _repository(node, handler) -> DaemonServerRepository:
    return DaemonServerRepository(node, timeout=2.0, transport=httpx.MockTransport(handler))


def test_get_details_returns_payload(node, make_user, make_server) -> None:
    server = make_server(make_user())
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"state": "running", "utilization": {"cpu_absolute": 1.5}})

    details = _repository(node, handler).set_server(server).get_details()

    assert details["state"] == "running"
    assert seen[0].url.path == f"/api/servers/{server.uuid}"
    assert seen[0].headers["Authorization"] == "Bearer daemon-secret"


def test_power_sends_action(node, make_user, make_server) -> None:
    server = make_server(make_user())
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    _repository(node, handler).set_server(server).power("restart")

    assert seen[0].url.path == f"/api/servers/{server.uuid}/power"
    assert json.loads(seen[0].content) == {"action": "restart"}

    with pytest.raises(ValueError):
        _repository(node, handler).set_server(server).power("explode")


def test_delete_issues_delete_request(node, make_user, make_server) -> None:
    server = make_server(make_user())
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(204)

    _repository(node, handler).set_server(server).delete()

    assert seen[0].method == "DELETE"
    assert seen[0].url.path == f"/api/servers/{server.uuid}"


def test_error_responses_raise_with_daemon_message(node, make_user, make_server) -> None:
    server = make_server(make_user())

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(409, json={"errors": [{"detail": "Server is already installing."}]})

    with pytest.raises(DaemonConnectionException) as excinfo:
        _repository(node, handler).set_server(server).create()

    assert excinfo.value.message == "Server is already installing."
    assert excinfo.value.status_code == 502


def test_transport_errors_are_wrapped(node, make_user, make_server) -> None:
    server = make_server(make_user())

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DaemonConnectionException) as excinfo:
        _repository(node, handler).set_server(server).get_details()

    assert "node-1" in excinfo.value.message


def test_requires_bound_server(node) -> None:
    repository = _repository(node, lambda request: httpx.Response(204))

    with pytest.raises(RuntimeError):
        repository.delete()


def test_server_must_live_on_the_node(database, node, make_user, make_server) -> None:
    other = database.create_node(name="node-2", fqdn="node2.example.com", daemon_token="other")
    server = make_server(make_user())

    with pytest.raises(ValueError):
        _repository(other, lambda request: httpx.Response(204)).set_server(server)

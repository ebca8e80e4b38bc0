from __future__ import annotations

from typing import List

import httpx
import pytest
from fastapi.testclient import TestClient

from panel.api import create_app
from panel.approvals import ENABLED_KEY, WEBHOOK_KEY
from panel.config import PanelSettings

from conftest import APP_KEY, PASSWORD

MIB = 1024 * 1024


@pytest.fixture()
def client(database, daemon):
    settings = PanelSettings(database_path=database.path, app_key=APP_KEY)
    app = create_app(database=database, settings=settings, daemon_factory=daemon.factory)
    with TestClient(app) as test_client:
        yield test_client


def _headers(database, user) -> dict:
    return {"Authorization": f"Bearer {database.create_api_key(user.id, 'tests')}"}


def test_update_password(client, database, make_user) -> None:
    user = make_user()

    response = client.put(
        "/client/account/password",
        json={
            "current_password": PASSWORD,
            "password": "n3w-password-value",
            "password_confirmation": "n3w-password-value",
        },
        headers=_headers(database, user),
    )

    assert response.status_code == 204
    assert database.verify_user_password(user.id, "n3w-password-value")


def test_update_password_rejects_wrong_current_password(client, database, make_user) -> None:
    user = make_user()

    response = client.put(
        "/client/account/password",
        json={
            "current_password": "not-my-password",
            "password": "n3w-password-value",
            "password_confirmation": "n3w-password-value",
        },
        headers=_headers(database, user),
    )

    assert response.status_code == 400
    assert response.json()["errors"][0]["detail"] == "The password provided was invalid for this account."
    assert database.verify_user_password(user.id, PASSWORD)


def test_update_password_requires_matching_confirmation(client, database, make_user) -> None:
    user = make_user()

    response = client.put(
        "/client/account/password",
        json={
            "current_password": PASSWORD,
            "password": "n3w-password-value",
            "password_confirmation": "something-else",
        },
        headers=_headers(database, user),
    )

    assert response.status_code == 422
    assert response.json()["errors"][0]["code"] == "ValidationException"


def test_tickets_are_scoped_to_their_owner(client, database, make_user) -> None:
    owner = make_user()
    stranger = make_user()
    owner_headers = _headers(database, owner)

    created = client.post(
        "/client/tickets",
        json={"title": "Server will not start", "content": "It crashes on boot."},
        headers=owner_headers,
    )
    assert created.status_code == 201
    ticket = created.json()
    assert ticket["object"] == "ticket"
    assert ticket["attributes"]["status"] == "pending"
    ticket_id = ticket["attributes"]["id"]

    listing = client.get("/client/tickets", headers=owner_headers).json()
    assert [entry["attributes"]["id"] for entry in listing["data"]] == [ticket_id]

    assert client.get(f"/client/tickets/{ticket_id}", headers=owner_headers).status_code == 200
    assert client.get(f"/client/tickets/{ticket_id}", headers=_headers(database, stranger)).status_code == 404


def test_server_analytics_lists_stored_samples(client, database, make_user, make_server) -> None:
    owner = make_user()
    server = make_server(owner)
    database.record_analytics(server.id, cpu=10, memory=20, disk=30, retain=12)
    database.record_analytics(server.id, cpu=11, memory=21, disk=31, retain=12)

    response = client.get(f"/client/servers/{server.uuid_short}/analytics", headers=_headers(database, owner))

    assert response.status_code == 200
    data = response.json()["data"]
    assert [entry["attributes"]["cpu"] for entry in data] == [10.0, 11.0]
    assert data[0]["object"] == "analytics_data"


def test_server_analytics_hidden_from_other_users(client, database, make_user, make_server) -> None:
    server = make_server(make_user())

    response = client.get(f"/client/servers/{server.uuid_short}/analytics", headers=_headers(database, make_user()))

    assert response.status_code == 404
    assert response.json()["errors"][0]["code"] == "NotFoundHttpException"


def test_server_resources_report_usage(client, database, daemon, make_user, make_server) -> None:
    owner = make_user()
    server = make_server(owner, cpu=200, memory=1024, disk=0)
    daemon.details[server.uuid] = {
        "state": "running",
        "utilization": {"cpu_absolute": 50, "memory_bytes": 256 * MIB, "disk_bytes": 100 * MIB},
    }

    response = client.get(f"/client/servers/{server.uuid_short}/resources", headers=_headers(database, owner))

    assert response.status_code == 200
    attributes = response.json()["attributes"]
    assert attributes["state"] == "running"
    assert attributes["usage"] == {"cpu": 25.0, "memory": 25.0, "disk": None}
    assert attributes["resources"]["memory_bytes"] == 256 * MIB


def test_register_creates_account_with_api_key(client, database) -> None:
    response = client.post(
        "/auth/register",
        json={"username": "newcomer", "email": "newcomer@example.com", "password": "long-enough-pass"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["attributes"]["approved"] is True
    account = client.get("/client/account", headers={"Authorization": f"Bearer {body['meta']['api_key']}"})
    assert account.status_code == 200
    assert account.json()["attributes"]["username"] == "newcomer"


def test_register_while_approvals_enabled_notifies_webhook(client, database, monkeypatch) -> None:
    database.set_setting(ENABLED_KEY, "true")
    database.set_setting(WEBHOOK_KEY, "https://hooks.example.com/panel")
    delivered: List[dict] = []

    def fake_post(url, json=None, timeout=None):
        delivered.append({"url": url, "json": json})
        return httpx.Response(204, request=httpx.Request("POST", url))

    monkeypatch.setattr("panel.approvals.httpx.post", fake_post)

    response = client.post(
        "/auth/register",
        json={"username": "pending", "email": "pending@example.com", "password": "long-enough-pass"},
    )

    assert response.status_code == 201
    assert response.json()["attributes"]["approved"] is False
    assert delivered[0]["url"] == "https://hooks.example.com/panel"
    assert "pending" in delivered[0]["json"]["content"]

    blocked = client.get(
        "/client/account",
        headers={"Authorization": f"Bearer {response.json()['meta']['api_key']}"},
    )
    assert blocked.status_code == 403


def test_register_rejects_duplicate_usernames(client, database, make_user) -> None:
    existing = make_user()

    response = client.post(
        "/auth/register",
        json={"username": existing.username, "email": "fresh@example.com", "password": "long-enough-pass"},
    )

    assert response.status_code == 400
    assert response.json()["errors"][0]["code"] == "DisplayException"

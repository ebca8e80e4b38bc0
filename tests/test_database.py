from __future__ import annotations

from datetime import datetime, timezone

import pytest

from panel.database import API_KEY_PREFIX, Database

from conftest import APP_KEY, PASSWORD


def test_create_and_authenticate_api_key(database: Database, make_user) -> None:
    user = make_user()
    api_key = database.create_api_key(user.id, "Primary key")

    assert api_key.startswith(API_KEY_PREFIX)
    retrieved = database.authenticate_api_key(api_key)
    assert retrieved is not None
    assert retrieved.id == user.id

    assert database.authenticate_api_key(API_KEY_PREFIX + "invalid") is None
    assert database.authenticate_api_key("not-a-panel-key") is None


def test_api_key_requires_non_empty_description(database: Database, make_user) -> None:
    user = make_user()
    with pytest.raises(ValueError):
        database.create_api_key(user.id, "  ")


def test_authenticate_user_by_email_or_username(database: Database) -> None:
    user = database.create_user("Alice", "Alice@Example.com", PASSWORD)

    assert user.email == "alice@example.com"
    assert database.authenticate_user("alice@example.com", PASSWORD).id == user.id
    assert database.authenticate_user("Alice", PASSWORD).id == user.id
    assert database.authenticate_user("Alice", "wrong-password") is None


def test_duplicate_username_is_rejected(database: Database) -> None:
    database.create_user("bob", "bob@example.com", PASSWORD)
    with pytest.raises(ValueError):
        database.create_user("bob", "other@example.com", PASSWORD)


def test_password_can_be_changed(database: Database, make_user) -> None:
    user = make_user()
    database.set_user_password(user.id, "a-brand-new-password")

    assert database.verify_user_password(user.id, "a-brand-new-password")
    assert not database.verify_user_password(user.id, PASSWORD)


def test_pending_users_bulk_operations(database: Database, make_user) -> None:
    approved = make_user()
    make_user(approved=False)
    make_user(approved=False)

    assert [user.approved for user in database.list_unapproved_users()] == [False, False]
    assert database.delete_pending_users() == 2
    assert [user.id for user in database.list_users()] == [approved.id]


def test_adjust_store_resources_accepts_short_names(database: Database, make_user) -> None:
    user = make_user(store_balance=100, store_cpu=200)

    updated = database.adjust_store_resources(user.id, balance=-40, cpu=-50, slots=2)

    assert updated.store_balance == 60
    assert updated.store_cpu == 150
    assert updated.store_slots == 2
    with pytest.raises(ValueError):
        database.adjust_store_resources(user.id, gold=1)


def test_reserve_store_resources_is_all_or_nothing(database: Database, make_user) -> None:
    user = make_user(store_balance=30, store_cpu=200, store_slots=1)

    assert database.reserve_store_resources(user.id, balance=25, cpu=100, slots=1) is True
    assert database.reserve_store_resources(user.id, balance=5, cpu=50, slots=1) is False

    refreshed = database.get_user(user.id)
    assert refreshed.store_balance == 5
    assert refreshed.store_cpu == 100
    assert refreshed.store_slots == 0
    with pytest.raises(ValueError):
        database.reserve_store_resources(user.id, cpu=-1)


def test_node_daemon_token_is_encrypted_at_rest(database: Database, node) -> None:
    with database._connect() as conn:
        stored = conn.execute("SELECT daemon_token FROM nodes WHERE id = ?", (node.id,)).fetchone()[0]

    assert stored != "daemon-secret"
    assert database.get_node(node.id).daemon_token == "daemon-secret"
    assert node.daemon_base_url == "https://node1.example.com:8080"


def test_nodes_require_an_app_key(tmp_path) -> None:
    database = Database(tmp_path / "keyless.sqlite3", app_key="")
    database.initialize()
    with pytest.raises(RuntimeError):
        database.create_node(name="node", fqdn="node.example.com", daemon_token="secret")


def test_deleting_a_server_releases_its_allocations(database: Database, node, make_user, make_server) -> None:
    server = make_server(make_user())
    assert len(database.list_allocations(node.id, free_only=True)) == 4

    database.delete_server(server.id)

    assert len(database.list_allocations(node.id, free_only=True)) == 5


def test_create_server_rolls_back_when_allocation_is_taken(database: Database, node, nest, egg, make_user, make_server) -> None:
    owner = make_user()
    first = make_server(owner)

    with pytest.raises(ValueError):
        database.create_server(
            name="Duplicate",
            description=None,
            owner_id=owner.id,
            node_id=node.id,
            nest_id=nest.id,
            egg_id=egg.id,
            memory=512,
            disk=512,
            cpu=50,
            allocation_ids=[first.allocation_id],
            allocation_limit=1,
            backup_limit=0,
            database_limit=0,
        )

    assert [server.id for server in database.list_servers()] == [first.id]


def test_record_analytics_keeps_bounded_history(database: Database, make_user, make_server) -> None:
    server = make_server(make_user())
    for index in range(5):
        database.record_analytics(server.id, cpu=index, memory=0, disk=0, retain=3)

    entries = database.list_analytics(server.id)
    assert [entry.cpu for entry in entries] == [2.0, 3.0, 4.0]


def test_redeem_coupon_once_per_user(database: Database, make_user) -> None:
    user = make_user()
    coupon = database.create_coupon("WELCOME", cr_amount=50, uses=5)

    assert database.redeem_coupon(coupon.id, user.id) == 50
    with pytest.raises(ValueError):
        database.redeem_coupon(coupon.id, user.id)

    assert database.get_user(user.id).store_balance == 50
    assert database.get_coupon(coupon.id).uses == 4


def test_coupon_expiry_round_trips_as_aware_datetime(database: Database) -> None:
    expires = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)
    coupon = database.create_coupon("LATER", cr_amount=10, expires=expires)

    assert database.get_coupon(coupon.id).expires == expires
    assert database.create_coupon("NEVER", cr_amount=10).expires is None


def test_tickets_are_listed_newest_first(database: Database, make_user) -> None:
    user = make_user()
    other = make_user()
    first = database.create_ticket(user.id, title="First", content="Help")
    second = database.create_ticket(user.id, title="Second", content="More help")

    assert [ticket.id for ticket in database.list_tickets_for_user(user.id)] == [second.id, first.id]
    assert database.get_ticket_for_user(other.id, first.id) is None
    assert first.status == "pending"


def test_app_key_is_read_from_environment(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("APP_KEY", APP_KEY)
    database = Database(tmp_path / "env.sqlite3")
    database.initialize()

    node = database.create_node(name="env-node", fqdn="env.example.com", daemon_token="token")

    assert database.get_node(node.id).daemon_token == "token"

from __future__ import annotations

import textwrap
import unittest
from pathlib import Path

import pytest

from panel.config import (
    NodeDefinition,
    PanelSettings,
    apply_catalogue,
    load_catalogue,
)


CATALOGUE = textwrap.dedent(
    """
    nodes:
      - name: node-eu-1
        fqdn: node1.example.com
        daemon_token: secret-token
        daemon_listen: 8443
        deploy_fee: 10
        allocations:
          ip: 203.0.113.10
          ports: ["25565-25567", 27015]
    nests:
      - name: Minecraft
        eggs:
          - name: Paper
            docker_image: ghcr.io/example/java:17
            startup: java -jar server.jar
      - name: Internal
        private: true
    """
)


class PanelSettingsTests(unittest.TestCase):
    def test_defaults(self) -> None:
        settings = PanelSettings.from_env({})
        self.assertEqual(settings.analytics_retention, 12)
        self.assertEqual(settings.daemon_timeout, 15.0)
        self.assertFalse(settings.secure_cookies)
        self.assertIsNone(settings.app_key)
        self.assertEqual(settings.database_path.name, "panel.sqlite3")

    def test_https_url_enables_secure_cookies(self) -> None:
        settings = PanelSettings.from_env({"APP_URL": "https://panel.example.com/"})
        self.assertTrue(settings.secure_cookies)
        self.assertEqual(settings.app_url, "https://panel.example.com")

    def test_explicit_values(self) -> None:
        settings = PanelSettings.from_env(
            {
                "PANEL_DB_PATH": "/tmp/custom.sqlite3",
                "APP_KEY": "key",
                "SESSION_SECURE_COOKIE": "false",
                "APP_URL": "https://panel.example.com",
                "PANEL_DAEMON_TIMEOUT": "2.5",
                "PANEL_ANALYTICS_RETENTION": "24",
            }
        )
        self.assertEqual(settings.database_path, Path("/tmp/custom.sqlite3"))
        self.assertEqual(settings.app_key, "key")
        self.assertFalse(settings.secure_cookies)
        self.assertEqual(settings.daemon_timeout, 2.5)
        self.assertEqual(settings.analytics_retention, 24)

    def test_invalid_numbers_are_reported(self) -> None:
        with self.assertRaises(ValueError):
            PanelSettings.from_env({"PANEL_ANALYTICS_RETENTION": "lots"})
        with self.assertRaises(ValueError):
            PanelSettings.from_env({"PANEL_ANALYTICS_RETENTION": "0"})


def test_node_definition_reports_missing_fields() -> None:
    with pytest.raises(ValueError) as excinfo:
        NodeDefinition.from_dict({"name": "node"})

    assert "daemon_token" in str(excinfo.value)
    assert "fqdn" in str(excinfo.value)


def test_node_definition_expands_port_ranges() -> None:
    definition = NodeDefinition.from_dict(
        {
            "name": "node",
            "fqdn": "node.example.com",
            "daemon_token": "token",
            "allocations": {"ip": "10.0.0.1", "ports": ["25565-25567", 27015]},
        }
    )

    assert definition.ports == (25565, 25566, 25567, 27015)
    assert definition.allocation_ip == "10.0.0.1"


def test_load_and_apply_catalogue(tmp_path, database) -> None:
    path = tmp_path / "catalogue.yaml"
    path.write_text(CATALOGUE, encoding="utf-8")

    catalogue = load_catalogue(path)
    summary = apply_catalogue(database, catalogue)

    assert summary == {"nodes": 1, "allocations": 4, "nests": 2, "eggs": 1}
    node = database.get_node_by_name("node-eu-1")
    assert node.daemon_listen == 8443
    assert node.daemon_token == "secret-token"
    assert database.get_nest_by_name("Internal").private

    assert apply_catalogue(database, load_catalogue(path)) == {"nodes": 0, "allocations": 0, "nests": 0, "eggs": 0}


def test_empty_catalogue_is_rejected(tmp_path) -> None:
    path = tmp_path / "catalogue.yaml"
    path.write_text("nodes: []\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_catalogue(path)


@pytest.mark.parametrize(("raw", "expected"), [("false", False), ("no", False), ("true", True), (False, False), (None, True)])
def test_node_definition_parses_deployable_flag(raw, expected) -> None:
    data = {"name": "node", "fqdn": "node.example.com", "daemon_token": "token"}
    if raw is not None:
        data["deployable"] = raw

    assert NodeDefinition.from_dict(data).deployable is expected


def test_node_definition_rejects_unknown_flag_values() -> None:
    with pytest.raises(ValueError):
        NodeDefinition.from_dict({"name": "node", "fqdn": "node.example.com", "daemon_token": "token", "deployable": "maybe"})


def test_non_mapping_entries_are_rejected(tmp_path) -> None:
    path = tmp_path / "catalogue.yaml"
    path.write_text("nodes:\n  - node-eu-1\n", encoding="utf-8")

    with pytest.raises(ValueError) as excinfo:
        load_catalogue(path)

    assert "must be a mapping" in str(excinfo.value)

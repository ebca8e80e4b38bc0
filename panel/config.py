"""Configuration for the panel: environment settings and the YAML catalogue."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import yaml

from .database import Database, resolve_database_path

logger = logging.getLogger("panel.config")

DEFAULT_APP_URL = "http://localhost"
DEFAULT_ANALYTICS_RETENTION = 12
DEFAULT_DAEMON_TIMEOUT = 15.0


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(value: Optional[str], default: int, name: str) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer value {value!r} for {name}") from exc


def _env_float(value: Optional[str], default: float, name: str) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid number {value!r} for {name}") from exc


@dataclass(frozen=True)
class PanelSettings:
    """Runtime settings resolved from the process environment."""

    database_path: Path
    app_key: Optional[str]
    app_url: str = DEFAULT_APP_URL
    timezone: str = "UTC"
    secure_cookies: bool = False
    daemon_timeout: float = DEFAULT_DAEMON_TIMEOUT
    analytics_retention: int = DEFAULT_ANALYTICS_RETENTION

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "PanelSettings":
        env = os.environ if environ is None else environ
        app_url = (env.get("APP_URL") or DEFAULT_APP_URL).strip().rstrip("/")
        retention = _env_int(env.get("PANEL_ANALYTICS_RETENTION"), DEFAULT_ANALYTICS_RETENTION, "PANEL_ANALYTICS_RETENTION")
        if retention < 1:
            raise ValueError("PANEL_ANALYTICS_RETENTION must be at least 1")

        return PanelSettings(
            database_path=resolve_database_path(env.get("PANEL_DB_PATH")),
            app_key=env.get("APP_KEY") or None,
            app_url=app_url,
            timezone=(env.get("APP_TIMEZONE") or "UTC").strip(),
            secure_cookies=_env_flag(env.get("SESSION_SECURE_COOKIE"), app_url.startswith("https://")),
            daemon_timeout=_env_float(env.get("PANEL_DAEMON_TIMEOUT"), DEFAULT_DAEMON_TIMEOUT, "PANEL_DAEMON_TIMEOUT"),
            analytics_retention=retention,
        )


def _require_mapping(data: object, kind: str) -> Dict[str, object]:
    if not isinstance(data, dict):
        raise ValueError(f"Each {kind} entry must be a mapping, got {type(data).__name__}")
    return data


def _require_list(data: object, key: str) -> List[object]:
    if not isinstance(data, list):
        raise ValueError(f"'{key}' must be a list")
    return data


def _config_flag(value: object, default: bool, name: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value {value!r} for {name}")


def _parse_port_range(value: object) -> List[int]:
    """Expand ``25565``, ``"25565-25570"`` or a list of either into ports."""

    if isinstance(value, list):
        ports: List[int] = []
        for item in value:
            ports.extend(_parse_port_range(item))
        return ports

    text = str(value).strip()
    if "-" in text:
        start_text, end_text = text.split("-", 1)
        start, end = int(start_text), int(end_text)
        if end < start:
            raise ValueError(f"Invalid port range '{text}'")
        if end - start > 1000:
            raise ValueError(f"Port range '{text}' is larger than 1000 ports")
        return list(range(start, end + 1))
    return [int(text)]


@dataclass(frozen=True)
class NodeDefinition:
    """A node entry in the catalogue file."""

    name: str
    fqdn: str
    daemon_token: str
    scheme: str = "https"
    daemon_listen: int = 8080
    memory: int = 0
    disk: int = 0
    deployable: bool = True
    deploy_fee: int = 0
    allocation_ip: str = "0.0.0.0"
    ports: Tuple[int, ...] = ()

    @staticmethod
    def from_dict(data: object) -> "NodeDefinition":
        data = _require_mapping(data, "node")
        required_fields = {"name", "fqdn", "daemon_token"}
        missing = required_fields - data.keys()
        if missing:
            raise ValueError(f"Missing required node configuration fields: {', '.join(sorted(missing))}")

        allocations = data.get("allocations") or {}
        if not isinstance(allocations, dict):
            raise ValueError(f"Allocations for node '{data['name']}' must be a mapping")

        return NodeDefinition(
            name=str(data["name"]),
            fqdn=str(data["fqdn"]),
            daemon_token=str(data["daemon_token"]),
            scheme=str(data.get("scheme", "https")),
            daemon_listen=int(data.get("daemon_listen", 8080)),
            memory=int(data.get("memory", 0)),
            disk=int(data.get("disk", 0)),
            deployable=_config_flag(data.get("deployable"), True, "deployable"),
            deploy_fee=int(data.get("deploy_fee", 0)),
            allocation_ip=str(allocations.get("ip", "0.0.0.0")),
            ports=tuple(_parse_port_range(allocations["ports"])) if "ports" in allocations else (),
        )


@dataclass(frozen=True)
class EggDefinition:
    name: str
    docker_image: str
    startup: str
    description: Optional[str] = None

    @staticmethod
    def from_dict(data: object) -> "EggDefinition":
        data = _require_mapping(data, "egg")
        required_fields = {"name", "docker_image", "startup"}
        missing = required_fields - data.keys()
        if missing:
            raise ValueError(f"Missing required egg configuration fields: {', '.join(sorted(missing))}")
        description = data.get("description")
        return EggDefinition(
            name=str(data["name"]),
            docker_image=str(data["docker_image"]),
            startup=str(data["startup"]),
            description=str(description) if description is not None else None,
        )


@dataclass(frozen=True)
class NestDefinition:
    name: str
    description: Optional[str] = None
    private: bool = False
    eggs: Tuple[EggDefinition, ...] = field(default_factory=tuple)

    @staticmethod
    def from_dict(data: object) -> "NestDefinition":
        data = _require_mapping(data, "nest")
        if "name" not in data:
            raise ValueError("Missing required nest configuration fields: name")
        description = data.get("description")
        eggs_raw = _require_list(data.get("eggs") or [], "eggs")
        return NestDefinition(
            name=str(data["name"]),
            description=str(description) if description is not None else None,
            private=_config_flag(data.get("private"), False, "private"),
            eggs=tuple(EggDefinition.from_dict(item) for item in eggs_raw),
        )


@dataclass(frozen=True)
class Catalogue:
    nodes: Tuple[NodeDefinition, ...]
    nests: Tuple[NestDefinition, ...]


def load_catalogue(config_path: Path) -> Catalogue:
    """Load node and nest definitions from a YAML file."""
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}

    if not isinstance(raw, dict):
        raise ValueError("Catalogue file must contain a mapping at the top level")

    nodes_raw = _require_list(raw.get("nodes") or [], "nodes")
    nests_raw = _require_list(raw.get("nests") or [], "nests")
    if not nodes_raw and not nests_raw:
        raise ValueError("Catalogue file must define at least one entry under 'nodes' or 'nests'")

    return Catalogue(
        nodes=tuple(NodeDefinition.from_dict(item) for item in nodes_raw),
        nests=tuple(NestDefinition.from_dict(item) for item in nests_raw),
    )


def apply_catalogue(database: Database, catalogue: Catalogue) -> Dict[str, int]:
    """Create catalogue entries that are not yet present in the database."""

    summary = {"nodes": 0, "allocations": 0, "nests": 0, "eggs": 0}

    for definition in catalogue.nodes:
        node = database.get_node_by_name(definition.name)
        if node is None:
            node = database.create_node(
                name=definition.name,
                fqdn=definition.fqdn,
                daemon_token=definition.daemon_token,
                scheme=definition.scheme,
                daemon_listen=definition.daemon_listen,
                memory=definition.memory,
                disk=definition.disk,
                deployable=definition.deployable,
                deploy_fee=definition.deploy_fee,
            )
            summary["nodes"] += 1
            logger.info("Created node %s (%s)", node.name, node.fqdn)
        if definition.ports:
            summary["allocations"] += database.create_allocations(
                node.id, definition.allocation_ip, definition.ports
            )

    for nest_definition in catalogue.nests:
        nest = database.get_nest_by_name(nest_definition.name)
        if nest is None:
            nest = database.create_nest(
                nest_definition.name,
                description=nest_definition.description,
                private=nest_definition.private,
            )
            summary["nests"] += 1
            logger.info("Created nest %s", nest.name)

        existing = {egg.name for egg in database.list_eggs(nest.id)}
        for egg_definition in nest_definition.eggs:
            if egg_definition.name in existing:
                continue
            database.create_egg(
                nest.id,
                name=egg_definition.name,
                docker_image=egg_definition.docker_image,
                startup=egg_definition.startup,
                description=egg_definition.description,
            )
            summary["eggs"] += 1

    return summary


def resolve_catalogue_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the catalogue file."""
    if env_value:
        candidate = Path(env_value).expanduser().resolve(strict=False)
    else:
        candidate = (Path(__file__).resolve().parent.parent / "config" / "catalogue.yaml").resolve(strict=False)
    return candidate


__all__ = [
    "Catalogue",
    "EggDefinition",
    "NestDefinition",
    "NodeDefinition",
    "PanelSettings",
    "apply_catalogue",
    "load_catalogue",
    "resolve_catalogue_path",
]

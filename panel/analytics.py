"""Periodic collection of server utilisation samples from the node agents."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional

import httpx

from .daemon import DaemonServerRepository
from .database import Database
from .exceptions import DaemonConnectionException
from .models import Node, Server

logger = logging.getLogger("panel.analytics")

RepositoryFactory = Callable[[Node], DaemonServerRepository]


@dataclass
class CollectionReport:
    """Outcome of a single analytics collection pass."""

    processed: List[int] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)


def compute_sample(server: Server, utilization: Mapping[str, object]) -> Dict[str, float]:
    """Convert raw daemon utilisation into the stored cpu/memory/disk figures."""

    cpu_absolute = float(utilization["cpu_absolute"])
    memory_bytes = float(utilization["memory_bytes"])
    disk_bytes = float(utilization["disk_bytes"])

    return {
        "cpu": cpu_absolute / (server.cpu / 100),
        "memory": (memory_bytes / 1024) / server.memory / 10,
        "disk": (disk_bytes / 1024) / server.disk / 10,
    }


def usage_percentages(server: Server, utilization: Mapping[str, object]) -> Dict[str, Optional[float]]:
    """Percent of each limit in use; ``None`` where the server has no limit."""

    def _percent(used: float, limit: int) -> Optional[float]:
        if limit <= 0:
            return None
        return used / limit * 100

    return {
        "cpu": _percent(float(utilization.get("cpu_absolute", 0) or 0), server.cpu),
        "memory": _percent(float(utilization.get("memory_bytes", 0) or 0) / 1024 / 1024, server.memory),
        "disk": _percent(float(utilization.get("disk_bytes", 0) or 0) / 1024 / 1024, server.disk),
    }


class AnalyticsCollector:
    """Poll every server's daemon and append a bounded history of samples."""

    def __init__(
        self,
        database: Database,
        repository_factory: RepositoryFactory,
        *,
        retention: int = 12,
    ) -> None:
        if retention < 1:
            raise ValueError("Analytics retention must keep at least one entry")
        self._database = database
        self._repository_factory = repository_factory
        self._retention = retention

    def collect(self) -> CollectionReport:
        report = CollectionReport()
        nodes: Dict[int, Optional[Node]] = {}

        for server in self._database.list_servers():
            try:
                if server.node_id not in nodes:
                    nodes[server.node_id] = self._database.get_node(server.node_id)
                node = nodes[server.node_id]
                if node is None:
                    logger.error("%s references missing node %s, skipping", server.id, server.node_id)
                    report.failed.append(server.id)
                    continue
                stats = self._repository_factory(node).set_server(server).get_details()
            except DaemonConnectionException as exc:
                logger.error("%s failed to fetch stats: %s", server.id, exc.message)
                report.failed.append(server.id)
                continue
            except (ValueError, httpx.HTTPError) as exc:
                # Unreadable node token or an unusable node address.
                logger.error("%s failed to fetch stats: %s", server.id, exc)
                report.failed.append(server.id)
                continue

            if stats.get("state") == "offline":
                logger.info("%s is offline, skipping", server.id)
                report.skipped.append(server.id)
                continue

            logger.info("%s is being processed", server.id)

            if self._database.count_analytics(server.id) >= self._retention:
                logger.info("%s exceeds %s entries, deleting oldest", server.id, self._retention)

            try:
                utilization = stats["utilization"]
                sample = compute_sample(server, utilization)
                self._database.record_analytics(server.id, retain=self._retention, **sample)
            except Exception as exc:
                logger.error("%s failed to write stats: %s", server.id, exc)
                report.failed.append(server.id)
                continue

            report.processed.append(server.id)

        return report


__all__ = ["AnalyticsCollector", "CollectionReport", "compute_sample", "usage_percentages"]

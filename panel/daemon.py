"""HTTP client for the node agent daemon that runs managed servers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from .exceptions import DaemonConnectionException
from .models import Node, Server

logger = logging.getLogger("panel.daemon")

DEFAULT_TIMEOUT = 15.0

POWER_ACTIONS = frozenset({"start", "stop", "restart", "kill"})


def _extract_error_message(payload: object, default: str) -> str:
    if isinstance(payload, dict):
        errors = payload.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            detail = errors[0].get("detail")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    if isinstance(payload, str) and payload.strip():
        return payload.strip()
    return default


class DaemonServerRepository:
    """Issue server-scoped requests against the daemon running on a node.

    ``transport`` lets callers substitute the network layer, which the test
    suite does with :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        node: Node,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._node = node
        self._server: Optional[Server] = None
        self._timeout = timeout
        self._transport = transport

    @property
    def node(self) -> Node:
        return self._node

    def set_server(self, server: Server) -> "DaemonServerRepository":
        if server.node_id != self._node.id:
            raise ValueError(f"Server {server.id} is not hosted on node {self._node.id}")
        self._server = server
        return self

    def get_details(self) -> Dict[str, Any]:
        """Return the daemon's view of the server, including live utilisation."""

        server = self._require_server()
        payload = self._request("GET", f"/api/servers/{server.uuid}")
        if not isinstance(payload, dict):
            raise DaemonConnectionException("Node agent returned an unexpected response payload")
        return payload

    def create(self, *, start_on_completion: bool = True) -> None:
        server = self._require_server()
        self._request(
            "POST",
            "/api/servers",
            json={"uuid": server.uuid, "start_on_completion": start_on_completion},
        )

    def delete(self) -> None:
        server = self._require_server()
        self._request("DELETE", f"/api/servers/{server.uuid}")

    def power(self, action: str) -> None:
        if action not in POWER_ACTIONS:
            raise ValueError(f"Unsupported power action '{action}'")
        server = self._require_server()
        self._request("POST", f"/api/servers/{server.uuid}/power", json={"action": action})

    def _require_server(self) -> Server:
        if self._server is None:
            raise RuntimeError("No server has been bound to this daemon repository")
        return self._server

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._node.daemon_base_url,
            headers={
                "Authorization": f"Bearer {self._node.daemon_token}",
                "Accept": "application/json",
            },
            timeout=self._timeout,
            transport=self._transport,
        )

    def _request(self, method: str, path: str, *, json: Optional[Dict[str, Any]] = None) -> object:
        try:
            with self._client() as client:
                response = client.request(method, path, json=json)
        except httpx.RequestError as exc:
            logger.warning("Failed to contact node agent on %s: %s", self._node.name, exc)
            raise DaemonConnectionException(
                f"Could not establish a connection to the node agent on {self._node.name}."
            ) from exc

        if response.status_code >= 400:
            try:
                parsed: object = response.json()
            except ValueError:
                parsed = response.text
            message = _extract_error_message(
                parsed,
                f"Node agent request failed with status {response.status_code}",
            )
            logger.warning(
                "Node agent %s answered %s %s with %s: %s",
                self._node.name,
                method,
                path,
                response.status_code,
                message,
            )
            raise DaemonConnectionException(message)

        if response.status_code == 204 or not response.content:
            return None

        try:
            return response.json()
        except ValueError as exc:
            raise DaemonConnectionException("Node agent returned an invalid response") from exc


__all__ = ["DEFAULT_TIMEOUT", "DaemonServerRepository", "POWER_ACTIONS"]

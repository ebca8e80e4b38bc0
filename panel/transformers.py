"""Serialise records into the ``{"object": ..., "attributes": ...}`` API envelope."""

from __future__ import annotations

from typing import Callable, Dict, Iterable, TypeVar

from .models import AnalyticsData, Egg, Nest, Node, Ticket

T = TypeVar("T")


def item(object_name: str, attributes: Dict[str, object]) -> Dict[str, object]:
    return {"object": object_name, "attributes": attributes}


def collection(records: Iterable[T], transformer: Callable[[T], Dict[str, object]]) -> Dict[str, object]:
    return {"object": "list", "data": [transformer(record) for record in records]}


def transform_node(node: Node) -> Dict[str, object]:
    return item(
        "node",
        {
            "id": node.id,
            "name": node.name,
            "fqdn": node.fqdn,
            "memory": node.memory,
            "disk": node.disk,
            "deploy_fee": node.deploy_fee,
        },
    )


def transform_nest(nest: Nest) -> Dict[str, object]:
    return item("nest", {"id": nest.id, "uuid": nest.uuid, "name": nest.name, "description": nest.description})


def transform_egg(egg: Egg) -> Dict[str, object]:
    return item(
        "egg",
        {
            "id": egg.id,
            "uuid": egg.uuid,
            "nest": egg.nest_id,
            "name": egg.name,
            "description": egg.description,
            "docker_image": egg.docker_image,
        },
    )


def transform_analytics(entry: AnalyticsData) -> Dict[str, object]:
    return item(
        "analytics_data",
        {
            "id": entry.id,
            "cpu": entry.cpu,
            "memory": entry.memory,
            "disk": entry.disk,
            "created_at": entry.created_at.isoformat(),
        },
    )


def transform_ticket(ticket: Ticket) -> Dict[str, object]:
    return item(
        "ticket",
        {
            "id": ticket.id,
            "title": ticket.title,
            "content": ticket.content,
            "status": ticket.status,
            "created_at": ticket.created_at.isoformat(),
        },
    )


__all__ = [
    "collection",
    "item",
    "transform_analytics",
    "transform_egg",
    "transform_nest",
    "transform_node",
    "transform_ticket",
]

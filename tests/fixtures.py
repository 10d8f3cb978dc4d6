"""Shared test helpers."""

from typing import Any

from pathtree.models import Node
from pathtree.trees.service import TreeService


async def make_node(
    service: TreeService,
    node_id: str,
    parent: Node | None = None,
    **fields: Any,
) -> Node:
    """Save a node with an explicit id under ``parent`` (or as a root)."""
    node = Node(id=node_id, parent=parent, **fields)
    return await service.save(node)


async def make_tree(service: TreeService) -> dict[str, Node]:
    """Build the reference tree used across tests.

    r
    ├── c1
    │   ├── g1
    │   │   └── gg1
    │   └── g2
    └── c2
    """
    r = await make_node(service, "r", name="root")
    c1 = await make_node(service, "c1", r, name="child one")
    c2 = await make_node(service, "c2", r, name="child two")
    g1 = await make_node(service, "g1", c1, name="grand one")
    g2 = await make_node(service, "g2", c1, name="grand two")
    gg1 = await make_node(service, "gg1", g1, name="great grand")
    return {"r": r, "c1": c1, "c2": c2, "g1": g1, "g2": g2, "gg1": gg1}


async def stored_paths(service: TreeService) -> dict[str, str | None]:
    """Map every stored id to its path, read straight from the store."""
    documents = await service.collection.find({}, fields=["path"])
    return {d["id"]: d["path"] for d in documents}


async def stored_parents(service: TreeService) -> dict[str, str | None]:
    documents = await service.collection.find({}, fields=["parent"])
    return {d["id"]: d["parent"] for d in documents}

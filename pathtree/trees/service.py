"""Tree service: keeps materialized paths consistent and answers hierarchy queries.

Every node stores ``path``, the separator-joined ids from its root down to
itself. Saves compute the path from the parent's current path and rewrite
the whole subtree when a node moves; deletes either drop the subtree or
splice the removed id out of every descendant. Reads are plain prefix and
equality queries against the collection.
"""

import logging
import sqlite3
from typing import Any

from pathtree.errors import (
    AddChildrenError,
    CyclicParentError,
    DependencyError,
    InvalidArgumentError,
    NodeNotFoundError,
)
from pathtree.models import Node, TreeOptions
from pathtree.store.collection import Collection
from pathtree.trees.cascade import CascadeExecutor
from pathtree.trees.paths import PathCodec
from pathtree.trees.schemas import NodeQuery, TreeQuery
from pathtree.upsert import find_or_create

logger = logging.getLogger(__name__)

_NESTED_MODES = ("nest", "nested")


class TreeService:
    """Materialized-path hierarchy over one collection."""

    def __init__(
        self,
        collection: Collection,
        options: TreeOptions | None = None,
        *,
        node_class: type[Node] = Node,
    ) -> None:
        self.options = options or TreeOptions()
        if collection.separator != self.options.path_separator:
            raise InvalidArgumentError(
                f"collection {collection.name!r} uses separator {collection.separator!r}, "
                f"options declare {self.options.path_separator!r}"
            )
        self._collection = collection
        self._node_class = node_class
        self.paths = PathCodec(self.options.path_separator)
        self._cascade = CascadeExecutor(
            collection, self.options.num_workers, batch_size=self.options.batch_size,
        )

    @property
    def collection(self) -> Collection:
        return self._collection

    # -- Persistence --

    async def get(self, node_id: str) -> Node:
        """Load one node by id."""
        document = await self._collection.find_one({"id": node_id})
        if document is None:
            raise NodeNotFoundError(node_id)
        return self._wrap(document)

    async def save(self, node: Node) -> Node:
        """Persist a node, (re)computing its path when it is new or has moved.

        A moved node's descendants are rewritten before the node itself is
        written. Raises DependencyError if the parent cannot be read,
        CyclicParentError if the new parent sits below the node, and
        CascadeError if a descendant rewrite fails.

        A node read from the store is written back field by field, so
        fields it was not loaded with keep their stored values. Raises
        NodeNotFoundError if such a node has since been removed.
        """
        if node.id is None:
            node.id = self._collection.new_id()
        self.paths.check_id(node.id)

        if node.is_new or node.is_modified("parent") or node.path is None:
            await self._assign_path(node)

        document = node.to_document()
        if node.is_new:
            await self._collection.replace_one(document)
        else:
            changes = {k: v for k, v in document.items() if k != "id"}
            if not await self._collection.update_one(node.id, changes):
                raise NodeNotFoundError(node.id)
        node.mark_persisted()
        return node

    async def delete(self, node: Node) -> None:
        """Remove a node, handling its subtree according to ``on_delete``.

        DELETE removes the node and every descendant in one statement.
        REPARENT hands the direct children to the node's parent, then strips
        the node's id from every deeper path; the node is only removed once
        both phases finish.
        """
        if node.id is None:
            raise InvalidArgumentError("cannot delete a node without an id")

        if node.path and self.options.on_delete == "DELETE":
            await self._collection.delete_many({
                "$or": [
                    {"id": node.id},
                    {"path": {"$prefix": self.paths.descendant_prefix(node.path)}},
                ],
            })
            return

        if node.path:
            await self._splice_out(node)
        await self._collection.delete_one(node.id)

    async def _assign_path(self, node: Node) -> None:
        previous_path = node.previous_path
        moved = not node.is_new and previous_path is not None and node.is_modified("parent")

        if node.parent is None:
            new_path = self.paths.root_path(node.id)
        else:
            if node.parent == node.id:
                raise CyclicParentError(node.id, node.parent)
            parent_path = await self._parent_path(node.parent)
            if node.id in self.paths.segments(parent_path):
                raise CyclicParentError(node.id, node.parent)
            new_path = self.paths.child_path(parent_path, node.id)

        if not moved or previous_path == new_path:
            node.path = new_path
            return

        def rebase(document: dict[str, Any]) -> dict[str, Any]:
            return {"path": self.paths.rebase(document["path"], previous_path, new_path)}

        await self._cascade.run(
            {"path": {"$prefix": self.paths.descendant_prefix(previous_path)}},
            rebase,
            stage="reparent",
        )
        node.path = new_path

    async def _parent_path(self, parent_id: str) -> str:
        try:
            parent = await self._collection.find_one({"id": parent_id}, fields=["path"])
        except sqlite3.Error as exc:
            raise DependencyError(parent_id, str(exc)) from exc
        if parent is None:
            raise DependencyError(parent_id, "parent does not exist")
        if not parent.get("path"):
            raise DependencyError(parent_id, "parent has no path")
        return parent["path"]

    async def _splice_out(self, node: Node) -> None:
        new_parent = node.parent
        await self._cascade.run(
            {"parent": node.id},
            lambda document: {"parent": new_parent},
            stage="reparent-children",
        )
        await self._cascade.run(
            {"path": {"$ancestor": node.id}},
            lambda document: {"path": self.paths.remove_segment(document["path"], node.id)},
            stage="truncate-paths",
        )

    # -- Reads --

    async def get_children(self, node: Node, query: NodeQuery | None = None) -> list[Node]:
        """Direct children, or every descendant when ``query.recursive``."""
        query = query or NodeQuery()
        selector = dict(query.filters)
        if query.recursive:
            selector["path"] = {"$prefix": self.paths.descendant_prefix(self._require_path(node))}
        else:
            selector["parent"] = node.id

        documents = await self._collection.find(
            selector,
            fields=_with_tree_fields(query.fields),
            sort=query.sort,
            skip=query.skip,
            limit=query.limit,
        )
        return [self._wrap(d) for d in documents]

    async def get_leaves(self, node: Node, query: NodeQuery | None = None) -> list[Node]:
        """Descendants that have no descendant of their own in the result set."""
        query = query or NodeQuery()
        descendants = await self.get_children(node, query.model_copy(update={"recursive": True}))

        inner: set[str] = set()
        for d in descendants:
            segments = self.paths.segments(d.path)
            for i in range(1, len(segments)):
                inner.add(self.paths.separator.join(segments[:i]))
        return [d for d in descendants if d.path not in inner]

    async def get_parent(self, node: Node) -> Node | None:
        if node.parent is None:
            return None
        document = await self._collection.find_one({"id": node.parent})
        return self._wrap(document) if document is not None else None

    async def get_ancestors(self, node: Node, query: NodeQuery | None = None) -> list[Node]:
        """Every ancestor of ``node``; root first unless ``query.sort`` says otherwise."""
        query = query or NodeQuery()
        ids = self.paths.ancestor_ids(node.path)
        if not ids:
            return []

        selector = {**query.filters, "id": {"$in": ids}}
        documents = await self._collection.find(
            selector,
            fields=_with_tree_fields(query.fields),
            sort=query.sort,
            skip=query.skip,
            limit=query.limit,
        )
        if query.sort is None:
            order = {node_id: i for i, node_id in enumerate(ids)}
            documents.sort(key=lambda d: order[d["id"]])
        return [self._wrap(d) for d in documents]

    async def get_root(self, node: Node) -> Node:
        if node.parent is None:
            return node
        if not node.path:
            raise DependencyError(node.id, "node has a parent but no path")
        root_id = self.paths.root_id(node.path)
        document = await self._collection.find_one({"id": root_id})
        if document is None:
            raise DependencyError(root_id, "root document does not exist")
        return self._wrap(document)

    def level(self, node: Node) -> int:
        return self.paths.depth(node.path)

    async def get_nested_field(self, node: Node, field: str, separator: str = ".") -> str:
        """Join ``field`` from the root down to ``node``, e.g. ``"admin.staff.alice"``.

        Ancestors with an empty value contribute a placeholder (``-`` when
        joining with ``#``, ``#`` otherwise). The node's own value is always
        appended as is, an absent one as the empty string.
        """
        missing = "-" if separator == "#" else "#"
        values = []
        for ancestor in await self.get_ancestors(node):
            value = ancestor.to_document().get(field)
            values.append(str(value) if value else missing)
        own = node.to_document().get(field)
        values.append("" if own is None else str(own))
        return separator.join(values)

    def is_parent_of(self, node: Node, other: Node) -> bool:
        """True when ``other`` lies anywhere below ``node``."""
        return self.paths.is_descendant(self._require_path(other), self._require_path(node))

    def is_child_of(self, node: Node, other: Node) -> bool:
        """True when ``node`` lies anywhere below ``other``."""
        return self.paths.is_descendant(self._require_path(node), self._require_path(other))

    async def has_child(self, node: Node) -> bool:
        children = await self.get_children(node, NodeQuery(fields=[], limit=1))
        return len(children) > 0

    # -- Creation --

    async def add_child(
        self,
        parent: Node,
        selector: dict[str, Any],
        body: dict[str, Any] | None = None,
        *,
        upsert: bool = False,
    ) -> Node:
        """Find or create a child of ``parent`` matching ``selector`` and give it a path."""
        if not selector or not isinstance(selector, dict):
            raise InvalidArgumentError("add_child requires a non-empty selector dict")
        parent_path = self._require_path(parent)

        result = await find_or_create(
            self._collection, {**selector, "parent": parent.id}, body, upsert=upsert,
        )
        child = self._wrap(result.doc)
        child.path = self.paths.child_path(parent_path, child.id)
        return await self.save(child)

    async def add_children(
        self,
        items: list[Any],
        parent: Node | None = None,
        *,
        mode: str = "normal",
        upsert: bool = False,
    ) -> list[Node]:
        """Create several children one after another.

        Each item is a selector dict or a ``(selector, body[, options])``
        sequence. In ``normal`` mode every item hangs off ``parent`` (or
        becomes a root); in ``nested`` mode each item becomes the parent of
        the next. On failure AddChildrenError carries the children already
        created.
        """
        if not isinstance(items, (list, tuple)):
            raise InvalidArgumentError("add_children expects a list of children")
        nested = mode.strip().lower() in _NESTED_MODES

        current = parent
        created: list[Node] = []
        for index, item in enumerate(items):
            try:
                selector, body, item_upsert = self._unpack_child(item, upsert)
                if current is not None:
                    child = await self.add_child(current, selector, body, upsert=item_upsert)
                else:
                    result = await find_or_create(
                        self._collection, selector, body, upsert=item_upsert,
                    )
                    child = await self.save(self._wrap(result.doc))
            except Exception as exc:
                raise AddChildrenError(created, index) from exc

            created.append(child)
            if nested:
                current = child
        return created

    @staticmethod
    def _unpack_child(item: Any, upsert: bool) -> tuple[dict[str, Any], dict[str, Any] | None, bool]:
        if isinstance(item, dict):
            return item, None, upsert
        if isinstance(item, (list, tuple)) and item:
            selector = item[0]
            body = item[1] if len(item) > 1 else None
            options = item[2] if len(item) > 2 and isinstance(item[2], dict) else {}
            return selector, body, options.get("upsert", upsert)
        raise InvalidArgumentError(f"Unsupported child item: {item!r}")

    # -- Nested materialization --

    async def get_children_tree(
        self, root: Node | None = None, query: TreeQuery | None = None,
    ) -> list[dict[str, Any]]:
        """Return descendants of ``root`` (or the whole forest) as nested dicts.

        Documents are ordered by path segments, so a parent always precedes its
        children; each document is attached by walking down the last
        appended branch once per level below ``min_level``. A document with
        no node to attach to is skipped.
        """
        query = query or TreeQuery()
        selector = dict(query.filters)
        if query.recursive:
            if root is not None:
                selector["path"] = {"$prefix": self.paths.descendant_prefix(self._require_path(root))}
            if "parent" in selector and selector["parent"] is None:
                del selector["parent"]
        else:
            selector["parent"] = root.id if root is not None else None

        documents = await self._collection.find(selector, fields=_with_tree_fields(query.fields))
        # segment order keeps every parent directly ahead of its own subtree
        documents.sort(key=lambda d: self.paths.segments(d.get("path")))

        min_level = query.min_level
        if root is not None:
            min_level = max(min_level, self.paths.depth(root.path) + 1)

        forest: list[dict[str, Any]] = []
        for document in documents:
            self._attach(forest, document, min_level, query.allow_empty_children)
        return forest

    def _attach(
        self,
        forest: list[dict[str, Any]],
        document: dict[str, Any],
        min_level: int,
        allow_empty_children: bool,
    ) -> None:
        level = self.paths.depth(document.get("path"))
        if level < min_level:
            logger.debug("Skipping %s: level %d is above min_level %d", document["id"], level, min_level)
            return

        siblings = forest
        for _ in range(level - min_level):
            if not siblings:
                logger.debug("Skipping %s: no node to attach to", document["id"])
                return
            siblings = siblings[-1].setdefault("children", [])

        if allow_empty_children:
            document["children"] = []
        siblings.append(document)

    # -- Repair --

    async def rebuild_paths(self) -> int:
        """Recompute every path from parent pointers. Returns the number fixed.

        Heals the partial state a failed cascade can leave behind.
        """
        fixed = await self._rebuild_below(None, None)
        logger.info("Rebuilt paths in %s: %d document(s) fixed", self._collection.name, fixed)
        return fixed

    async def _rebuild_below(self, parent_id: str | None, parent_path: str | None) -> int:
        def expected(document: dict[str, Any]) -> str:
            if parent_path is None:
                return self.paths.root_path(document["id"])
            return self.paths.child_path(parent_path, document["id"])

        def repair(document: dict[str, Any]) -> dict[str, Any] | None:
            path = expected(document)
            return None if document["path"] == path else {"path": path}

        fixed = await self._cascade.run({"parent": parent_id}, repair, stage="rebuild")

        async for child in self._collection.stream(
            {"parent": parent_id}, batch_size=self.options.batch_size,
        ):
            if parent_path is not None and child["id"] in self.paths.segments(parent_path):
                logger.warning("Parent cycle at %s, not descending", child["id"])
                continue
            fixed += await self._rebuild_below(child["id"], expected(child))
        return fixed

    # -- Helpers --

    def _wrap(self, document: dict[str, Any]) -> Node:
        return self._node_class.from_document(document)

    @staticmethod
    def _require_path(node: Node) -> str:
        if not node.path:
            raise InvalidArgumentError(f"node {node.id} has no path; save it first")
        return node.path


def _with_tree_fields(fields: list[str] | None) -> list[str] | None:
    """Projection that always carries the fields ``save`` and ``delete`` rely on."""
    if fields is None:
        return None
    return list(dict.fromkeys([*fields, "parent", "path"]))

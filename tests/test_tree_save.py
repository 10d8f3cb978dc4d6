"""Tests for TreeService.save: path assignment, re-parenting and cascades."""

import asyncio
import sqlite3

import pytest

from pathtree.errors import (
    CascadeError,
    CyclicParentError,
    DependencyError,
    InvalidArgumentError,
    NodeNotFoundError,
)
from pathtree.models import Node, TreeOptions
from pathtree.store.collection import Collection
from pathtree.trees.service import TreeService
from tests.fixtures import make_node, make_tree, stored_parents, stored_paths

EXPECTED_PATHS = {
    "r": "r",
    "c1": "r#c1",
    "c2": "r#c2",
    "g1": "r#c1#g1",
    "g2": "r#c1#g2",
    "gg1": "r#c1#g1#gg1",
}


class FlakyCollection(Collection):
    """Fails update_one for the ids in ``fail_on``."""

    fail_on: set[str] = set()

    async def update_one(self, doc_id, fields):
        await asyncio.sleep(0)
        if doc_id in self.fail_on:
            raise sqlite3.OperationalError("database is locked")
        return await super().update_one(doc_id, fields)


class TestPathAssignment:
    async def test_paths_follow_parents(self, service):
        """Every saved node's path is its parent's path plus its own id."""
        await make_tree(service)
        assert await stored_paths(service) == EXPECTED_PATHS

    async def test_root_path_is_own_id(self, service):
        root = await make_node(service, "solo")
        assert root.path == "solo"
        assert root.parent is None

    async def test_missing_id_is_generated(self, service):
        node = await service.save(Node(name="anonymous"))
        assert node.id is not None
        assert node.path == node.id
        assert not node.is_new

    async def test_domain_fields_persist(self, service):
        await make_node(service, "r", name="root", rank=1)
        loaded = await service.get("r")
        assert loaded.name == "root"
        assert loaded.rank == 1

    async def test_parent_may_be_given_as_node(self, service):
        r = await make_node(service, "r")
        child = await service.save(Node(id="c", parent=r))
        assert child.parent == "r"
        assert child.path == "r#c"

    async def test_id_containing_separator_rejected(self, service):
        with pytest.raises(InvalidArgumentError):
            await service.save(Node(id="a#b"))
        assert await service.collection.count() == 0

    async def test_custom_separator(self, db):
        options = TreeOptions(path_separator="/")
        slash = TreeService(Collection(db, "folders", separator="/"), options)
        home = await make_node(slash, "home")
        docs = await make_node(slash, "docs", home)
        assert docs.path == "home/docs"

    async def test_mismatched_separator_rejected(self, db):
        with pytest.raises(InvalidArgumentError):
            TreeService(Collection(db, "folders", separator="/"), TreeOptions())

    async def test_missing_parent_raises_dependency_error(self, service):
        """A dangling parent reference fails before anything is written."""
        with pytest.raises(DependencyError):
            await service.save(Node(id="orphan", parent="ghost"))
        assert await service.collection.count() == 0

    async def test_resave_without_move_keeps_paths(self, service):
        tree = await make_tree(service)
        c1 = tree["c1"]
        c1.name = "renamed"
        await service.save(c1)
        assert await stored_paths(service) == EXPECTED_PATHS
        assert (await service.get("c1")).name == "renamed"

    async def test_resave_leaves_unloaded_fields_alone(self, service):
        r = await make_node(service, "r", name="root")
        await service.collection.update_one("r", {"owner": "ops"})
        r.name = "top"
        await service.save(r)
        stored = await service.collection.find_one({"id": "r"})
        assert stored["name"] == "top"
        assert stored["owner"] == "ops"

    async def test_saving_removed_node_raises(self, service):
        tree = await make_tree(service)
        gg1 = tree["gg1"]
        await service.delete(gg1)
        gg1.name = "gone"
        with pytest.raises(NodeNotFoundError):
            await service.save(gg1)
        assert await service.collection.find_one({"id": "gg1"}) is None


class TestReparent:
    async def test_move_subtree_under_sibling(self, service):
        """Moving c1 under c2 rewrites c1 and every descendant, nothing else."""
        tree = await make_tree(service)
        c1 = tree["c1"]
        c1.parent = "c2"
        await service.save(c1)

        assert c1.path == "r#c2#c1"
        assert await stored_paths(service) == {
            "r": "r",
            "c1": "r#c2#c1",
            "c2": "r#c2",
            "g1": "r#c2#c1#g1",
            "g2": "r#c2#c1#g2",
            "gg1": "r#c2#c1#g1#gg1",
        }

    async def test_move_subtree_to_root(self, service):
        tree = await make_tree(service)
        g1 = tree["g1"]
        g1.parent = None
        await service.save(g1)

        paths = await stored_paths(service)
        assert paths["g1"] == "g1"
        assert paths["gg1"] == "g1#gg1"
        assert paths["g2"] == "r#c1#g2"

    async def test_move_loaded_node(self, service):
        """A node read back from the store tracks its persisted parent."""
        await make_tree(service)
        g2 = await service.get("g2")
        g2.parent = "gg1"
        await service.save(g2)
        assert (await service.get("g2")).path == "r#c1#g1#gg1#g2"

    async def test_similar_id_prefixes_untouched(self, service):
        """Moving c1 leaves c10's subtree alone."""
        r = await make_node(service, "r")
        c1 = await make_node(service, "c1", r)
        c10 = await make_node(service, "c10", r)
        await make_node(service, "x", c10)
        other = await make_node(service, "other")

        c1.parent = other.id
        await service.save(c1)
        paths = await stored_paths(service)
        assert paths["c10"] == "r#c10"
        assert paths["x"] == "r#c10#x"

    async def test_move_under_descendant_rejected(self, service):
        """A node cannot become its own descendant; nothing is written."""
        tree = await make_tree(service)
        c1 = tree["c1"]
        c1.parent = "gg1"
        with pytest.raises(CyclicParentError):
            await service.save(c1)
        assert await stored_paths(service) == EXPECTED_PATHS
        assert (await stored_parents(service))["c1"] == "r"

    async def test_move_under_self_rejected(self, service):
        tree = await make_tree(service)
        c1 = tree["c1"]
        c1.parent = "c1"
        with pytest.raises(CyclicParentError):
            await service.save(c1)

    async def test_move_to_missing_parent_rejected(self, service):
        tree = await make_tree(service)
        c1 = tree["c1"]
        c1.parent = "ghost"
        with pytest.raises(DependencyError):
            await service.save(c1)
        assert await stored_paths(service) == EXPECTED_PATHS


@pytest.fixture
async def flaky_service(db):
    collection = FlakyCollection(db, "flaky")
    collection.fail_on = set()
    return TreeService(collection, TreeOptions(num_workers=2))


class TestReparentFailure:
    async def test_cascade_failure_surfaces_and_leaves_node_unmoved(self, flaky_service):
        """A failed descendant rewrite raises CascadeError; the moved node is not written."""
        tree = await make_tree(flaky_service)
        flaky_service.collection.fail_on = {"gg1"}
        c1 = tree["c1"]
        c1.parent = "c2"
        with pytest.raises(CascadeError) as exc_info:
            await flaky_service.save(c1)

        assert isinstance(exc_info.value.__cause__, sqlite3.OperationalError)
        paths = await stored_paths(flaky_service)
        assert paths["c1"] == "r#c1"
        assert paths["gg1"] == "r#c1#g1#gg1"
        assert (await stored_parents(flaky_service))["c1"] == "r"

    async def test_retrying_save_completes_the_move(self, flaky_service):
        tree = await make_tree(flaky_service)
        flaky_service.collection.fail_on = {"gg1"}
        c1 = tree["c1"]
        c1.parent = "c2"
        with pytest.raises(CascadeError):
            await flaky_service.save(c1)

        flaky_service.collection.fail_on = set()
        await flaky_service.save(c1)
        paths = await stored_paths(flaky_service)
        assert paths["c1"] == "r#c2#c1"
        assert paths["g1"] == "r#c2#c1#g1"
        assert paths["g2"] == "r#c2#c1#g2"
        assert paths["gg1"] == "r#c2#c1#g1#gg1"

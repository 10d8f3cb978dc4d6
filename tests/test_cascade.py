"""Tests for the bounded-concurrency cascade executor."""

import asyncio
import sqlite3

import pytest

from pathtree.errors import CascadeError, InvalidArgumentError
from pathtree.store.collection import Collection
from pathtree.trees.cascade import CascadeExecutor


class TrackingCollection(Collection):
    """Counts concurrent update_one calls and can fail on chosen ids."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.in_flight = 0
        self.peak = 0
        self.fail_on: set[str] = set()

    async def update_one(self, doc_id, fields):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(0.005)
            if doc_id in self.fail_on:
                raise sqlite3.OperationalError(f"disk I/O error on {doc_id}")
            return await super().update_one(doc_id, fields)
        finally:
            self.in_flight -= 1


@pytest.fixture
async def tracked(db):
    coll = TrackingCollection(db, "nodes")
    for i in range(20):
        await coll.insert_one({"id": f"n{i:02d}", "path": f"old#n{i:02d}"})
    return coll


def _move(document):
    return {"path": "new#" + document["path"].split("#", 1)[1]}


class TestCascadeExecutor:
    async def test_rewrites_every_match(self, tracked):
        executor = CascadeExecutor(tracked, 4, batch_size=3)
        updated = await executor.run({"path": {"$prefix": "old#"}}, _move)
        assert updated == 20
        assert await tracked.count({"path": {"$prefix": "new#"}}) == 20
        assert await tracked.count({"path": {"$prefix": "old#"}}) == 0

    async def test_in_flight_updates_never_exceed_concurrency(self, tracked):
        """At most num_workers updates run at once, and the pool is actually used."""
        executor = CascadeExecutor(tracked, 3, batch_size=5)
        await executor.run({"path": {"$prefix": "old#"}}, _move)
        assert tracked.peak == 3

    async def test_single_worker_is_sequential(self, tracked):
        executor = CascadeExecutor(tracked, 1)
        await executor.run({"path": {"$prefix": "old#"}}, _move)
        assert tracked.peak == 1

    async def test_no_matches_is_a_no_op(self, tracked):
        executor = CascadeExecutor(tracked, 2)
        assert await executor.run({"path": {"$prefix": "missing#"}}, _move) == 0

    async def test_rewrite_returning_none_skips_document(self, tracked):
        executor = CascadeExecutor(tracked, 2)
        updated = await executor.run(
            {"path": {"$prefix": "old#"}},
            lambda d: _move(d) if d["id"].endswith("0") else None,
        )
        assert updated == 2

    async def test_failure_aborts_with_cascade_error(self, tracked):
        """The first failing update stops the pool and surfaces the store error."""
        tracked.fail_on = {"n05"}
        executor = CascadeExecutor(tracked, 2, batch_size=4)
        with pytest.raises(CascadeError) as exc_info:
            await executor.run({"path": {"$prefix": "old#"}}, _move, stage="reparent")

        error = exc_info.value
        assert error.stage == "reparent"
        assert isinstance(error.__cause__, sqlite3.OperationalError)
        assert error.updated < 20
        assert tracked.in_flight == 0
        assert await tracked.count({"path": {"$prefix": "old#"}}) >= 1

    async def test_rerun_after_failure_completes(self, tracked):
        """Re-running the same cascade finishes the documents the failed run missed."""
        tracked.fail_on = {"n05"}
        executor = CascadeExecutor(tracked, 2, batch_size=4)
        with pytest.raises(CascadeError):
            await executor.run({"path": {"$prefix": "old#"}}, _move)

        tracked.fail_on = set()
        await executor.run({"path": {"$prefix": "old#"}}, _move)
        assert await tracked.count({"path": {"$prefix": "new#"}}) == 20

    def test_concurrency_must_be_positive(self, collection):
        with pytest.raises(InvalidArgumentError):
            CascadeExecutor(collection, 0)

"""Shared pytest fixtures for pathtree tests."""

import pytest

from pathtree.db.connection import Database
from pathtree.models import TreeOptions
from pathtree.store.collection import Collection
from pathtree.trees.service import TreeService


@pytest.fixture
async def db():
    """In-memory database for tests."""
    database = await Database.connect(":memory:")
    yield database
    await database.close()


@pytest.fixture
async def collection(db):
    """Collection using the default ``#`` separator."""
    return Collection(db, "nodes")


@pytest.fixture
async def service(collection):
    """TreeService in DELETE mode."""
    return TreeService(collection, TreeOptions())


@pytest.fixture
async def reparent_service(db):
    """TreeService in REPARENT mode on its own collection."""
    options = TreeOptions(on_delete="REPARENT", num_workers=3)
    return TreeService(Collection(db, "reparented"), options)

"""pathtree entry point: wires the database and one TreeService per hierarchy."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from pathtree.config import Settings, load_hierarchies
from pathtree.db.connection import Database
from pathtree.models import TreeOptions
from pathtree.store.collection import Collection
from pathtree.trees.service import TreeService


def build_service(db: Database, name: str, options: TreeOptions) -> TreeService:
    """Create the collection for ``name`` and the service that manages it."""
    collection = Collection(
        db, name, separator=options.path_separator, id_type=options.id_type,
    )
    return TreeService(collection, options)


@asynccontextmanager
async def open_trees(
    db_path: str | None = None,
    config_path: str | Path | None = None,
    *,
    settings: Settings | None = None,
) -> AsyncIterator[dict[str, TreeService]]:
    """Open the database and yield ``{collection name: TreeService}``.

    Hierarchies come from ``config_path`` (or ``PATHTREE_HIERARCHIES``).
    The connection is closed on exit.
    """
    settings = settings or Settings.from_env()
    db = await Database.connect(db_path or settings.db_path)
    try:
        config_path = config_path or settings.hierarchies_path
        declared = load_hierarchies(config_path, settings.default_options) if config_path else {}
        yield {name: build_service(db, name, options) for name, options in declared.items()}
    finally:
        await db.close()

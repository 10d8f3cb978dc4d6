"""Bounded-concurrency rewrite of every document matching a selector."""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from pathtree.errors import CascadeError, InvalidArgumentError
from pathtree.store.collection import Collection

logger = logging.getLogger(__name__)

# Computes the fields to set on one affected document, or None to leave it alone.
Rewrite = Callable[[dict[str, Any]], dict[str, Any] | None]


class CascadeExecutor:
    """Drains a document stream through a fixed pool of update workers.

    Each worker pulls the next document, computes its rewrite and waits for
    the store update before pulling again, so at most ``concurrency``
    updates are in flight. Documents are rewritten in no particular order;
    every rewrite must depend only on the document it is given.
    """

    def __init__(self, collection: Collection, concurrency: int, *, batch_size: int = 100) -> None:
        if concurrency < 1:
            raise InvalidArgumentError("cascade concurrency must be at least 1")
        self._collection = collection
        self.concurrency = concurrency
        self._batch_size = batch_size

    async def run(self, selector: dict[str, Any], rewrite: Rewrite, *, stage: str = "cascade") -> int:
        """Apply ``rewrite`` to every match. Returns the number of documents updated.

        The first failing update stops the pool and raises CascadeError with
        the store error as its cause. Updates that already landed are kept.
        """
        source = self._collection.stream(selector, batch_size=self._batch_size)
        pull_lock = asyncio.Lock()
        updated = 0

        async def next_document() -> dict[str, Any] | None:
            async with pull_lock:
                try:
                    return await anext(source)
                except StopAsyncIteration:
                    return None

        async def worker() -> None:
            nonlocal updated
            while (document := await next_document()) is not None:
                changes = rewrite(document)
                if not changes:
                    continue
                await self._collection.update_one(document["id"], changes)
                updated += 1

        logger.debug(
            "Cascade %s on %s started with %d worker(s)",
            stage, self._collection.name, self.concurrency,
        )
        workers = [asyncio.create_task(worker()) for _ in range(self.concurrency)]
        try:
            await asyncio.gather(*workers)
        except BaseException as exc:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await source.aclose()
            if isinstance(exc, Exception):
                logger.warning(
                    "Cascade %s on %s aborted after %d update(s): %s",
                    stage, self._collection.name, updated, exc,
                )
                raise CascadeError(stage, updated) from exc
            raise

        await source.aclose()
        logger.debug("Cascade %s on %s rewrote %d document(s)", stage, self._collection.name, updated)
        return updated

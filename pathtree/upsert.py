"""Atomic find-or-create over a document collection.

One round trip to the store: the match, the optional update and the
insert all happen inside ``Collection.find_one_and_update``, so two callers
racing on the same selector can never both insert.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict

from pathtree.errors import InvalidArgumentError
from pathtree.store.collection import Collection


class FindOrCreateResult(BaseModel):
    doc: dict[str, Any]
    is_new: bool


class FindOrCreateRequest(BaseModel):
    """Immutable description of one find-or-create call.

    ``upsert=False`` applies ``body`` only when inserting; ``upsert=True``
    applies it on both insert and update. Calling ``execute`` again re-runs
    exactly the same operation.
    """

    model_config = ConfigDict(frozen=True)

    selector: dict[str, Any]
    body: dict[str, Any] | None = None
    upsert: bool = False

    async def execute(self, collection: Collection) -> FindOrCreateResult:
        if self.upsert:
            result = await collection.find_one_and_update(
                self.selector, set_fields=self.body, upsert=True,
            )
        else:
            result = await collection.find_one_and_update(
                self.selector, set_on_insert=self.body, upsert=True,
            )
        assert result.document is not None
        return FindOrCreateResult(doc=result.document, is_new=not result.updated_existing)


async def find_or_create(
    collection: Collection,
    selector: dict[str, Any],
    body: dict[str, Any] | None = None,
    *,
    upsert: bool = False,
) -> FindOrCreateResult:
    """Find the document matching ``selector`` or create it.

    Raises InvalidArgumentError when the selector is missing or not a dict.
    """
    if not selector or not isinstance(selector, dict):
        raise InvalidArgumentError("find_or_create requires a non-empty selector dict")
    if body is not None and not isinstance(body, dict):
        raise InvalidArgumentError("find_or_create body must be a dict")
    request = FindOrCreateRequest(selector=dict(selector), body=body, upsert=upsert)
    return await request.execute(collection)

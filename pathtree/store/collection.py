"""Document collections stored in the shared ``documents`` table."""

import json
import logging
import os
import time
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pathtree.db.connection import Database, Transaction
from pathtree.errors import InvalidArgumentError
from pathtree.models import RESERVED_FIELDS, IdType
from pathtree.store.query import compile_selector, compile_sort
from pathtree.utils.json import dump_json_field, parse_json_field

logger = logging.getLogger(__name__)

_SELECT = "SELECT doc_id, parent, path, data FROM documents"


@dataclass(frozen=True)
class FindAndModifyResult:
    """Outcome of ``find_one_and_update``: the post-update document and whether it pre-existed."""

    document: dict[str, Any] | None
    updated_existing: bool


def generate_object_id() -> str:
    """24-char hex id: 4 bytes of timestamp followed by 8 random bytes."""
    return f"{int(time.time()):08x}{os.urandom(8).hex()}"


class Collection:
    """A named set of documents with a small Mongo-flavoured query surface.

    Documents are plain dicts ``{"id", "parent", "path", **fields}``; the
    three tree fields are real indexed columns, the rest is JSON.
    """

    def __init__(
        self,
        db: Database,
        name: str,
        *,
        separator: str = "#",
        id_type: IdType = "objectid",
        defaults: dict[str, Any] | None = None,
    ) -> None:
        self._db = db
        self.name = name
        self.separator = separator
        self._id_type = id_type
        self._defaults = dict(defaults or {})

    def new_id(self) -> str:
        if self._id_type == "uuid":
            return uuid4().hex
        return generate_object_id()

    # -- Reads --

    async def find_one(
        self, selector: dict[str, Any], fields: Iterable[str] | None = None,
    ) -> dict[str, Any] | None:
        where, params = self._where(selector)
        row = await self._db.fetchone(f"{_SELECT} WHERE {where} LIMIT 1", tuple(params))
        if row is None:
            return None
        return self._project(self._row_to_document(row), fields)

    async def find(
        self,
        selector: dict[str, Any] | None = None,
        *,
        fields: Iterable[str] | None = None,
        sort: list[tuple[str, int]] | None = None,
        skip: int = 0,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        where, params = self._where(selector or {})
        order_by, order_params = compile_sort(sort)
        sql = f"{_SELECT} WHERE {where} {order_by}"
        params.extend(order_params)
        if limit is not None or skip:
            sql += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, skip])
        rows = await self._db.fetchall(sql, tuple(params))
        return [self._project(self._row_to_document(row), fields) for row in rows]

    async def count(self, selector: dict[str, Any] | None = None) -> int:
        where, params = self._where(selector or {})
        row = await self._db.fetchone(
            f"SELECT COUNT(*) AS cnt FROM documents WHERE {where}", tuple(params),
        )
        assert row is not None
        return row["cnt"]

    async def stream(
        self, selector: dict[str, Any], *, batch_size: int = 100,
    ) -> AsyncIterator[dict[str, Any]]:
        """Yield matching documents page by page, ordered by id.

        Pages are fetched with keyset pagination, so documents rewritten by
        the consumer between pages are never revisited and the full match
        set is never held in memory.
        """
        where, params = self._where(selector)
        last_id: str | None = None
        while True:
            sql = f"{_SELECT} WHERE {where}"
            page_params = list(params)
            if last_id is not None:
                sql += " AND doc_id > ?"
                page_params.append(last_id)
            sql += " ORDER BY doc_id LIMIT ?"
            page_params.append(batch_size)

            rows = await self._db.fetchall(sql, tuple(page_params))
            for row in rows:
                yield self._row_to_document(row)
            if len(rows) < batch_size:
                return
            last_id = rows[-1]["doc_id"]

    # -- Writes --

    async def insert_one(self, document: dict[str, Any]) -> dict[str, Any]:
        """Insert a document, assigning an id if it has none. Returns the stored document."""
        document = {**self._defaults, **document}
        if not document.get("id"):
            document["id"] = self.new_id()
        doc_id, parent, path, data = self._split(document)
        await self._db.execute(
            """
            INSERT INTO documents (collection, doc_id, parent, path, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (self.name, doc_id, parent, path, dump_json_field(data), _now()),
        )
        return document

    async def replace_one(self, document: dict[str, Any]) -> dict[str, Any]:
        """Write the whole document by id, inserting it when absent."""
        if not document.get("id"):
            raise InvalidArgumentError("replace_one requires a document with an id")
        doc_id, parent, path, data = self._split(document)
        await self._db.execute(
            """
            INSERT INTO documents (collection, doc_id, parent, path, data, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (collection, doc_id)
            DO UPDATE SET parent = excluded.parent, path = excluded.path, data = excluded.data
            """,
            (self.name, doc_id, parent, path, dump_json_field(data), _now()),
        )
        return document

    async def update_one(self, doc_id: str, fields: dict[str, Any]) -> int:
        """Set one or more fields on the document with this id. Returns rows changed."""
        set_sql, params = self._set_clause(fields)
        cursor = await self._db.execute(
            f"UPDATE documents SET {set_sql} WHERE collection = ? AND doc_id = ?",
            (*params, self.name, doc_id),
        )
        return cursor.rowcount

    async def delete_one(self, doc_id: str) -> int:
        cursor = await self._db.execute(
            "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
            (self.name, doc_id),
        )
        return cursor.rowcount

    async def delete_many(self, selector: dict[str, Any]) -> int:
        """Remove every matching document in one statement."""
        where, params = self._where(selector)
        cursor = await self._db.execute(f"DELETE FROM documents WHERE {where}", tuple(params))
        logger.debug("Removed %d document(s) from %s", cursor.rowcount, self.name)
        return cursor.rowcount

    async def find_one_and_update(
        self,
        selector: dict[str, Any],
        *,
        set_fields: dict[str, Any] | None = None,
        set_on_insert: dict[str, Any] | None = None,
        upsert: bool = False,
    ) -> FindAndModifyResult:
        """Atomically find a match and update it, or insert one when ``upsert``.

        ``set_fields`` apply on both update and insert; ``set_on_insert`` only
        when a new document is created. The inserted document also receives
        the selector's equality fields and the collection defaults. The whole
        exchange runs inside one immediate transaction.
        """
        where, params = self._where(selector)
        async with self._db.transaction() as tx:
            row = await tx.fetchone(f"{_SELECT} WHERE {where} LIMIT 1", tuple(params))
            if row is not None:
                if set_fields:
                    await self._update_in(tx, row["doc_id"], set_fields)
                    row = await tx.fetchone(
                        f"{_SELECT} WHERE collection = ? AND doc_id = ?",
                        (self.name, row["doc_id"]),
                    )
                    assert row is not None
                return FindAndModifyResult(self._row_to_document(row), updated_existing=True)

            if not upsert:
                return FindAndModifyResult(None, updated_existing=False)

            document = {
                **self._defaults,
                **_equality_fields(selector),
                **(set_on_insert or {}),
                **(set_fields or {}),
            }
            if not document.get("id"):
                document["id"] = self.new_id()
            doc_id, parent, path, data = self._split(document)
            await tx.execute(
                """
                INSERT INTO documents (collection, doc_id, parent, path, data, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (self.name, doc_id, parent, path, dump_json_field(data), _now()),
            )
            return FindAndModifyResult(document, updated_existing=False)

    # -- Helpers --

    def _where(self, selector: dict[str, Any]) -> tuple[str, list[Any]]:
        where, params = compile_selector(selector, self.separator)
        return f"collection = ? AND ({where})", [self.name, *params]

    async def _update_in(self, tx: Transaction, doc_id: str, fields: dict[str, Any]) -> None:
        set_sql, params = self._set_clause(fields)
        await tx.execute(
            f"UPDATE documents SET {set_sql} WHERE collection = ? AND doc_id = ?",
            (*params, self.name, doc_id),
        )

    @staticmethod
    def _set_clause(fields: dict[str, Any]) -> tuple[str, list[Any]]:
        if not fields:
            raise InvalidArgumentError("update requires at least one field")
        if "id" in fields:
            raise InvalidArgumentError("id is immutable")

        assignments: list[str] = []
        params: list[Any] = []
        json_args: list[str] = []
        json_params: list[Any] = []
        for field, value in fields.items():
            if field in ("parent", "path"):
                assignments.append(f"{field} = ?")
                params.append(value)
            else:
                # keys are top-level document fields, quoted so dots stay literal
                if not isinstance(field, str) or not field or '"' in field:
                    raise InvalidArgumentError(f"Invalid field name: {field!r}")
                json_args.append("?, json(?)")
                json_params.extend([f'$."{field}"', json.dumps(value, default=str)])
        if json_args:
            assignments.append(f"data = json_set(data, {', '.join(json_args)})")
            params.extend(json_params)
        return ", ".join(assignments), params

    @staticmethod
    def _split(document: dict[str, Any]) -> tuple[str, str | None, str | None, dict[str, Any]]:
        data = {k: v for k, v in document.items() if k not in RESERVED_FIELDS}
        return str(document["id"]), document.get("parent"), document.get("path"), data

    @staticmethod
    def _row_to_document(row) -> dict[str, Any]:
        """Convert a database row to a document dict."""
        return {
            "id": row["doc_id"],
            "parent": row["parent"],
            "path": row["path"],
            **(parse_json_field(row["data"]) or {}),
        }

    @staticmethod
    def _project(document: dict[str, Any], fields: Iterable[str] | None) -> dict[str, Any]:
        if fields is None:
            return document
        keep = {"id", *fields}
        return {k: v for k, v in document.items() if k in keep}


def _equality_fields(selector: dict[str, Any]) -> dict[str, Any]:
    """Fields an upsert copies from the selector into the inserted document."""
    fields: dict[str, Any] = {}
    for field, condition in selector.items():
        if isinstance(condition, dict):
            if "$eq" in condition:
                fields[field] = condition["$eq"]
        else:
            fields[field] = condition
    return fields


def _now() -> str:
    return datetime.now(UTC).isoformat()

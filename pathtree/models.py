"""Canonical data structures for pathtree.

Defined once here, referenced everywhere else. ``Node`` is the in-memory
view of a stored document; ``TreeOptions`` is the per-hierarchy
configuration a ``TreeService`` is constructed with.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, field_validator

DeleteMode = Literal["DELETE", "REPARENT"]
IdType = Literal["objectid", "uuid"]

# Fields owned by the store and the tree engine. Everything else on a
# document is opaque domain data.
RESERVED_FIELDS = ("id", "parent", "path")


# ---------------------------------------------------------------------------
# Hierarchy configuration
# ---------------------------------------------------------------------------


class TreeOptions(BaseModel):
    """Options for one hierarchy declaration."""

    model_config = ConfigDict(frozen=True)

    path_separator: str = "#"
    on_delete: DeleteMode = "DELETE"
    num_workers: int = Field(default=5, ge=1)
    id_type: IdType = "objectid"
    batch_size: int = Field(default=100, ge=1)  # stream page size for cascades

    @field_validator("path_separator")
    @classmethod
    def _single_symbol(cls, value: str) -> str:
        if len(value) != 1 or value.isalnum() or value.isspace():
            raise ValueError("path_separator must be a single non-alphanumeric character")
        return value

    @field_validator("on_delete", mode="before")
    @classmethod
    def _upper_mode(cls, value: Any) -> Any:
        return value.strip().upper() if isinstance(value, str) else value


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


class Node(BaseModel):
    """A document taking part in a hierarchy.

    Domain fields are kept as pydantic extras. The private snapshot records
    the ``parent`` and ``path`` last read from or written to the store, which
    is how ``TreeService.save`` tells a fresh node from a re-parented one.
    """

    model_config = ConfigDict(extra="allow", validate_assignment=True)

    id: str | None = None
    parent: str | None = None
    path: str | None = None

    _stored: dict[str, str | None] | None = PrivateAttr(default=None)

    @field_validator("parent", mode="before")
    @classmethod
    def _parent_to_id(cls, value: Any) -> Any:
        if isinstance(value, Node):
            return value.id
        if isinstance(value, dict):
            return value.get("id")
        return value

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Node":
        """Wrap a stored document and remember its persisted tree fields."""
        node = cls.model_validate(document)
        node.mark_persisted()
        return node

    def mark_persisted(self) -> None:
        self._stored = {"parent": self.parent, "path": self.path}

    @property
    def is_new(self) -> bool:
        return self._stored is None

    @property
    def previous_path(self) -> str | None:
        return None if self._stored is None else self._stored["path"]

    def is_modified(self, field: Literal["parent", "path"]) -> bool:
        if self._stored is None:
            return getattr(self, field) is not None
        return self._stored[field] != getattr(self, field)

    def to_document(self) -> dict[str, Any]:
        return self.model_dump()

"""Query option objects for tree reads."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NodeQuery(BaseModel):
    """Options for get_children, get_leaves and get_ancestors.

    ``filters`` are extra selector clauses ANDed with the tree condition.
    ``recursive`` is only read by get_children.
    """

    model_config = ConfigDict(frozen=True)

    filters: dict[str, Any] = Field(default_factory=dict)
    fields: list[str] | None = None
    sort: list[tuple[str, int]] | None = None
    skip: int = Field(default=0, ge=0)
    limit: int | None = Field(default=None, ge=0)
    recursive: bool = False


class TreeQuery(BaseModel):
    """Options for get_children_tree."""

    model_config = ConfigDict(frozen=True)

    filters: dict[str, Any] = Field(default_factory=dict)
    fields: list[str] | None = None
    min_level: int = Field(default=1, ge=1)
    recursive: bool = True
    allow_empty_children: bool = True

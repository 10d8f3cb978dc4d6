"""Runtime configuration: environment settings and hierarchy declarations."""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, ValidationError

from pathtree.errors import InvalidArgumentError
from pathtree.models import TreeOptions

_ENV_PREFIX = "PATHTREE_"


class Settings(BaseModel):
    """Process-wide settings. ``default_options`` fill in whatever a hierarchy leaves out."""

    model_config = ConfigDict(frozen=True)

    db_path: str = "pathtree.db"
    hierarchies_path: str | None = None
    default_options: TreeOptions = TreeOptions()

    @classmethod
    def from_env(cls, env_file: str | Path | None = None) -> "Settings":
        """Read ``PATHTREE_*`` variables, loading a ``.env`` file first.

        Variables already present in the environment win over the file.
        """
        load_dotenv(env_file)

        options: dict[str, Any] = {}
        for key, name in (
            ("path_separator", "SEPARATOR"),
            ("on_delete", "ON_DELETE"),
            ("num_workers", "NUM_WORKERS"),
            ("id_type", "ID_TYPE"),
            ("batch_size", "BATCH_SIZE"),
        ):
            value = os.environ.get(_ENV_PREFIX + name)
            if value:
                options[key] = value

        try:
            return cls(
                db_path=os.environ.get(_ENV_PREFIX + "DB_PATH", "pathtree.db"),
                hierarchies_path=os.environ.get(_ENV_PREFIX + "HIERARCHIES") or None,
                default_options=TreeOptions(**options),
            )
        except ValidationError as exc:
            raise InvalidArgumentError(f"Invalid PATHTREE_* settings: {exc}") from exc


def load_hierarchies(
    path: str | Path, defaults: TreeOptions | None = None,
) -> dict[str, TreeOptions]:
    """Load per-collection tree options from a YAML file.

    Expected shape::

        hierarchies:
          roles:
            path_separator: "#"
            on_delete: REPARENT
          folders:
            path_separator: "/"
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise InvalidArgumentError(f"{path}: expected a mapping at the top level")
    declared = data.get("hierarchies") or {}
    if not isinstance(declared, dict):
        raise InvalidArgumentError(f"{path}: 'hierarchies' must be a mapping")

    base = defaults.model_dump() if defaults is not None else {}
    hierarchies: dict[str, TreeOptions] = {}
    for name, block in declared.items():
        try:
            hierarchies[str(name)] = TreeOptions(**{**base, **(block or {})})
        except (TypeError, ValidationError) as exc:
            raise InvalidArgumentError(f"{path}: invalid options for {name!r}: {exc}") from exc
    return hierarchies

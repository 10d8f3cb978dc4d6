"""Materialized path arithmetic. Pure functions, no I/O."""

from pathtree.errors import InvalidArgumentError


class PathCodec:
    """Builds and inspects ``id#id#id`` paths for one separator."""

    def __init__(self, separator: str = "#") -> None:
        self.separator = separator

    def check_id(self, node_id: str) -> str:
        """Reject identifiers that would break prefix matching."""
        if not node_id:
            raise InvalidArgumentError("node id must be non-empty")
        if self.separator in node_id:
            raise InvalidArgumentError(
                f"node id {node_id!r} contains the path separator {self.separator!r}"
            )
        return node_id

    def root_path(self, node_id: str) -> str:
        return self.check_id(node_id)

    def child_path(self, parent_path: str, node_id: str) -> str:
        return f"{parent_path}{self.separator}{self.check_id(node_id)}"

    def segments(self, path: str | None) -> list[str]:
        return path.split(self.separator) if path else []

    def ancestor_ids(self, path: str | None) -> list[str]:
        """Ids of every ancestor, root first. The node's own id is dropped."""
        return self.segments(path)[:-1]

    def root_id(self, path: str) -> str:
        return self.segments(path)[0]

    def depth(self, path: str | None) -> int:
        return len(self.segments(path))

    def descendant_prefix(self, path: str) -> str:
        return f"{path}{self.separator}"

    def is_descendant(self, candidate_path: str, ancestor_path: str) -> bool:
        return candidate_path.startswith(self.descendant_prefix(ancestor_path))

    def rebase(self, path: str, old_prefix: str, new_prefix: str) -> str:
        """Swap the leading ``old_prefix`` of a descendant path for ``new_prefix``."""
        if not self.is_descendant(path, old_prefix):
            raise InvalidArgumentError(f"{path!r} is not below {old_prefix!r}")
        return new_prefix + path[len(old_prefix):]

    def remove_segment(self, path: str, node_id: str) -> str:
        """Splice one ancestor id out of a path."""
        segments = self.segments(path)
        if node_id in segments[:-1]:
            segments.remove(node_id)
        return self.separator.join(segments)

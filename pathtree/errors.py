"""Exception taxonomy shared by the store, the cascade executor and the tree service."""


class PathTreeError(Exception):
    """Base class for every error raised by pathtree."""


class InvalidArgumentError(PathTreeError, ValueError):
    def __init__(self, message: str) -> None:
        super().__init__(message)


class CyclicParentError(InvalidArgumentError):
    def __init__(self, node_id: str, parent_id: str) -> None:
        self.node_id = node_id
        self.parent_id = parent_id
        super().__init__(
            f"Cannot move node {node_id} under {parent_id}: "
            "the new parent is the node itself or one of its descendants"
        )


class DependencyError(PathTreeError):
    def __init__(self, node_id: str | None, reason: str) -> None:
        self.node_id = node_id
        super().__init__(f"Related document {node_id} unavailable: {reason}")


class NodeNotFoundError(PathTreeError):
    def __init__(self, node_id: str) -> None:
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id}")


class CascadeError(PathTreeError):
    """A per-document rewrite failed; earlier rewrites stay applied."""

    def __init__(self, stage: str, updated: int) -> None:
        self.stage = stage
        self.updated = updated
        super().__init__(
            f"Cascade '{stage}' aborted after {updated} document(s) were rewritten"
        )


class AddChildrenError(PathTreeError):
    """Batch creation failed partway. ``created`` holds what was persisted."""

    def __init__(self, created: list, index: int) -> None:
        self.created = created
        self.index = index
        super().__init__(
            f"add_children failed at item {index} after creating {len(created)} child(ren)"
        )

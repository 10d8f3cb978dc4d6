"""
One-shot repair: recompute the materialized path of every document in a
collection from its parent pointers.

A cascade that fails partway (see CascadeError) leaves some descendants
with stale paths. Parent pointers are always written last and are the
source of truth, so walking them to the root reconstructs the correct path.
Documents whose parent chain is broken (missing parent or a cycle) are
reported and left untouched.

Usage:
    python scripts/rebuild_paths.py [db_path] [collection] [separator]
"""

import sqlite3
import sys
from pathlib import Path


def get_db_path() -> Path:
    """Resolve the default database path relative to the project root."""
    return Path(__file__).resolve().parent.parent / "pathtree.db"


def walk_path_to_root(nodes_by_id: dict, start_id: str) -> list[str] | None:
    """Walk parent chain from start_id to its root, return ids root first.

    Returns None when the chain reaches a missing parent or loops.
    """
    chain: list[str] = []
    seen: set[str] = set()
    current_id: str | None = start_id
    while current_id is not None:
        if current_id in seen:
            return None
        node = nodes_by_id.get(current_id)
        if node is None:
            return None
        seen.add(current_id)
        chain.append(current_id)
        current_id = node["parent"]
    chain.reverse()
    return chain


def rebuild(db_path: Path, collection: str, separator: str = "#") -> int:
    """Fix every stale path in ``collection``. Returns the number of rows updated."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row

    rows = conn.execute(
        "SELECT doc_id, parent, path FROM documents WHERE collection = ?",
        (collection,),
    ).fetchall()

    if not rows:
        print(f"No documents in collection {collection!r}.")
        conn.close()
        return 0

    nodes_by_id = {r["doc_id"]: dict(r) for r in rows}
    print(f"Checking {len(nodes_by_id)} document(s) in {collection!r}.")

    total_updated = 0
    for doc_id, node in nodes_by_id.items():
        chain = walk_path_to_root(nodes_by_id, doc_id)
        if chain is None:
            print(f"  WARNING: broken parent chain at {doc_id}, skipping")
            continue

        expected = separator.join(chain)
        if node["path"] == expected:
            continue

        conn.execute(
            "UPDATE documents SET path = ? WHERE collection = ? AND doc_id = ?",
            (expected, collection, doc_id),
        )
        total_updated += 1
        print(f"  Updated {doc_id}: {node['path']} -> {expected}")

    conn.commit()
    conn.close()
    print(f"\nDone. Updated {total_updated} document(s).")
    return total_updated


if __name__ == "__main__":
    db_path = Path(sys.argv[1]) if len(sys.argv) > 1 else get_db_path()
    collection = sys.argv[2] if len(sys.argv) > 2 else "nodes"
    separator = sys.argv[3] if len(sys.argv) > 3 else "#"
    if not db_path.exists():
        print(f"Database not found at {db_path}")
        sys.exit(1)
    print(f"Database: {db_path}")
    rebuild(db_path, collection, separator)

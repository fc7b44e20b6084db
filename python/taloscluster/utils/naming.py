"""
taloscluster/utils/naming.py

Deterministic node names of the form `<cluster>-<role>-<index>` and the
next free index for a role. Indices start at 1 on every backend.
"""

from typing import Iterable, Optional

from taloscluster.models.nodes import NodeRole

BASE_INDEX = 1


def node_prefix(cluster_name: str, role: NodeRole) -> str:
    """Return the name prefix shared by all nodes of `role`, e.g. "dev-worker-"."""
    return f"{cluster_name}-{role.value}-"


def node_name(cluster_name: str, role: NodeRole, index: int) -> str:
    """Return the name of the node with the given role and index."""
    return f"{node_prefix(cluster_name, role)}{index}"


def parse_index(name: str, prefix: str) -> Optional[int]:
    """Return the numeric suffix of `name` after `prefix`, or None if it has none."""
    if not name.startswith(prefix):
        return None
    suffix = name[len(prefix) :]
    if not (suffix.isascii() and suffix.isdigit()):
        return None
    return int(suffix)


def next_index(existing_names: Iterable[str], prefix: str) -> int:
    """
    Return the index for the next node: one past the highest existing index.

    Names that do not start with `prefix` or lack a numeric suffix are ignored,
    since the name set comes from an externally labelled resource list. Gaps
    left by removed nodes are not reused.

    Args:
        existing_names: Names of the nodes that currently exist.
        prefix: Prefix produced by `node_prefix`.

    Returns:
        int: `max(existing index) + 1`, or BASE_INDEX when nothing matches.
    """
    indices = [
        index
        for index in (parse_index(name, prefix) for name in existing_names)
        if index is not None
    ]
    return max(indices) + 1 if indices else BASE_INDEX

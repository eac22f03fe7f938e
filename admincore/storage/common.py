"""Common storage utilities shared between memory and postgres implementations.

Keeps the menu-tree rules (acyclic parent chain, derived levels) in one place
so both backends enforce them identically.
"""

from __future__ import annotations

from collections import deque
from typing import Callable, Dict, Iterable, Optional

from admincore.storage.errors import MenuCycleError, MenuDepthError


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_parent_chain(
    menu_id: Optional[str],
    parent_id: Optional[str],
    parent_of: Callable[[str], Optional[str]],
    node_count: int,
) -> int:
    """Walk from ``parent_id`` to the root and return the parent's depth.

    Raises ``MenuCycleError`` when the walk reaches ``menu_id`` (the node would
    become its own ancestor) or revisits a node. The walk is bounded by
    ``node_count`` so a corrupted chain cannot loop forever.

    Args:
        menu_id: The node being (re)parented, or None for a new node
        parent_id: Proposed parent, or None for a root
        parent_of: Lookup returning the stored parent id of a node
        node_count: Total number of menu nodes in the store

    Returns:
        Level of ``parent_id`` (0 for a root parent), or -1 when no parent
    """
    if parent_id is None:
        return -1
    if menu_id is not None and parent_id == menu_id:
        raise MenuCycleError(
            "menu cannot be its own parent", {"menu_id": menu_id}
        )
    visited: set[str] = set()
    current: Optional[str] = parent_id
    depth = -1
    while current is not None:
        if current in visited or len(visited) > node_count:
            raise MenuCycleError(
                "menu parent chain contains a cycle", {"menu_id": current}
            )
        if menu_id is not None and current == menu_id:
            raise MenuCycleError(
                "circular menu reference detected",
                {"menu_id": menu_id, "parent_id": parent_id},
            )
        visited.add(current)
        depth += 1
        current = parent_of(current)
    return depth


def subtree_levels(
    root_id: str,
    root_level: int,
    children_of: Callable[[str], Iterable[str]],
) -> Dict[str, int]:
    """Derive ``menu_level`` for ``root_id`` and every descendant."""

    levels: Dict[str, int] = {root_id: root_level}
    queue = deque([root_id])
    while queue:
        node = queue.popleft()
        for child in children_of(node):
            if child in levels:
                continue
            levels[child] = levels[node] + 1
            queue.append(child)
    return levels


def ensure_within_depth(levels: Dict[str, int], max_depth: Optional[int]) -> None:
    if max_depth is None or not levels:
        return
    deepest = max(levels.values())
    if deepest >= max_depth:
        raise MenuDepthError(
            "maximum menu depth exceeded",
            {"max_depth": max_depth, "level": deepest},
        )


def subtree_ids(root_id: str, children_of: Callable[[str], Iterable[str]]) -> list[str]:
    return list(subtree_levels(root_id, 0, children_of).keys())


__all__ = [
    "ensure_within_depth",
    "normalize_email",
    "subtree_ids",
    "subtree_levels",
    "validate_parent_chain",
]

"""Test suite tree flattening.

The backend returns a plan's suites as a tree. The tree is walked once into
a flat arena with an id index; selection and group names are answered from
the index without walking the tree again. Cycles and repeated ids are
tolerated: each suite id is visited once.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SuiteNode:
    """One suite of the arena."""

    id: int
    name: str
    parent_id: int | None


@dataclass(frozen=True, slots=True)
class SelectedSuite:
    suite_id: int
    group_name: str


class SuiteArena:
    """Flat, indexed view of a suite tree."""

    def __init__(self, nodes: Iterable[SuiteNode]) -> None:
        self.nodes: list[SuiteNode] = list(nodes)
        self.index: dict[int, SuiteNode] = {node.id: node for node in self.nodes}

    @classmethod
    def from_tree(cls, roots: Sequence[Mapping[str, Any]]) -> SuiteArena:
        """Flatten a suite tree depth-first, in document order."""
        nodes: list[SuiteNode] = []
        seen: set[int] = set()
        stack: list[tuple[Mapping[str, Any], int | None]] = [(root, None) for root in reversed(roots)]
        while stack:
            raw, parent_id = stack.pop()
            suite_id = int(raw.get("id") or 0)
            if not suite_id or suite_id in seen:
                continue
            seen.add(suite_id)
            parent = raw.get("parentSuite") or {}
            declared_parent = int(parent["id"]) if parent.get("id") else None
            nodes.append(
                SuiteNode(
                    id=suite_id,
                    name=str(raw.get("name") or ""),
                    parent_id=declared_parent if declared_parent is not None else parent_id,
                )
            )
            children = raw.get("children") or []
            stack.extend((child, suite_id) for child in reversed(children))
        return cls(nodes)

    def path(self, suite_id: int) -> list[str]:
        """Suite names from the root down to `suite_id`."""
        names: list[str] = []
        visited: set[int] = set()
        node = self.index.get(suite_id)
        while node is not None and node.id not in visited:
            visited.add(node.id)
            names.append(node.name)
            node = self.index.get(node.parent_id) if node.parent_id is not None else None
        return list(reversed(names))

    def group_name(self, suite_id: int) -> str:
        """Display name `top/leaf`, or `top/.../leaf` when nested deeper.

        The root (plan) suite is left out of the name; a suite directly
        under the root is shown by its own name.
        """
        parts = self.path(suite_id)
        if len(parts) <= 2:
            return parts[-1] if parts else ""
        if len(parts) > 3:
            return f"{parts[1]}/.../{parts[-1]}"
        return f"{parts[1]}/{parts[-1]}"

    def select(self, suite_ids: Sequence[int] | None = None) -> list[SelectedSuite]:
        """Requested suites, or every non-root suite when none are requested."""
        if suite_ids:
            wanted = set(suite_ids)
            chosen = [node for node in self.nodes if node.id in wanted]
            missing = wanted - {node.id for node in chosen}
            if missing:
                logger.warning("Requested suites not found in plan: %s", sorted(missing))
        else:
            chosen = [node for node in self.nodes if node.parent_id is not None]
        return [SelectedSuite(suite_id=node.id, group_name=self.group_name(node.id)) for node in chosen]

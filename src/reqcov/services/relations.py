"""Relation graph resolution for test cases.

Only allow-listed relation types count as "this test case verifies that
requirement"; generic related links are used for bug linking and are never
read as requirement coverage. Target work-item types are resolved with one
batch fetch per unique id set, however many test cases point at the same
target.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence

from reqcov.core.models import (
    LinkedRequirementEntry,
    Relation,
    RequirementWorkItem,
    WorkItem,
)
from reqcov.services.extractor import base_key_of
from reqcov.services.families import extract_requirement_id

logger = logging.getLogger(__name__)

WORK_ITEM_TYPE_REQUIREMENT = "Requirement"
WORK_ITEM_TYPE_BUG = "Bug"

FetchWorkItems = Callable[[Sequence[int]], Awaitable[list[WorkItem]]]


class RelationGraphResolver:
    """Classifies test-case relation edges into linked requirements and bugs.

    Args:
        fetch_work_items: Batch fetch of work items by id (fields only).
        requirements: Known L2 requirements; targets found here are mapped to
            their requirement code without inspecting the target's fields.
        requirement_relation_types: Relation types meaning formal coverage.
        bug_relation_types: Relation types that may link a bug.
        terminal_states: Bug states that drop the bug link (lowercase).
    """

    def __init__(
        self,
        fetch_work_items: FetchWorkItems,
        *,
        requirements: Iterable[RequirementWorkItem] = (),
        requirement_relation_types: Iterable[str],
        bug_relation_types: Iterable[str] = (),
        terminal_states: Iterable[str] = (),
    ) -> None:
        self._fetch_work_items = fetch_work_items
        self._requirements = {item.work_item_id: item for item in requirements}
        self._requirement_rels = set(requirement_relation_types)
        self._bug_rels = set(bug_relation_types)
        self._terminal_states = {state.lower() for state in terminal_states}

    def _accepts(self, relation: Relation) -> bool:
        return relation.rel in self._requirement_rels or relation.rel in self._bug_rels

    async def resolve_links(
        self,
        test_case_ids: Iterable[int],
        relation_edges: Mapping[int, Sequence[Relation]],
    ) -> dict[int, LinkedRequirementEntry]:
        """Build the linked-requirement entry of every test case.

        Args:
            test_case_ids: Test cases to resolve; each gets an entry, possibly empty.
            relation_edges: Outgoing relations per test case id.

        Returns:
            Linked entries keyed by test case id.
        """
        ordered_ids = list(dict.fromkeys(test_case_ids))
        accepted: dict[int, list[tuple[str, int]]] = {}
        target_ids: set[int] = set()
        for test_case_id in ordered_ids:
            edges = []
            for relation in relation_edges.get(test_case_id, ()):
                target = relation.target_id
                if target is None or not self._accepts(relation):
                    continue
                edges.append((relation.rel, target))
                target_ids.add(target)
            accepted[test_case_id] = edges

        targets = await self._resolve_targets(target_ids)

        linked: dict[int, LinkedRequirementEntry] = {}
        for test_case_id in ordered_ids:
            entry = LinkedRequirementEntry()
            for rel, target_id in accepted[test_case_id]:
                work_item = targets.get(target_id)
                work_item_type = work_item.work_item_type if work_item else ""
                if rel in self._requirement_rels and self._is_requirement(target_id, work_item_type):
                    code = self._requirement_code(target_id, work_item)
                    if code:
                        entry.full_codes.add(code)
                        entry.base_keys.add(base_key_of(code))
                elif rel in self._bug_rels and work_item_type == WORK_ITEM_TYPE_BUG:
                    if work_item is not None and work_item.state.lower() in self._terminal_states:
                        continue
                    entry.bug_ids.add(target_id)
            linked[test_case_id] = entry

        logger.debug(
            "Resolved relations for %d test cases (%d unique targets)",
            len(linked),
            len(target_ids),
        )
        return linked

    def _is_requirement(self, target_id: int, work_item_type: str) -> bool:
        return target_id in self._requirements or work_item_type == WORK_ITEM_TYPE_REQUIREMENT

    def _requirement_code(self, target_id: int, work_item: WorkItem | None) -> str:
        known = self._requirements.get(target_id)
        if known is not None:
            return known.requirement_id
        if work_item is None:
            return ""
        return extract_requirement_id(work_item.fields)

    async def _resolve_targets(self, target_ids: set[int]) -> dict[int, WorkItem]:
        if not target_ids:
            return {}
        work_items = await self._fetch_work_items(sorted(target_ids))
        return {item.id: item for item in work_items}

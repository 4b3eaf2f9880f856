"""Coverage matrix builder.

One coverage row set per L2 requirement. A requirement's test cases are the
ones formally linked to it plus the ones whose expected results mention it.
Bug links and L3/L4 links are joined to the requirement by positional zip:
row *i* carries bug *i* and L3/L4 pair *i*, never their cross product.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from itertools import zip_longest
from typing import Any, TypeVar

from reqcov.core.models import (
    RESPONSIBILITY_ELISRA,
    RESPONSIBILITY_IL,
    RESPONSIBILITY_UNKNOWN,
    AlignedStep,
    BugLink,
    CoverageCell,
    L3L4Pair,
    LinkedRequirementEntry,
    RequirementWorkItem,
)
from reqcov.services.extractor import base_key_of, code_sort_key, extract_codes

logger = logging.getLogger(__name__)

COVERAGE_COLUMNS = [
    "L2 REQ ID",
    "L2 REQ Title",
    "L2 SubSystem",
    "L2 Run Status",
    "Bug ID",
    "Bug Title",
    "Bug Responsibility",
    "L3 REQ ID",
    "L3 REQ Title",
    "L4 REQ ID",
    "L4 REQ Title",
]

VALIDATION_COLUMNS = [
    "Test Case ID",
    "Test Case Title",
    "Mentioned but Not Linked",
    "Linked but Not Mentioned",
    "Validation Status",
]

L = TypeVar("L")
R = TypeVar("R")


def zip_padded(left: Sequence[L], right: Sequence[R], left_fill: L, right_fill: R) -> list[tuple[L, R]]:
    """Pair two lists by position, padding the shorter one.

    Always returns at least one pair: two empty lists give
    `[(left_fill, right_fill)]`.
    """
    if not left and not right:
        return [(left_fill, right_fill)]
    pairs = zip_longest(left, right, fillvalue=None)
    return [
        (a if a is not None else left_fill, b if b is not None else right_fill)
        for a, b in pairs
    ]


def prune_standalone_l3(pairs: Iterable[L3L4Pair]) -> list[L3L4Pair]:
    """Drop `(L3, no L4)` pairs whose L3 id also appears paired with an L4."""
    pairs = list(pairs)
    paired_l3 = {pair.l3_id for pair in pairs if pair.l3_id and pair.l4_id}
    result: list[L3L4Pair] = []
    for pair in pairs:
        if pair.is_standalone_l3 and pair.l3_id in paired_l3:
            continue
        if pair not in result:
            result.append(pair)
    return result


def display_bug_responsibility(
    bug: BugLink,
    requirement_responsibility: str,
    test_case_responsibility: str,
) -> str:
    """Bug owner with requirement and test-case fallbacks; `IL` is shown as `Elisra`."""
    for candidate in (bug.responsibility, requirement_responsibility, test_case_responsibility):
        value = (candidate or "").strip()
        if value and value != RESPONSIBILITY_UNKNOWN:
            return RESPONSIBILITY_ELISRA if value.upper() == RESPONSIBILITY_IL else value
    return RESPONSIBILITY_UNKNOWN


@dataclass(frozen=True, slots=True)
class _StepMention:
    codes: frozenset[str]
    outcome: str


class CoverageMatrixBuilder:
    """Aggregates step outcomes per requirement and emits report rows.

    Args:
        requirements: L2 requirement records.
        linked_entries: Formally linked requirements per test case.
        aligned_steps_by_test_case: Aligned steps per test case.
        bugs_by_test_case: Bug links per test case.
        l3l4_by_base_key: L3/L4 pairs per requirement base key.
        test_case_responsibility: Owner per test case, for the bug fallback.
    """

    def __init__(
        self,
        requirements: Iterable[RequirementWorkItem],
        linked_entries: Mapping[int, LinkedRequirementEntry],
        aligned_steps_by_test_case: Mapping[int, Sequence[AlignedStep]],
        bugs_by_test_case: Mapping[int, Sequence[BugLink]] | None = None,
        l3l4_by_base_key: Mapping[str, Sequence[L3L4Pair]] | None = None,
        test_case_responsibility: Mapping[int, str] | None = None,
    ) -> None:
        self._requirements = list(requirements)
        self._linked = linked_entries
        self._bugs = bugs_by_test_case or {}
        self._l3l4 = l3l4_by_base_key or {}
        self._test_case_responsibility = test_case_responsibility or {}
        self._mentions = {
            test_case_id: [
                _StepMention(codes=frozenset(extract_codes(step.expected)), outcome=step.outcome)
                for step in steps
            ]
            for test_case_id, steps in aligned_steps_by_test_case.items()
        }

    def _matches(self, requirement: RequirementWorkItem, codes: frozenset[str]) -> bool:
        if requirement.requirement_id in codes:
            return True
        if requirement.is_base:
            return any(base_key_of(code) == requirement.base_key for code in codes)
        return requirement.base_key in codes

    def observed_test_cases(self, requirement: RequirementWorkItem) -> list[int]:
        """Test cases linked to, or mentioning, a requirement, sorted by id."""
        observed = set(requirement.linked_test_case_ids)
        for test_case_id, entry in self._linked.items():
            if requirement.requirement_id in entry.full_codes:
                observed.add(test_case_id)
        for test_case_id, mentions in self._mentions.items():
            if any(self._matches(requirement, mention.codes) for mention in mentions):
                observed.add(test_case_id)
        return sorted(observed)

    def cell_for(self, requirement: RequirementWorkItem, test_case_id: int) -> CoverageCell:
        """Step outcome counts of one test case for one requirement.

        Steps that mention the requirement are counted. A test case linked to
        the requirement without mentioning it anywhere has all its steps counted.
        """
        cell = CoverageCell()
        mentions = self._mentions.get(test_case_id, [])
        matching = [m for m in mentions if self._matches(requirement, m.codes)]
        for mention in matching or mentions:
            cell.add(mention.outcome)
        return cell

    def _bugs_for(
        self, requirement: RequirementWorkItem, test_case_ids: Sequence[int]
    ) -> list[tuple[BugLink, int]]:
        seen: set[int] = set()
        bugs = []
        for test_case_id in test_case_ids:
            for bug in self._bugs.get(test_case_id, ()):
                if bug.requirement_base_key != requirement.base_key or bug.bug_id in seen:
                    continue
                seen.add(bug.bug_id)
                bugs.append((bug, test_case_id))
        return sorted(bugs, key=lambda item: item[0].bug_id)

    def rows_for(self, requirement: RequirementWorkItem) -> list[dict[str, Any]]:
        test_case_ids = self.observed_test_cases(requirement)
        total = CoverageCell()
        for test_case_id in test_case_ids:
            total.merge(self.cell_for(requirement, test_case_id))

        bug_cells = [
            {
                "Bug ID": bug.bug_id,
                "Bug Title": bug.title,
                "Bug Responsibility": display_bug_responsibility(
                    bug,
                    requirement.responsibility,
                    self._test_case_responsibility.get(test_case_id, ""),
                ),
            }
            for bug, test_case_id in self._bugs_for(requirement, test_case_ids)
        ]
        l3l4 = prune_standalone_l3(self._l3l4.get(requirement.base_key, ()))

        empty_bug = {"Bug ID": "", "Bug Title": "", "Bug Responsibility": ""}
        rows = []
        for bug_cell, pair in zip_padded(bug_cells, l3l4, empty_bug, L3L4Pair()):
            rows.append(
                {
                    "L2 REQ ID": str(requirement.work_item_id),
                    "L2 REQ Title": requirement.title,
                    "L2 SubSystem": requirement.sub_system,
                    "L2 Run Status": total.run_status,
                    **bug_cell,
                    "L3 REQ ID": pair.l3_id,
                    "L3 REQ Title": pair.l3_title,
                    "L4 REQ ID": pair.l4_id,
                    "L4 REQ Title": pair.l4_title,
                }
            )
        return rows

    def build(self) -> list[dict[str, Any]]:
        """Coverage rows for every requirement, ordered by requirement code."""
        ordered = sorted(
            {item.work_item_id: item for item in self._requirements}.values(),
            key=lambda item: (code_sort_key(item.requirement_id), item.work_item_id),
        )
        rows = []
        for requirement in ordered:
            rows.extend(self.rows_for(requirement))
        logger.debug("Built %d coverage rows for %d requirements", len(rows), len(ordered))
        return rows


def build_coverage_rows(
    requirements: Iterable[RequirementWorkItem],
    linked_entries: Mapping[int, LinkedRequirementEntry],
    aligned_steps_by_test_case: Mapping[int, Sequence[AlignedStep]],
    bugs_by_test_case: Mapping[int, Sequence[BugLink]] | None = None,
    l3l4_by_base_key: Mapping[str, Sequence[L3L4Pair]] | None = None,
    test_case_responsibility: Mapping[int, str] | None = None,
) -> list[dict[str, Any]]:
    """Build coverage rows; see `CoverageMatrixBuilder`."""
    return CoverageMatrixBuilder(
        requirements,
        linked_entries,
        aligned_steps_by_test_case,
        bugs_by_test_case,
        l3l4_by_base_key,
        test_case_responsibility,
    ).build()

"""Bidirectional validation of mentioned versus linked requirements.

Direction A lists codes a step's expected result mentions without a formal
link; Direction B lists formally linked requirements no expected result
mentions. Both are family-aware:

- a base-key mention is satisfied by a link to the base record; for a
  family with children, a link to any of its children also satisfies it
- a child mention is satisfied only by that exact child
- a linked code is covered by its own mention or by a mention of its bare
  base key
- a family with several uncovered links and no mention at all is reported
  once, by its base key
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from reqcov.core.models import AlignedStep, LinkedRequirementEntry
from reqcov.services.extractor import base_key_of, extract_codes, is_child_code, sort_codes
from reqcov.services.families import FamilyIndex

logger = logging.getLogger(__name__)

VALIDATION_PASS = "Pass"
VALIDATION_FAIL = "Fail"


@dataclass(frozen=True)
class ValidationResult:
    """Discrepancies found for one test case."""

    mentioned_not_linked: list[str] = field(default_factory=list)
    linked_not_mentioned: list[str] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.mentioned_not_linked or self.linked_not_mentioned:
            return VALIDATION_FAIL
        return VALIDATION_PASS

    @property
    def mentioned_not_linked_text(self) -> str:
        return "\n".join(self.mentioned_not_linked)

    @property
    def linked_not_mentioned_text(self) -> str:
        return "; ".join(self.linked_not_mentioned)


def _mention_satisfied(code: str, linked: LinkedRequirementEntry, families: FamilyIndex) -> bool:
    if code in linked.full_codes:
        return True
    if is_child_code(code):
        return False
    family = families.family_of(code)
    if family is not None and family.has_children:
        return any(
            is_child_code(linked_code) and base_key_of(linked_code) == code
            for linked_code in linked.full_codes
        )
    return code in linked.base_keys


def _mentioned_not_linked(
    steps: Sequence[AlignedStep],
    linked: LinkedRequirementEntry,
    families: FamilyIndex,
) -> list[str]:
    reported: set[str] = set()
    lines = []
    for step in steps:
        step_codes = set()
        for code in extract_codes(step.expected):
            if code in reported or not families.knows(code):
                continue
            if not _mention_satisfied(code, linked, families):
                step_codes.add(code)
        if step_codes:
            reported.update(step_codes)
            lines.append(f"Step {step.step_position}: {'; '.join(sort_codes(step_codes))}")
    return lines


def _linked_not_mentioned(mentions: set[str], linked: LinkedRequirementEntry) -> list[str]:
    mentioned_bases = {base_key_of(code) for code in mentions}
    missing_by_base: dict[str, list[str]] = {}
    for code in linked.full_codes:
        base = base_key_of(code)
        if code in mentions or base in mentions:
            continue
        if not is_child_code(code) and base in mentioned_bases:
            continue
        missing_by_base.setdefault(base, []).append(code)

    reported = []
    for base, codes in missing_by_base.items():
        if len(codes) >= 2 and base not in mentioned_bases:
            reported.append(base)
        else:
            reported.extend(codes)
    return sort_codes(reported)


def validate_test_case(
    test_case_id: int,
    aligned_steps: Sequence[AlignedStep],
    linked_entry: LinkedRequirementEntry | None,
    families: FamilyIndex,
) -> ValidationResult:
    """Compare the codes a test case's steps mention against its formal links.

    Only expected-result text is read; action text is informational. Mentions
    of codes outside the indexed requirement families are ignored for
    Direction A.

    Args:
        test_case_id: Test case being validated (used for logging).
        aligned_steps: Ordered steps of the test case.
        linked_entry: Formally linked requirements of the test case.
        families: Requirement family index.

    Returns:
        Direction A lines (`"Step <position>: <codes>"`) and Direction B codes.
    """
    linked = linked_entry or LinkedRequirementEntry()
    mentions: set[str] = set()
    for step in aligned_steps:
        mentions.update(extract_codes(step.expected))

    result = ValidationResult(
        mentioned_not_linked=_mentioned_not_linked(aligned_steps, linked, families),
        linked_not_mentioned=_linked_not_mentioned(mentions, linked),
    )
    if result.status == VALIDATION_FAIL:
        logger.debug(
            "Test case %d: %d step(s) with unlinked mentions, %d unmentioned link(s)",
            test_case_id,
            len(result.mentioned_not_linked),
            len(result.linked_not_mentioned),
        )
    return result

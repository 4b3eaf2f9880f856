"""Test-step parsing and step/iteration alignment.

Static steps come from the test case's steps XML:

    <steps id="0" last="4">
      <step id="2" type="ActionStep">
        <parameterizedString isformatted="true">action</parameterizedString>
        <parameterizedString isformatted="true">expected</parameterizedString>
      </step>
      <compref id="3" ref="4711">
        <step id="4" type="ValidateStep">...</step>
      </compref>
    </steps>

A `compref` expands the referenced shared-step work item in place: a title
row at the compref's position, then the shared steps at `<position>.1`,
`<position>.2`, ... with ids `<compref id>;<shared step id>`. Steps nested
inside a compref element continue the outer numbering after it.

Dynamic outcomes come from the last iteration of the latest run and are
aligned onto the static steps by step identifier.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from functools import cmp_to_key
from xml.etree.ElementTree import Element

import defusedxml.ElementTree as DefusedET
from defusedxml.common import DefusedXmlException

from reqcov.core.models import (
    OUTCOME_UNSPECIFIED,
    STATUS_NOT_RUN,
    ActionResult,
    AlignedStep,
    SharedStepDefinition,
    StepDefinition,
)

logger = logging.getLogger(__name__)

_RUN_STATUS = {
    "passed": "Passed",
    "failed": "Failed",
    "notapplicable": "Not Applicable",
}


def convert_run_status(status: str | None) -> str:
    """Map a backend outcome to its report label; unknown outcomes are Not Run."""
    return _RUN_STATUS.get((status or "").strip().lower(), STATUS_NOT_RUN)


def compare_step_positions(left: str, right: str) -> int:
    """Compare dotted step positions numerically, component by component.

    Returns:
        -1, 0 or 1. A position that is a strict prefix of the other sorts first,
        so "1.1" < "1.1.1" and "1.2" < "1.10".
    """
    left_parts = _position_parts(left)
    right_parts = _position_parts(right)
    for a, b in zip(left_parts, right_parts):
        if a != b:
            return -1 if a < b else 1
    if len(left_parts) == len(right_parts):
        return 0
    return -1 if len(left_parts) < len(right_parts) else 1


def _position_parts(position: str) -> list[int]:
    parts = []
    for part in str(position).split("."):
        part = part.strip()
        parts.append(int(part) if part.isdigit() else 0)
    return parts


def _element_text(element: Element) -> str:
    return "".join(element.itertext()).strip()


def _step_texts(step: Element) -> tuple[str, str]:
    strings = [child for child in step if child.tag == "parameterizedString"]
    action = _element_text(strings[0]) if len(strings) > 0 else ""
    expected = _element_text(strings[1]) if len(strings) > 1 else ""
    return action, expected


def _parse_root(steps_xml: str) -> Element | None:
    if not steps_xml or not steps_xml.strip():
        return None
    try:
        root = DefusedET.fromstring(steps_xml)
    except (DefusedET.ParseError, DefusedXmlException) as e:
        logger.warning("Failed to parse test steps XML: %s", e)
        return None
    if root.tag != "steps":
        logger.warning("Unexpected steps XML root element: %s", root.tag)
        return None
    return root


def collect_shared_step_refs(steps_xml: str) -> set[int]:
    """Return the shared-step work-item ids referenced by `compref` elements."""
    root = _parse_root(steps_xml)
    if root is None:
        return set()
    refs = set()
    for compref in root.iter("compref"):
        ref = (compref.get("ref") or "").strip()
        if ref.isdigit():
            refs.add(int(ref))
    return refs


class StepsParser:
    """Parses steps XML, expanding shared steps from pre-fetched definitions.

    Args:
        shared_steps: Shared-step definitions keyed by work-item id. Definitions
            are expected at the revision the run used, when one is known.
    """

    def __init__(self, shared_steps: Mapping[int, SharedStepDefinition] | None = None) -> None:
        self._shared_steps = dict(shared_steps or {})

    def parse(self, steps_xml: str) -> list[StepDefinition]:
        """Parse a steps XML blob into ordered step definitions.

        Unparsable XML yields an empty list.
        """
        root = _parse_root(steps_xml)
        if root is None:
            return []
        return self._walk(root, prefix="", parent_id="", visiting=frozenset())

    def _walk(
        self,
        container: Element,
        *,
        prefix: str,
        parent_id: str,
        visiting: frozenset[int],
    ) -> list[StepDefinition]:
        steps: list[StepDefinition] = []
        counter = 0
        for node in _flatten_comprefs(container):
            if node.tag not in ("step", "compref"):
                continue
            counter += 1
            position = f"{prefix}{counter}"
            node_id = (node.get("id") or "").strip()
            step_id = f"{parent_id};{node_id}" if parent_id else node_id
            if node.tag == "step":
                action, expected = _step_texts(node)
                steps.append(
                    StepDefinition(
                        step_id=step_id,
                        step_position=position,
                        action=action,
                        expected=expected,
                    )
                )
            else:
                steps.extend(self._expand_shared(node, position, step_id, visiting))
        return steps

    def _expand_shared(
        self,
        compref: Element,
        position: str,
        step_id: str,
        visiting: frozenset[int],
    ) -> list[StepDefinition]:
        ref = (compref.get("ref") or "").strip()
        if not ref.isdigit():
            logger.warning("Shared step reference without a work-item id at step %s", step_id)
            return []
        shared_id = int(ref)
        if shared_id in visiting:
            logger.warning("Shared step %d references itself; skipping", shared_id)
            return []
        definition = self._shared_steps.get(shared_id)
        if definition is None:
            logger.warning("Unknown shared step %d referenced at step %s", shared_id, step_id)
            return []

        root = _parse_root(definition.steps_xml)
        children = (
            self._walk(
                root,
                prefix=f"{position}.",
                parent_id=step_id,
                visiting=visiting | {shared_id},
            )
            if root is not None
            else []
        )
        title = StepDefinition(
            step_id=step_id,
            step_position=position,
            action=f"<b>{definition.title}</b>",
            expected="",
            is_shared_step_title=True,
        )
        return [title, *children]


def _flatten_comprefs(container: Element) -> Iterable[Element]:
    # Steps nested inside a compref element follow it at the same level.
    for node in container:
        yield node
        if node.tag == "compref":
            yield from _flatten_comprefs(node)


def normalize_outcome(outcome: str | None, *, is_shared_step_title: bool) -> str:
    """Normalize a recorded outcome for reporting.

    An unspecified outcome on a shared-step title row is blank (not counted);
    any other unspecified or missing outcome is Not Run.
    """
    value = (outcome or "").strip()
    if not value or value == OUTCOME_UNSPECIFIED:
        return "" if is_shared_step_title else STATUS_NOT_RUN
    return value


def _static_fallback(static_steps: Sequence[StepDefinition]) -> list[AlignedStep]:
    return [
        AlignedStep(
            step_id=step.step_id,
            step_position=step.step_position,
            action=step.action,
            expected=step.expected,
            is_shared_step_title=step.is_shared_step_title,
            outcome=normalize_outcome(
                OUTCOME_UNSPECIFIED, is_shared_step_title=step.is_shared_step_title
            ),
        )
        for step in static_steps
    ]


def align_steps(
    static_steps: Sequence[StepDefinition],
    action_results: Sequence[ActionResult] | None,
) -> list[AlignedStep]:
    """Merge static step definitions with recorded run outcomes.

    Recorded results take precedence: their text (when present) and outcome
    are used, and positions missing from a result are resolved through the
    static step with the same identifier. Static steps the run did not record
    are kept as unspecified. When there are no results, or none carries an
    outcome, every static step is emitted as unspecified.

    Steps without a resolvable position are dropped; the result is sorted by
    dotted step position.

    Args:
        static_steps: Parsed step definitions.
        action_results: Results of the last iteration, or None when the test
            case has no run.

    Returns:
        Ordered aligned steps.
    """
    results = list(action_results or [])
    if not results or not any(result.outcome for result in results):
        aligned = _static_fallback(static_steps)
    else:
        static_by_id = {step.step_id: step for step in static_steps}
        by_id: dict[str, AlignedStep] = {}
        for result in results:
            static = static_by_id.get(result.step_identifier)
            position = result.step_position or (static.step_position if static else "")
            if not position:
                continue
            is_title = static.is_shared_step_title if static else False
            action = result.action
            expected = result.expected
            if action is None:
                action = static.action if static else ""
            if expected is None:
                expected = static.expected if static else ""
            by_id.setdefault(
                result.step_identifier or position,
                AlignedStep(
                    step_id=result.step_identifier,
                    step_position=position,
                    action=action,
                    expected=expected,
                    is_shared_step_title=is_title,
                    outcome=normalize_outcome(result.outcome, is_shared_step_title=is_title),
                ),
            )
        for step in _static_fallback(static_steps):
            by_id.setdefault(step.step_id, step)
        aligned = list(by_id.values())

    aligned = [step for step in aligned if step.step_position]
    return sorted(
        aligned,
        key=cmp_to_key(
            lambda a, b: compare_step_positions(a.step_position, b.step_position)
            or (a.step_id > b.step_id) - (a.step_id < b.step_id)
        ),
    )


def shared_step_revisions(action_results: Iterable[ActionResult]) -> dict[int, int]:
    """Shared-step revisions used by a run, keyed by shared-step work-item id."""
    revisions: dict[int, int] = {}
    for result in action_results:
        if result.shared_step_id and result.shared_step_revision:
            revisions.setdefault(result.shared_step_id, result.shared_step_revision)
    return revisions

"""Typed entities shared by the reconciliation services.

Raw backend payloads arrive in several shapes (a `fields` mapping, a
`workItemFields` list of single-entry dicts or key/value records, keys in
varying case). They are normalized once, here, into `WorkItemFields` and
`WorkItem`; nothing downstream inspects the raw payload shape.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any

OUTCOME_UNSPECIFIED = "Unspecified"
STATUS_PASSED = "Passed"
STATUS_FAILED = "Failed"
STATUS_NOT_RUN = "Not Run"

RUN_STATUS_PASS = "Pass"
RUN_STATUS_FAIL = "Fail"
RUN_STATUS_NOT_RUN = "Not Run"

RESPONSIBILITY_ESUK = "ESUK"
RESPONSIBILITY_IL = "IL"
RESPONSIBILITY_ELISRA = "Elisra"
RESPONSIBILITY_UNKNOWN = "Unknown"

STEPS_FIELD = "Microsoft.VSTS.TCM.Steps"

_WORK_ITEM_URL_ID = re.compile(r"/(\d+)/?$")
_ENTRY_NAME_KEYS = ("key", "referenceName", "name")


class WorkItemFields(Mapping[str, Any]):
    """Read-only work-item field map with case-insensitive key access."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = {}
        self._names: dict[str, str] = {}
        for name, value in (values or {}).items():
            self._set(name, value)

    def _set(self, name: str, value: Any) -> None:
        key = str(name).strip().lower()
        if key not in self._values or self._values[key] in (None, ""):
            self._values[key] = value
            self._names[key] = str(name)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> WorkItemFields:
        """Build a field map from any of the backend's work-item shapes."""
        fields = cls()
        if not payload:
            return fields
        raw_fields = payload.get("fields")
        if isinstance(raw_fields, Mapping):
            for name, value in raw_fields.items():
                fields._set(name, value)
        raw_list = payload.get("workItemFields")
        if isinstance(raw_list, list):
            for entry in raw_list:
                if not isinstance(entry, Mapping):
                    continue
                if "value" in entry and any(k in entry for k in _ENTRY_NAME_KEYS):
                    for name_key in _ENTRY_NAME_KEYS:
                        if entry.get(name_key):
                            fields._set(str(entry[name_key]), entry["value"])
                else:
                    for name, value in entry.items():
                        fields._set(name, value)
        return fields

    def __getitem__(self, name: str) -> Any:
        return self._values[name.strip().lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._names.values())

    def __len__(self) -> int:
        return len(self._values)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.strip().lower() in self._values

    def text(self, *names: str) -> str:
        """Return the first non-empty value among `names`, as stripped text."""
        for name in names:
            value = self._values.get(name.strip().lower())
            if value is None:
                continue
            if isinstance(value, Mapping):
                # identity fields come back as {"displayName": ...}
                value = value.get("displayName") or value.get("name") or ""
            text = str(value).strip()
            if text:
                return text
        return ""

    def __repr__(self) -> str:
        return f"WorkItemFields({dict(zip(self._names.values(), self._values.values()))!r})"


@dataclass(frozen=True, slots=True)
class Relation:
    """One outgoing relation edge of a work item."""

    rel: str
    url: str

    @property
    def target_id(self) -> int | None:
        """Numeric id of the target work item, taken from the URL tail."""
        match = _WORK_ITEM_URL_ID.search(self.url or "")
        return int(match.group(1)) if match else None


@dataclass(frozen=True)
class WorkItem:
    """A normalized backend work item."""

    id: int
    fields: WorkItemFields
    relations: tuple[Relation, ...] = ()
    revision: int | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> WorkItem:
        relations = tuple(
            Relation(rel=str(item.get("rel") or ""), url=str(item.get("url") or ""))
            for item in (payload.get("relations") or [])
            if isinstance(item, Mapping)
        )
        rev = payload.get("rev")
        return cls(
            id=int(payload["id"]),
            fields=WorkItemFields.from_payload(payload),
            relations=relations,
            revision=int(rev) if rev is not None else None,
        )

    @property
    def work_item_type(self) -> str:
        return self.fields.text("System.WorkItemType")

    @property
    def title(self) -> str:
        return self.fields.text("System.Title")

    @property
    def state(self) -> str:
        return self.fields.text("System.State")


@dataclass(frozen=True, slots=True)
class RequirementWorkItem:
    """An L2 requirement, keyed by its full code and its family base key."""

    work_item_id: int
    requirement_id: str
    base_key: str
    title: str = ""
    sub_system: str = ""
    responsibility: str = RESPONSIBILITY_UNKNOWN
    linked_test_case_ids: tuple[int, ...] = ()
    area_path: str = ""

    @property
    def is_base(self) -> bool:
        return self.requirement_id == self.base_key


@dataclass
class LinkedRequirementEntry:
    """The formally linked side of one test case."""

    base_keys: set[str] = field(default_factory=set)
    full_codes: set[str] = field(default_factory=set)
    bug_ids: set[int] = field(default_factory=set)


@dataclass(frozen=True, slots=True)
class StepDefinition:
    """A statically defined test step, as parsed from the steps XML."""

    step_id: str
    step_position: str
    action: str = ""
    expected: str = ""
    is_shared_step_title: bool = False


@dataclass(frozen=True, slots=True)
class SharedStepDefinition:
    """Title and steps XML of a shared-step work item at one revision."""

    title: str
    steps_xml: str


@dataclass(frozen=True, slots=True)
class ActionResult:
    """One recorded step outcome from a run iteration."""

    step_identifier: str
    outcome: str | None = None
    step_position: str | None = None
    action: str | None = None
    expected: str | None = None
    shared_step_id: int | None = None
    shared_step_revision: int | None = None
    error_message: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ActionResult:
        shared = payload.get("sharedStepModel") or {}
        shared_id = shared.get("id") if isinstance(shared, Mapping) else None
        shared_rev = shared.get("revision") if isinstance(shared, Mapping) else None
        position = payload.get("stepPosition")
        return cls(
            step_identifier=str(payload.get("stepIdentifier") or ""),
            outcome=payload.get("outcome") or None,
            step_position=str(position) if position not in (None, "") else None,
            action=payload.get("action"),
            expected=payload.get("expected"),
            shared_step_id=int(shared_id) if shared_id else None,
            shared_step_revision=int(shared_rev) if shared_rev else None,
            error_message=str(payload.get("errorMessage") or ""),
        )


@dataclass(frozen=True, slots=True)
class AlignedStep:
    """One logical test step with its definition text and its outcome."""

    step_id: str
    step_position: str
    action: str
    expected: str
    is_shared_step_title: bool
    outcome: str


@dataclass
class CoverageCell:
    """Step outcome counts for one (code, test case) pair."""

    passed: int = 0
    failed: int = 0
    not_run: int = 0

    def add(self, outcome: str) -> None:
        """Count one normalized step outcome; empty outcomes are not counted."""
        if not outcome:
            return
        if outcome == STATUS_PASSED:
            self.passed += 1
        elif outcome == STATUS_FAILED:
            self.failed += 1
        else:
            self.not_run += 1

    def merge(self, other: CoverageCell) -> None:
        self.passed += other.passed
        self.failed += other.failed
        self.not_run += other.not_run

    @property
    def run_status(self) -> str:
        if self.failed:
            return RUN_STATUS_FAIL
        if self.passed:
            return RUN_STATUS_PASS
        return RUN_STATUS_NOT_RUN


@dataclass(frozen=True, slots=True)
class BugLink:
    """A bug attached to a test case for one requirement family."""

    bug_id: int
    title: str = ""
    responsibility: str = RESPONSIBILITY_UNKNOWN
    requirement_base_key: str = ""
    state: str = ""


@dataclass(frozen=True, slots=True)
class L3L4Pair:
    """An L3/L4 sub-requirement link beneath an L2 base key."""

    l3_id: str = ""
    l3_title: str = ""
    l4_id: str = ""
    l4_title: str = ""

    @property
    def is_standalone_l3(self) -> bool:
        return bool(self.l3_id) and not self.l4_id


@dataclass(frozen=True, slots=True)
class TestPoint:
    """A test point of a suite with its latest run reference."""

    __test__ = False

    test_case_id: int
    test_case_name: str = ""
    last_run_id: int | None = None
    last_result_id: int | None = None
    outcome: str = ""

    @property
    def has_run(self) -> bool:
        return bool(self.last_run_id) and bool(self.last_result_id)


@dataclass(frozen=True)
class TestCaseDefinition:
    """A test case as listed by its suite."""

    __test__ = False

    id: int
    title: str = ""
    steps_xml: str = ""
    fields: WorkItemFields = field(default_factory=WorkItemFields)


@dataclass
class SuiteTestData:
    """Points and test cases of one selected suite."""

    suite_id: int
    group_name: str = ""
    points: list[TestPoint] = field(default_factory=list)
    test_cases: dict[int, TestCaseDefinition] = field(default_factory=dict)


@dataclass
class CoverageFlatPayload:
    """Coverage report rows in render order."""

    sheet_name: str
    column_order: list[str]
    rows: list[dict[str, Any]]


@dataclass
class InternalValidationFlatPayload:
    """Bidirectional validation rows, one per test case."""

    sheet_name: str
    column_order: list[str]
    rows: list[dict[str, Any]]


def unique_ints(values: Iterable[Any]) -> list[int]:
    """Positive integer ids from `values`, deduplicated, first occurrence order."""
    seen: dict[int, None] = {}
    for value in values:
        try:
            number = int(value)
        except (TypeError, ValueError):
            continue
        if number > 0:
            seen.setdefault(number, None)
    return list(seen)

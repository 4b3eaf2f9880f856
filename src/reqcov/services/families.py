"""Requirement families and responsibility resolution.

A family is every L2 requirement sharing a base key: the base record
(`SR0054`, at most one) and its numbered children (`SR0054-1`, ...).

Responsibility is resolved by one function for every context. The only
thing that differs between requirements, bugs and L3/L4 links is the label
used for the internal (non-ESUK) team: `IL` for requirements and test
cases, `Elisra` for bugs and L3/L4 sub-requirements.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field

from reqcov.core.models import (
    RESPONSIBILITY_ESUK,
    RESPONSIBILITY_IL,
    RESPONSIBILITY_UNKNOWN,
    RequirementWorkItem,
    WorkItem,
    WorkItemFields,
)
from reqcov.services.extractor import base_key_of, first_code, is_child_code, sort_codes

logger = logging.getLogger(__name__)

SAPWBS_FIELDS = ("Custom.SAPWBS", "SAPWBS", "SAP WBS")
AREA_PATH_FIELDS = ("System.AreaPath", "Area Path", "AreaPath")
REQUIREMENT_ID_FIELDS = ("Custom.CustomerId", "Custom.CustomerID", "Custom.SRNumber", "CustomerId")
SUB_SYSTEM_FIELDS = ("Custom.SubSystem", "SubSystem", "Sub System")

_INTERNAL_ALIASES = {"IL", "INTERNAL", "ELISRA"}


def responsibility_from_area_path(area_path: str | None, default_label: str) -> str | None:
    """Map an area path ending in `ATP\\ESUK` or `ATP` to a responsibility."""
    if not area_path:
        return None
    segments = [
        part.strip().lower()
        for part in area_path.replace("/", "\\").split("\\")
        if part.strip()
    ]
    if len(segments) >= 2 and segments[-2:] == ["atp", "esuk"]:
        return RESPONSIBILITY_ESUK
    if segments and segments[-1] == "atp":
        return default_label
    return None


def resolve_responsibility(
    sapwbs: str | None,
    area_path: str | None,
    *,
    default_label: str = RESPONSIBILITY_IL,
) -> str:
    """Resolve organizational ownership from an explicit SAP-WBS value or an area path.

    Args:
        sapwbs: Explicit SAP-WBS-like value; wins when non-empty.
        area_path: Area path inspected when no explicit value is given.
        default_label: Label for the internal, non-ESUK team.

    Returns:
        `ESUK`, `default_label`, the explicit value as given, or `Unknown`.
    """
    explicit = (sapwbs or "").strip()
    if explicit:
        upper = explicit.upper()
        if upper == RESPONSIBILITY_ESUK:
            return RESPONSIBILITY_ESUK
        if upper in _INTERNAL_ALIASES:
            return default_label
        return explicit
    return responsibility_from_area_path(area_path, default_label) or RESPONSIBILITY_UNKNOWN


def resolve_fields_responsibility(
    fields: WorkItemFields,
    *,
    default_label: str = RESPONSIBILITY_IL,
    sapwbs_fields: Sequence[str] = SAPWBS_FIELDS,
) -> str:
    """Resolve responsibility from a work item's fields."""
    return resolve_responsibility(
        fields.text(*sapwbs_fields),
        fields.text(*AREA_PATH_FIELDS),
        default_label=default_label,
    )


def resolve_test_case_responsibility(fields: WorkItemFields) -> str:
    """Test cases are owned by their area path only, even when SAP-WBS is set."""
    return resolve_responsibility(None, fields.text(*AREA_PATH_FIELDS))


def extract_requirement_id(fields: WorkItemFields) -> str:
    """Return the requirement code from identifier fields only.

    Description and other free-text fields are never consulted: they routinely
    mention other requirements. The title is used as a last resort, and only
    its leading token.
    """
    for name in REQUIREMENT_ID_FIELDS:
        code = first_code(fields.text(name))
        if code:
            return code
    title = fields.text("System.Title")
    if title:
        leading = title.replace(":", " ").split(maxsplit=1)[0]
        return first_code(leading)
    return ""


def build_requirement(
    work_item: WorkItem,
    *,
    test_case_relation_types: Iterable[str] = (),
) -> RequirementWorkItem | None:
    """Build a requirement record from a fetched work item.

    Returns:
        The requirement, or None when the work item carries no requirement code.
    """
    requirement_id = extract_requirement_id(work_item.fields)
    if not requirement_id:
        logger.debug("Work item %d has no requirement code; skipping", work_item.id)
        return None
    allowed = set(test_case_relation_types)
    linked = []
    for relation in work_item.relations:
        if relation.rel in allowed and relation.target_id is not None:
            if relation.target_id not in linked:
                linked.append(relation.target_id)
    return RequirementWorkItem(
        work_item_id=work_item.id,
        requirement_id=requirement_id,
        base_key=base_key_of(requirement_id),
        title=work_item.title,
        sub_system=work_item.fields.text(*SUB_SYSTEM_FIELDS),
        responsibility=resolve_fields_responsibility(work_item.fields),
        linked_test_case_ids=tuple(linked),
        area_path=work_item.fields.text(*AREA_PATH_FIELDS),
    )


@dataclass
class Family:
    """All requirement records sharing one base key."""

    base_key: str
    members: list[RequirementWorkItem] = field(default_factory=list)

    @property
    def has_base_record(self) -> bool:
        return any(not is_child_code(member.requirement_id) for member in self.members)

    @property
    def child_codes(self) -> list[str]:
        return sort_codes(
            {member.requirement_id for member in self.members if is_child_code(member.requirement_id)}
        )

    @property
    def has_children(self) -> bool:
        return any(is_child_code(member.requirement_id) for member in self.members)

    @property
    def full_codes(self) -> set[str]:
        return {member.requirement_id for member in self.members}

    @property
    def linked_test_case_ids(self) -> set[int]:
        ids: set[int] = set()
        for member in self.members:
            ids.update(member.linked_test_case_ids)
        return ids


class FamilyIndex(Mapping[str, Family]):
    """Requirement families keyed by base key, with code lookups."""

    def __init__(self, families: Mapping[str, Family]) -> None:
        self._families = dict(families)
        self._by_code = {
            member.requirement_id: member
            for family in self._families.values()
            for member in family.members
        }

    def __getitem__(self, base_key: str) -> Family:
        return self._families[base_key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._families)

    def __len__(self) -> int:
        return len(self._families)

    def family_of(self, code: str) -> Family | None:
        return self._families.get(base_key_of(code))

    def requirement(self, code: str) -> RequirementWorkItem | None:
        return self._by_code.get(code)

    def knows(self, code: str) -> bool:
        """True when the code, or its base key, belongs to an indexed family."""
        return code in self._by_code or base_key_of(code) in self._families

    def responsibility_by_base_key(self) -> dict[str, str]:
        """First known responsibility per family, preferring the base record."""
        result: dict[str, str] = {}
        for base_key, family in self._families.items():
            ordered = sorted(family.members, key=lambda m: is_child_code(m.requirement_id))
            for member in ordered:
                if member.responsibility and member.responsibility != RESPONSIBILITY_UNKNOWN:
                    result[base_key] = member.responsibility
                    break
        return result


def build_families(requirements: Iterable[RequirementWorkItem]) -> FamilyIndex:
    """Group requirement records into families by base key."""
    families: dict[str, Family] = {}
    for requirement in requirements:
        family = families.setdefault(requirement.base_key, Family(base_key=requirement.base_key))
        family.members.append(requirement)
    return FamilyIndex(families)

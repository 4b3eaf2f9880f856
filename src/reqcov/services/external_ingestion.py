"""Conversion of external table rows into bug links and L3/L4 pairs.

Bug rows are keyed by the test case in `Elisra_SortIndex` and scoped to the
requirement family in `SR`. L3/L4 rows are keyed by the `SR` base key; the
`AREA 34` column says whether the level-3 columns describe an L3 or an L4.
Links in a terminal state, and L3/L4 links owned by ESUK, are dropped.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from reqcov.core.models import (
    RESPONSIBILITY_ELISRA,
    RESPONSIBILITY_ESUK,
    RESPONSIBILITY_UNKNOWN,
    BugLink,
    L3L4Pair,
)
from reqcov.services.extractor import base_key_of, first_code
from reqcov.services.external_tables import ExternalTableRow
from reqcov.services.families import resolve_responsibility

logger = logging.getLogger(__name__)

TEST_CASE_ID_COLUMNS = ("Elisra_SortIndex", "Elisra SortIndex", "ElisraSortIndex")
BUG_ID_COLUMNS = (
    "TargetWorkItemId",
    "Bug ID",
    "BugId",
    "Links.TargetWorkItem.WorkItemId",
)
BUG_STATE_COLUMNS = ("TargetState", "State")
BUG_TITLE_COLUMNS = ("Bug Title", "Title", "Links.TargetWorkItem.Title")
BUG_RESPONSIBILITY_COLUMNS = ("Responsibility", "Division", "SAPWBS", "TargetSapWbs")
BUG_AREA_PATH_COLUMNS = ("AreaPath", "Area Path", "System.AreaPath")

_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class _LevelColumns:
    id: tuple[str, ...]
    title: tuple[str, ...]
    state: tuple[str, ...]
    sapwbs: tuple[str, ...]


LEVEL_3 = _LevelColumns(
    id=("TargetWorkItemId Level 3", "TargetWorkItemIdLevel3"),
    title=("TargetTitleLevel3", "TargetTitle Level 3"),
    state=("TargetStateLevel 3",),
    sapwbs=("TargetSapWbsLevel 3", "TargetSapWbs Level 3"),
)
LEVEL_4 = _LevelColumns(
    id=("TargetWorkItemIdLevel 4", "TargetWorkItemId Level 4"),
    title=("TargetTitleLevel4", "TargetTitle Level 4"),
    state=("TargetStateLevel 4",),
    sapwbs=("TargetSapWbsLevel 4", "TargetSapWbs Level 4"),
)


def to_positive_int(value: str) -> int:
    """Digits of `value` as an int, or 0 when there are none."""
    digits = _DIGITS.sub("", value or "")
    return int(digits) if digits else 0


def requirement_key(value: str) -> str:
    """Base key of the first requirement code in a cell."""
    code = first_code(value)
    return base_key_of(code) if code else ""


class ExternalIngestion:
    """Turns external rows into report inputs.

    Args:
        terminal_states: States that take a link out of scope (any case).
    """

    def __init__(self, terminal_states: Iterable[str]) -> None:
        self._terminal_states = {state.strip().lower() for state in terminal_states}

    def in_scope(self, state: str) -> bool:
        return state.strip().lower() not in self._terminal_states

    def ingest_bugs(self, rows: Iterable[ExternalTableRow], source_name: str = "") -> dict[int, list[BugLink]]:
        """Group open bugs by test case.

        Duplicates of `(bug id, base key)` under one test case keep the first
        row; the result is sorted by bug id, then base key.
        """
        rows = list(rows)
        skipped = {"test_case_id": 0, "requirement": 0, "bug_id": 0, "state": 0}
        by_test_case: dict[int, dict[tuple[int, str], BugLink]] = {}
        parsed = 0

        for row in rows:
            test_case_id = to_positive_int(row.get_text(*TEST_CASE_ID_COLUMNS))
            if not test_case_id:
                skipped["test_case_id"] += 1
                continue
            base_key = requirement_key(row.get_text("SR"))
            if not base_key:
                skipped["requirement"] += 1
                continue
            bug_id = to_positive_int(row.get_text(*BUG_ID_COLUMNS))
            if not bug_id:
                skipped["bug_id"] += 1
                continue
            state = row.get_text(*BUG_STATE_COLUMNS)
            if not self.in_scope(state):
                skipped["state"] += 1
                continue

            bug = BugLink(
                bug_id=bug_id,
                title=row.get_text(*BUG_TITLE_COLUMNS),
                responsibility=resolve_responsibility(
                    row.get_text(*BUG_RESPONSIBILITY_COLUMNS),
                    row.get_text(*BUG_AREA_PATH_COLUMNS),
                    default_label=RESPONSIBILITY_ELISRA,
                ),
                requirement_base_key=base_key,
                state=state,
            )
            by_test_case.setdefault(test_case_id, {}).setdefault((bug_id, base_key), bug)
            parsed += 1

        result = {
            test_case_id: sorted(bugs.values(), key=lambda b: (b.bug_id, b.requirement_base_key))
            for test_case_id, bugs in by_test_case.items()
        }
        if rows and not parsed:
            logger.warning(
                "External bugs source %s was loaded but no valid rows were parsed; "
                "expected columns include Elisra_SortIndex, SR and a bug id column",
                source_name or "unknown",
            )
        logger.info(
            "External bugs ingestion: source=%s rows=%d parsed=%d test_cases=%d "
            "skipped_test_case_id=%d skipped_requirement=%d skipped_bug_id=%d skipped_state=%d",
            source_name or "unknown",
            len(rows),
            parsed,
            len(result),
            skipped["test_case_id"],
            skipped["requirement"],
            skipped["bug_id"],
            skipped["state"],
        )
        return result

    def _level(
        self,
        row: ExternalTableRow,
        columns: _LevelColumns,
        requirement_responsibility: str,
    ) -> tuple[str, str] | None:
        """Id and title of one level, or None when it is absent or excluded."""
        item_id = to_positive_int(row.get_text(*columns.id))
        if not item_id or not self.in_scope(row.get_text(*columns.state)):
            return None
        responsibility = resolve_responsibility(
            row.get_text(*columns.sapwbs), None, default_label=RESPONSIBILITY_ELISRA
        )
        if responsibility == RESPONSIBILITY_UNKNOWN:
            responsibility = requirement_responsibility
        if responsibility.upper() == RESPONSIBILITY_ESUK:
            return None
        return str(item_id), row.get_text(*columns.title)

    def ingest_l3l4(
        self,
        rows: Iterable[ExternalTableRow],
        responsibility_by_base_key: Mapping[str, str] | None = None,
        source_name: str = "",
    ) -> dict[str, list[L3L4Pair]]:
        """Collect open, non-ESUK L3/L4 pairs per requirement base key.

        Args:
            rows: Validated L3/L4 table rows.
            responsibility_by_base_key: Requirement owner per base key, used
                when a row carries no SAP-WBS value of its own.
            source_name: Name used in log messages.

        Returns:
            Deduplicated pairs per base key, sorted by (L3 id, L4 id).
        """
        rows = list(rows)
        owners = responsibility_by_base_key or {}
        pairs_by_key: dict[str, set[L3L4Pair]] = {}
        skipped_requirement = 0

        for row in rows:
            base_key = requirement_key(row.get_text("SR"))
            if not base_key:
                skipped_requirement += 1
                continue
            owner = owners.get(base_key, "")
            level3 = self._level(row, LEVEL_3, owner)
            level4 = self._level(row, LEVEL_4, owner)
            area = row.get_text("AREA 34", "AREA34").lower()

            pair: L3L4Pair | None = None
            if "level 4" in area:
                # level-3 columns hold the L4; level-4 columns are not read
                if level3 is not None:
                    pair = L3L4Pair("", "", *level3)
            elif level3 is not None and level4 is not None:
                pair = L3L4Pair(*level3, *level4)
            elif level3 is not None:
                pair = L3L4Pair(*level3)
            elif level4 is not None:
                pair = L3L4Pair("", "", *level4)

            if pair is not None:
                pairs_by_key.setdefault(base_key, set()).add(pair)

        result = {
            base_key: sorted(pairs, key=lambda p: (p.l3_id, p.l4_id))
            for base_key, pairs in pairs_by_key.items()
        }
        logger.info(
            "External L3/L4 ingestion: source=%s rows=%d base_keys=%d links=%d skipped_requirement=%d",
            source_name or "unknown",
            len(rows),
            len(result),
            sum(len(pairs) for pairs in result.values()),
            skipped_requirement,
        )
        return result

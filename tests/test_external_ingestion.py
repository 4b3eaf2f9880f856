"""Tests for converting external table rows into bug links and L3/L4 pairs."""

import logging

import pytest

from reqcov.core.models import BugLink, L3L4Pair
from reqcov.services.external_ingestion import ExternalIngestion, requirement_key, to_positive_int
from reqcov.services.external_tables import ExternalTableType, table_from_rows


def _bug_row(test_case, sr, bug_id, *, title="", state="Active", **extra):
    return {
        "Elisra_SortIndex": test_case,
        "SR": sr,
        "TargetWorkItemId": bug_id,
        "Title": title,
        "TargetState": state,
        **extra,
    }


def _l3l4_row(sr, area="Level 3", *, l3=("", "", ""), l4=("", "", ""), **extra):
    return {
        "SR": sr,
        "AREA 34": area,
        "TargetWorkItemId Level 3": l3[0],
        "TargetTitleLevel3": l3[1],
        "TargetStateLevel 3": l3[2],
        "TargetWorkItemIdLevel 4": l4[0],
        "TargetTitleLevel4": l4[1],
        "TargetStateLevel 4": l4[2],
        **extra,
    }


@pytest.fixture
def ingestion() -> ExternalIngestion:
    return ExternalIngestion(["Closed", "resolved", "removed"])


class TestHelpers:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("500", 500), ("TC-501", 501), (" 42 ", 42), ("", 0), ("none", 0)],
    )
    def test_to_positive_int(self, value, expected):
        assert to_positive_int(value) == expected

    def test_requirement_key(self):
        assert requirement_key("SR0001-2") == "SR0001"
        assert requirement_key("see SR0010 and SR0011") == "SR0010"
        assert requirement_key("n/a") == ""


# ---------------------------------------------------------------------------
# Bugs
# ---------------------------------------------------------------------------
class TestIngestBugs:
    """Tests for ExternalIngestion.ingest_bugs."""

    def test_groups_open_bugs_by_test_case(self, ingestion):
        rows = table_from_rows(
            ExternalTableType.BUGS,
            [
                _bug_row("500", "SR0001-2", "901", title="Flicker", SAPWBS="ESUK"),
                _bug_row("500", "SR0001", "901", title="Duplicate row"),
                _bug_row("500", "SR0002", "900", title="Crash", AreaPath="MEWP\\ATP"),
                _bug_row("TC-501", "SR0003", "902", title="Other"),
            ],
        ).rows

        bugs = ingestion.ingest_bugs(rows, "bugs.xlsx")

        assert bugs == {
            500: [
                BugLink(900, "Crash", "Elisra", "SR0002", "Active"),
                BugLink(901, "Flicker", "ESUK", "SR0001", "Active"),
            ],
            501: [BugLink(902, "Other", "Unknown", "SR0003", "Active")],
        }

    def test_invalid_and_terminal_rows_are_skipped(self, ingestion, caplog):
        rows = table_from_rows(
            ExternalTableType.BUGS,
            [
                _bug_row("500", "SR0001", "901", state="Closed"),
                _bug_row("", "SR0001", "902"),
                _bug_row("500", "n/a", "903"),
                _bug_row("500", "SR0001", ""),
            ],
        ).rows

        with caplog.at_level(logging.WARNING):
            bugs = ingestion.ingest_bugs(rows, "bugs.xlsx")

        assert bugs == {}
        assert "no valid rows were parsed" in caplog.text

    def test_same_bug_for_two_families_is_kept_twice(self, ingestion):
        rows = table_from_rows(
            ExternalTableType.BUGS,
            [_bug_row("500", "SR0002", "901"), _bug_row("500", "SR0001", "901")],
        ).rows

        bugs = ingestion.ingest_bugs(rows)

        assert [(b.bug_id, b.requirement_base_key) for b in bugs[500]] == [(901, "SR0001"), (901, "SR0002")]


# ---------------------------------------------------------------------------
# L3/L4
# ---------------------------------------------------------------------------
class TestIngestL3L4:
    """Tests for ExternalIngestion.ingest_l3l4."""

    def test_pairs_levels_and_reads_area_34(self, ingestion):
        rows = table_from_rows(
            ExternalTableType.L3L4,
            [
                _l3l4_row("SR0001", l3=("300", "Power L3", "Active"), l4=("400", "Power L4", "Active")),
                _l3l4_row("SR0001", l3=("300", "Power L3", "Active"), l4=("400", "Power L4", "Active")),
                _l3l4_row("SR0001-2", l3=("300", "Power L3", "Active")),
                _l3l4_row("SR0001", "Level 4", l3=("410", "Listed as L4", "New")),
            ],
        ).rows

        pairs = ingestion.ingest_l3l4(rows, {"SR0001": "IL"})

        assert pairs == {
            "SR0001": [
                L3L4Pair("", "", "410", "Listed as L4"),
                L3L4Pair("300", "Power L3"),
                L3L4Pair("300", "Power L3", "400", "Power L4"),
            ]
        }

    def test_terminal_and_esuk_links_are_dropped(self, ingestion):
        rows = table_from_rows(
            ExternalTableType.L3L4,
            [
                _l3l4_row("SR0001", l3=("301", "Closed L3", "Closed")),
                _l3l4_row("SR0001", l3=("302", "ESUK L3", "Active"), **{"TargetSapWbsLevel 3": "ESUK"}),
                _l3l4_row("SR0001", l3=("303", "Kept", "Active"), l4=("403", "ESUK L4", "Resolved")),
                _l3l4_row("SR0002", l3=("304", "Owner is ESUK", "Active")),
            ],
        ).rows

        pairs = ingestion.ingest_l3l4(rows, {"SR0001": "IL", "SR0002": "ESUK"})

        assert pairs == {"SR0001": [L3L4Pair("303", "Kept")]}

    def test_level_4_area_reads_only_level_3_columns(self, ingestion):
        rows = table_from_rows(
            ExternalTableType.L3L4,
            [
                _l3l4_row("SR0005", "Level 4", l3=("305", "Listed as L4", "Active"), l4=("405", "Ignored", "Active")),
                _l3l4_row("SR0006", "Level 4", l4=("406", "No level-3 id", "Active")),
                _l3l4_row("SR0007", "Level 4", l3=("307", "Closed L4", "Closed")),
            ],
        ).rows

        pairs = ingestion.ingest_l3l4(rows)

        assert pairs == {"SR0005": [L3L4Pair("", "", "305", "Listed as L4")]}

    def test_rows_without_requirement_are_skipped(self, ingestion):
        rows = table_from_rows(
            ExternalTableType.L3L4,
            [_l3l4_row("", l3=("300", "Orphan", "Active"))],
        ).rows

        assert ingestion.ingest_l3l4(rows) == {}

"""Tests for responsibility resolution and requirement families."""

import pytest

from reqcov.core.models import WorkItem, WorkItemFields
from reqcov.services.families import (
    build_families,
    build_requirement,
    extract_requirement_id,
    resolve_fields_responsibility,
    resolve_responsibility,
    resolve_test_case_responsibility,
)
from tests.factories import make_requirement, work_item_payload

TESTED_BY = "Microsoft.VSTS.Common.TestedBy-Forward"


class TestResolveResponsibility:
    """Tests for the shared responsibility resolver."""

    @pytest.mark.parametrize(
        ("sapwbs", "area_path", "default_label", "expected"),
        [
            ("ESUK", None, "IL", "ESUK"),
            ("esuk", "Proj\\ATP", "IL", "ESUK"),
            ("IL", None, "Elisra", "Elisra"),
            ("Elisra", None, "IL", "IL"),
            ("Contractor X", None, "IL", "Contractor X"),
            (None, "Proj\\ATP\\ESUK", "IL", "ESUK"),
            (None, "Proj\\ATP", "IL", "IL"),
            (None, "Proj/ATP", "Elisra", "Elisra"),
            (None, "Proj\\Other", "IL", "Unknown"),
            ("", None, "IL", "Unknown"),
        ],
    )
    def test_resolution(self, sapwbs, area_path, default_label, expected):
        assert resolve_responsibility(sapwbs, area_path, default_label=default_label) == expected

    def test_fields_resolution_prefers_sapwbs(self):
        fields = WorkItemFields({"Custom.SAPWBS": "ESUK", "System.AreaPath": "Proj\\ATP"})
        assert resolve_fields_responsibility(fields) == "ESUK"

    def test_test_case_uses_area_path_only(self):
        fields = WorkItemFields({"Custom.SAPWBS": "ESUK", "System.AreaPath": "Proj\\ATP"})
        assert resolve_test_case_responsibility(fields) == "IL"


class TestExtractRequirementId:
    """Tests for requirement code extraction from identifier fields."""

    def test_customer_id_field(self):
        fields = WorkItemFields({"Custom.CustomerId": "SR0054-2", "System.Title": "SR0001 Power"})
        assert extract_requirement_id(fields) == "SR0054-2"

    def test_field_names_are_case_insensitive(self):
        fields = WorkItemFields({"custom.customerid": "SR0012"})
        assert extract_requirement_id(fields) == "SR0012"

    def test_leading_title_token(self):
        fields = WorkItemFields({"System.Title": "SR0010: Power budget"})
        assert extract_requirement_id(fields) == "SR0010"

    def test_code_later_in_title_is_ignored(self):
        fields = WorkItemFields({"System.Title": "Power budget per SR0010"})
        assert extract_requirement_id(fields) == ""

    def test_description_is_never_read(self):
        fields = WorkItemFields({"System.Description": "SR0099", "System.Title": "Power"})
        assert extract_requirement_id(fields) == ""


class TestBuildRequirement:
    """Tests for building requirement records from work items."""

    def test_builds_record_with_linked_test_cases(self):
        work_item = WorkItem.from_payload(
            work_item_payload(
                10,
                {
                    "System.Title": "SR0054-2 Cooling",
                    "Custom.SubSystem": "Thermal",
                    "System.AreaPath": "MEWP\\Customer Requirements\\Level 2\\ATP",
                },
                relations=[(TESTED_BY, 501), ("System.LinkTypes.Related", 502), (TESTED_BY, 501)],
            )
        )

        requirement = build_requirement(work_item, test_case_relation_types=[TESTED_BY])

        assert requirement is not None
        assert requirement.work_item_id == 10
        assert requirement.requirement_id == "SR0054-2"
        assert requirement.base_key == "SR0054"
        assert requirement.sub_system == "Thermal"
        assert requirement.responsibility == "IL"
        assert requirement.linked_test_case_ids == (501,)
        assert not requirement.is_base

    def test_work_item_without_code_is_skipped(self):
        work_item = WorkItem.from_payload(work_item_payload(11, {"System.Title": "Untitled"}))
        assert build_requirement(work_item) is None


class TestFamilyIndex:
    """Tests for build_families and FamilyIndex lookups."""

    @pytest.fixture
    def families(self):
        """A family with base and children, plus a childless family."""
        return build_families(
            [
                make_requirement(1, "SR0054", responsibility="Unknown", linked_test_case_ids=[100]),
                make_requirement(2, "SR0054-2", responsibility="ESUK", linked_test_case_ids=[101]),
                make_requirement(3, "SR0054-10", responsibility="IL"),
                make_requirement(4, "SR0060", responsibility="IL"),
            ]
        )

    def test_groups_by_base_key(self, families):
        assert set(families) == {"SR0054", "SR0060"}
        family = families["SR0054"]
        assert family.has_base_record
        assert family.has_children
        assert family.child_codes == ["SR0054-2", "SR0054-10"]
        assert family.linked_test_case_ids == {100, 101}

    def test_childless_family(self, families):
        family = families["SR0060"]
        assert not family.has_children
        assert family.full_codes == {"SR0060"}

    def test_knows_codes_of_indexed_families(self, families):
        assert families.knows("SR0054-2")
        assert families.knows("SR0054-99")
        assert not families.knows("SR0070")

    def test_requirement_lookup(self, families):
        assert families.requirement("SR0054-10").work_item_id == 3
        assert families.requirement("SR0070") is None
        assert families.family_of("SR0060-1") is families["SR0060"]

    def test_responsibility_by_base_key_skips_unknown(self, families):
        assert families.responsibility_by_base_key() == {"SR0054": "ESUK", "SR0060": "IL"}

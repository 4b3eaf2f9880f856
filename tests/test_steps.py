"""Tests for steps XML parsing and step/iteration alignment.

Tests cover:
- Run status conversion and dotted position ordering
- Static step parsing with shared-step expansion
- Alignment of recorded outcomes onto static steps
"""

import logging

import pytest

from reqcov.core.models import ActionResult, SharedStepDefinition, StepDefinition
from reqcov.services.steps import (
    StepsParser,
    align_steps,
    collect_shared_step_refs,
    compare_step_positions,
    convert_run_status,
    normalize_outcome,
    shared_step_revisions,
)
from tests.factories import steps_xml

SHARED_LOGIN = SharedStepDefinition(
    title="Login",
    steps_xml=steps_xml(("2", "Enter credentials", "SR0003 accepted"), ("3", "Submit", "")),
)

CASE_WITH_SHARED = (
    '<steps id="0" last="5">'
    '<step id="2" type="ActionStep">'
    "<parameterizedString>Open</parameterizedString>"
    "<parameterizedString>SR0001 shown</parameterizedString>"
    "</step>"
    '<compref id="4" ref="900">'
    '<step id="5" type="ActionStep">'
    "<parameterizedString>Close</parameterizedString>"
    "<parameterizedString>SR0002 closed</parameterizedString>"
    "</step>"
    "</compref>"
    "</steps>"
)


# =============================================================================
# Status and position helpers
# =============================================================================


class TestConvertRunStatus:
    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            ("passed", "Passed"),
            ("Failed", "Failed"),
            ("notApplicable", "Not Applicable"),
            ("blocked", "Not Run"),
            ("", "Not Run"),
            (None, "Not Run"),
        ],
    )
    def test_conversion(self, status, expected):
        assert convert_run_status(status) == expected


class TestCompareStepPositions:
    @pytest.mark.parametrize(
        ("left", "right", "expected"),
        [
            ("1.2", "1.10", -1),
            ("1.1", "1.1.1", -1),
            ("2", "2", 0),
            ("3", "1.5", 1),
            ("10", "9", 1),
        ],
    )
    def test_numeric_component_order(self, left, right, expected):
        assert compare_step_positions(left, right) == expected


# =============================================================================
# Parsing
# =============================================================================


class TestStepsParser:
    """Tests for StepsParser."""

    def test_parses_action_and_expected(self):
        xml = steps_xml(("2", "Open", "SR0001 shown"), ("3", "Close", ""))

        steps = StepsParser().parse(xml)

        assert steps == [
            StepDefinition(step_id="2", step_position="1", action="Open", expected="SR0001 shown"),
            StepDefinition(step_id="3", step_position="2", action="Close", expected=""),
        ]

    def test_expands_shared_steps_in_place(self):
        steps = StepsParser({900: SHARED_LOGIN}).parse(CASE_WITH_SHARED)

        assert [(s.step_id, s.step_position) for s in steps] == [
            ("2", "1"),
            ("4", "2"),
            ("4;2", "2.1"),
            ("4;3", "2.2"),
            ("5", "3"),
        ]
        title = steps[1]
        assert title.is_shared_step_title
        assert title.action == "<b>Login</b>"
        assert steps[2].expected == "SR0003 accepted"

    def test_unknown_shared_step_keeps_numbering(self, caplog):
        xml = (
            '<steps id="0" last="3"><compref id="2" ref="77"/>'
            '<step id="3"><parameterizedString>Go</parameterizedString></step></steps>'
        )

        with caplog.at_level(logging.WARNING):
            steps = StepsParser().parse(xml)

        assert [(s.step_id, s.step_position) for s in steps] == [("3", "2")]
        assert "Unknown shared step 77" in caplog.text

    def test_self_referencing_shared_step_is_not_expanded_twice(self):
        looping = SharedStepDefinition(
            title="Loop",
            steps_xml='<steps id="0"><compref id="2" ref="900"/></steps>',
        )

        steps = StepsParser({900: looping}).parse('<steps id="0"><compref id="1" ref="900"/></steps>')

        assert [(s.step_id, s.step_position) for s in steps] == [("1", "1")]

    def test_invalid_xml_yields_no_steps(self, caplog):
        with caplog.at_level(logging.WARNING):
            assert StepsParser().parse("<steps><step") == []
        assert "Failed to parse test steps XML" in caplog.text

    def test_empty_xml_yields_no_steps(self):
        assert StepsParser().parse("") == []

    def test_collect_shared_step_refs(self):
        assert collect_shared_step_refs(CASE_WITH_SHARED) == {900}
        assert collect_shared_step_refs("") == set()


# =============================================================================
# Alignment
# =============================================================================


@pytest.fixture
def static_steps() -> list[StepDefinition]:
    """Static steps with a shared-step title row."""
    return StepsParser({900: SHARED_LOGIN}).parse(CASE_WITH_SHARED)


class TestAlignSteps:
    """Tests for align_steps."""

    def test_without_run_every_step_is_unspecified(self, static_steps):
        aligned = align_steps(static_steps, None)

        outcomes = {step.step_position: step.outcome for step in aligned}
        assert outcomes == {"1": "Not Run", "2": "", "2.1": "Not Run", "2.2": "Not Run", "3": "Not Run"}

    def test_results_without_outcomes_fall_back_to_static(self, static_steps):
        results = [ActionResult(step_identifier="2", outcome=None)]

        aligned = align_steps(static_steps, results)

        assert [step.outcome for step in aligned] == ["Not Run", "", "Not Run", "Not Run", "Not Run"]

    def test_recorded_outcomes_are_aligned_by_identifier(self, static_steps):
        results = [
            ActionResult(step_identifier="5", outcome="Failed", step_position="3"),
            ActionResult(step_identifier="2", outcome="Passed"),
            ActionResult(step_identifier="4", outcome="Unspecified"),
            ActionResult(step_identifier="4;2", outcome="Passed", step_position="2.1"),
        ]

        aligned = align_steps(static_steps, results)

        assert [(s.step_position, s.outcome) for s in aligned] == [
            ("1", "Passed"),
            ("2", ""),
            ("2.1", "Passed"),
            ("2.2", "Not Run"),
            ("3", "Failed"),
        ]
        assert aligned[0].expected == "SR0001 shown"

    def test_recorded_text_wins_over_static_text(self, static_steps):
        results = [
            ActionResult(step_identifier="2", outcome="Passed", action="Open v2", expected="SR0009 shown"),
        ]

        aligned = align_steps(static_steps, results)

        assert aligned[0].action == "Open v2"
        assert aligned[0].expected == "SR0009 shown"

    def test_result_without_resolvable_position_is_dropped(self, static_steps):
        results = [
            ActionResult(step_identifier="2", outcome="Passed"),
            ActionResult(step_identifier="99", outcome="Failed"),
        ]

        aligned = align_steps(static_steps, results)

        assert "99" not in {step.step_id for step in aligned}
        assert len(aligned) == len(static_steps)

    def test_alignment_is_ordered_by_dotted_position_and_repeatable(self):
        static = [
            StepDefinition("10", "10", "Finish", "done"),
            StepDefinition("4;7", "1.10", "Tenth shared", "SR0005"),
            StepDefinition("2", "2", "Middle", ""),
            StepDefinition("4;3", "1.2", "Second shared", "SR0004"),
            StepDefinition("4", "1", "<b>Login</b>", "", is_shared_step_title=True),
            StepDefinition("6;2", "2.1", "Nested", "SR0006"),
        ]
        results = [
            ActionResult(step_identifier="6;2", outcome="Passed", step_position="2.1"),
            ActionResult(step_identifier="4;7", outcome="Failed", step_position="1.10"),
            ActionResult(step_identifier="10", outcome="Passed"),
            ActionResult(step_identifier="4;3", outcome="Passed", step_position="1.2"),
        ]

        first = align_steps(static, results)
        second = align_steps(static, results)

        assert first == second
        assert [(s.step_position, s.outcome) for s in first] == [
            ("1", ""),
            ("1.2", "Passed"),
            ("1.10", "Failed"),
            ("2", "Not Run"),
            ("2.1", "Passed"),
            ("10", "Passed"),
        ]


class TestOutcomeHelpers:
    def test_normalize_outcome(self):
        assert normalize_outcome("Passed", is_shared_step_title=False) == "Passed"
        assert normalize_outcome("Unspecified", is_shared_step_title=False) == "Not Run"
        assert normalize_outcome(None, is_shared_step_title=True) == ""
        assert normalize_outcome("Blocked", is_shared_step_title=True) == "Blocked"

    def test_shared_step_revisions_keeps_first_revision(self):
        results = [
            ActionResult(step_identifier="4", shared_step_id=900, shared_step_revision=3),
            ActionResult(step_identifier="6", shared_step_id=900, shared_step_revision=5),
            ActionResult(step_identifier="2"),
        ]

        assert shared_step_revisions(results) == {900: 3}

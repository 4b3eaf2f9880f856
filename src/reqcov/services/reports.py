"""Report orchestration.

`CoverageReportService` pulls everything a report needs from the backend,
then runs the reconciliation steps on the fetched data:

1. suites of the plan (required; failure propagates)
2. test points and test cases per selected suite (per-suite failures degrade)
3. L2 requirements (required; failure propagates)
4. latest-run action results per test case (per-test-case failures degrade)
5. shared steps at the revisions the runs used
6. step alignment, relation resolution, external files
7. coverage rows or validation rows

Fetches fan out concurrently; the client's semaphore caps how many are in
flight. All joins are keyed by id.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from reqcov.core.models import (
    RESPONSIBILITY_ELISRA,
    STEPS_FIELD,
    ActionResult,
    AlignedStep,
    BugLink,
    CoverageFlatPayload,
    InternalValidationFlatPayload,
    LinkedRequirementEntry,
    Relation,
    RequirementWorkItem,
    SharedStepDefinition,
    SuiteTestData,
    TestPoint,
    WorkItem,
)
from reqcov.services.backend_client import BackendError
from reqcov.services.coverage import COVERAGE_COLUMNS, VALIDATION_COLUMNS, build_coverage_rows
from reqcov.services.external_ingestion import ExternalIngestion
from reqcov.services.external_tables import (
    ExternalFileRef,
    ExternalTable,
    ExternalTableIngestor,
    ExternalTableType,
    ExternalTableValidationResult,
)
from reqcov.services.families import (
    build_families,
    build_requirement,
    resolve_fields_responsibility,
    resolve_test_case_responsibility,
)
from reqcov.services.relations import RelationGraphResolver
from reqcov.services.steps import StepsParser, align_steps, collect_shared_step_refs, shared_step_revisions
from reqcov.services.suites import SuiteArena
from reqcov.services.validator import VALIDATION_PASS, validate_test_case

if TYPE_CHECKING:
    from reqcov.core.config import Settings
    from reqcov.services.backend_client import BackendClient

logger = logging.getLogger(__name__)

COVERAGE_SHEET_PREFIX = "MEWP L2 Coverage"
VALIDATION_SHEET_PREFIX = "MEWP Internal Validation"


@dataclass
class ExternalFilesValidation:
    """Pre-validation outcome of the external files of a coverage request."""

    valid: bool
    bugs: ExternalTableValidationResult | None = None
    l3l4: ExternalTableValidationResult | None = None


@dataclass
class ScopedTestCase:
    """A test case of the selected suites with its latest run, if any."""

    id: int
    title: str = ""
    steps_xml: str = ""
    latest_point: TestPoint | None = None
    action_results: list[ActionResult] | None = None


@dataclass
class _ReportInputs:
    plan_name: str
    test_cases: dict[int, ScopedTestCase]
    requirements: list[RequirementWorkItem]
    work_items: dict[int, WorkItem] = field(default_factory=dict)


def _wiql_literal(value: str) -> str:
    return value.replace("'", "''")


def merge_scoped_test_cases(suites: Iterable[SuiteTestData]) -> dict[int, ScopedTestCase]:
    """Merge suite data into one entry per test case.

    The point with the highest run id is the test case's latest run.
    """
    merged: dict[int, ScopedTestCase] = {}
    for suite in suites:
        for test_case in suite.test_cases.values():
            entry = merged.setdefault(test_case.id, ScopedTestCase(id=test_case.id))
            entry.title = entry.title or test_case.title
            entry.steps_xml = entry.steps_xml or test_case.steps_xml
        for point in suite.points:
            entry = merged.setdefault(point.test_case_id, ScopedTestCase(id=point.test_case_id))
            entry.title = entry.title or point.test_case_name
            if not point.has_run:
                continue
            latest = entry.latest_point
            if latest is None or (point.last_run_id or 0) > (latest.last_run_id or 0):
                entry.latest_point = point
    return merged


class CoverageReportService:
    """Builds coverage and internal validation payloads for a test plan.

    Args:
        client: Entered backend client.
        settings: Application settings.
        ingestor: External table ingestor; required only when external files
            are supplied.
    """

    def __init__(
        self,
        client: BackendClient,
        settings: Settings,
        ingestor: ExternalTableIngestor | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._ingestor = ingestor
        self._ingestion = ExternalIngestion(settings.ingestion.terminal_states)

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def _plan_name(self, project: str, plan_id: int) -> str:
        try:
            return await self._client.fetch_plan_name(project, plan_id) or str(plan_id)
        except BackendError as e:
            logger.warning("Could not fetch name of plan %s: %s", plan_id, e)
            return str(plan_id)

    async def _fetch_suite(self, project: str, plan_id: int, suite_id: int, group_name: str) -> SuiteTestData:
        data = SuiteTestData(suite_id=suite_id, group_name=group_name)
        points, test_cases = await asyncio.gather(
            self._client.fetch_test_points(project, plan_id, suite_id),
            self._client.fetch_suite_test_cases(project, plan_id, suite_id),
            return_exceptions=True,
        )
        errors = [outcome for outcome in (points, test_cases) if isinstance(outcome, BaseException)]
        if not errors:
            data.points, data.test_cases = points, test_cases
            return data
        for error in errors:
            if not isinstance(error, BackendError):
                raise error
        for error in errors:
            logger.error("Error occurred for suite %s: %s", suite_id, error)
        return data

    async def fetch_scoped_test_data(
        self, project: str, plan_id: int, suite_ids: Sequence[int] | None = None
    ) -> list[SuiteTestData]:
        """Points and test cases of the selected suites.

        Raises:
            BackendError: If the suite tree cannot be fetched.
        """
        arena = SuiteArena.from_tree(await self._client.fetch_suite_tree(project, plan_id))
        selected = arena.select(suite_ids)
        return list(
            await asyncio.gather(
                *(
                    self._fetch_suite(project, plan_id, suite.suite_id, suite.group_name)
                    for suite in selected
                )
            )
        )

    async def fetch_requirements(self, project: str) -> list[RequirementWorkItem]:
        """L2 requirements of the project, with their linked test cases.

        Raises:
            BackendError: If the requirement query fails.
        """
        coverage = self._settings.coverage
        wiql = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.TeamProject] = '{_wiql_literal(project)}' "
            f"AND [System.WorkItemType] = '{_wiql_literal(coverage.requirement_work_item_type)}'"
        )
        ids = await self._client.query_work_item_ids(project, wiql)
        work_items = await self._client.fetch_work_items_by_ids(ids, include_relations=True)

        marker = coverage.requirement_area_marker.lower()
        requirements = []
        for work_item in work_items:
            area_path = work_item.fields.text("System.AreaPath").lower()
            if marker and marker not in area_path:
                continue
            requirement = build_requirement(
                work_item, test_case_relation_types=coverage.test_case_relation_types
            )
            if requirement is not None:
                requirements.append(requirement)
        logger.info("Fetched %d L2 requirements for project %s", len(requirements), project)
        return requirements

    async def _fetch_test_case_items(self, test_cases: Mapping[int, ScopedTestCase]) -> dict[int, WorkItem]:
        """Test case work items with relations; fills in steps the suite listing left out."""
        try:
            work_items = await self._client.fetch_work_items_by_ids(list(test_cases), include_relations=True)
        except BackendError as e:
            logger.error("Could not fetch relations of %d test cases: %s", len(test_cases), e)
            return {}
        for work_item in work_items:
            entry = test_cases.get(work_item.id)
            if entry is None:
                continue
            entry.steps_xml = entry.steps_xml or work_item.fields.text(STEPS_FIELD)
            entry.title = entry.title or work_item.title
        return {item.id: item for item in work_items}

    async def _fetch_action_results(self, project: str, test_case: ScopedTestCase) -> None:
        point = test_case.latest_point
        if point is None or not point.has_run:
            return
        try:
            test_case.action_results = await self._client.fetch_run_action_results(
                project, point.last_run_id, point.last_result_id
            )
        except BackendError as e:
            logger.error(
                "Could not fetch run %s result %s of test case %s: %s",
                point.last_run_id,
                point.last_result_id,
                test_case.id,
                e,
            )

    async def _fetch_shared_steps(
        self, keys: Iterable[tuple[int, int | None]]
    ) -> dict[tuple[int, int | None], SharedStepDefinition]:
        keys = sorted(set(keys), key=lambda k: (k[0], k[1] or 0))

        async def fetch(key: tuple[int, int | None]) -> SharedStepDefinition | None:
            try:
                return await self._client.fetch_shared_step(key[0], key[1])
            except BackendError as e:
                logger.warning("Could not fetch shared step %s (revision %s): %s", key[0], key[1], e)
                return None

        results = await asyncio.gather(*(fetch(key) for key in keys))
        return {key: result for key, result in zip(keys, results) if result is not None}

    async def _collect_inputs(
        self, project: str, plan_id: int, suite_ids: Sequence[int] | None, *, with_runs: bool
    ) -> _ReportInputs:
        plan_name, suites = await asyncio.gather(
            self._plan_name(project, plan_id),
            self.fetch_scoped_test_data(project, plan_id, suite_ids),
            return_exceptions=True,
        )
        for outcome in (suites, plan_name):
            if isinstance(outcome, BaseException):
                raise outcome
        requirements = await self.fetch_requirements(project)
        test_cases = merge_scoped_test_cases(suites)
        work_items = await self._fetch_test_case_items(test_cases)
        if with_runs:
            await asyncio.gather(
                *(self._fetch_action_results(project, tc) for tc in test_cases.values())
            )

        logger.info(
            "Plan %s: %d suites, %d test cases, %d requirements",
            plan_id,
            len(suites),
            len(test_cases),
            len(requirements),
        )
        return _ReportInputs(
            plan_name=plan_name,
            test_cases=test_cases,
            requirements=requirements,
            work_items=work_items,
        )

    # -------------------------------------------------------------------------
    # Reconciliation
    # -------------------------------------------------------------------------

    async def _align_all(
        self, test_cases: Mapping[int, ScopedTestCase], *, with_runs: bool
    ) -> dict[int, list[AlignedStep]]:
        refs_by_test_case: dict[int, dict[int, int | None]] = {}
        for test_case in test_cases.values():
            revisions = shared_step_revisions(test_case.action_results or []) if with_runs else {}
            refs_by_test_case[test_case.id] = {
                ref: revisions.get(ref) for ref in collect_shared_step_refs(test_case.steps_xml)
            }
        shared = await self._fetch_shared_steps(
            (ref, revision) for refs in refs_by_test_case.values() for ref, revision in refs.items()
        )

        aligned: dict[int, list[AlignedStep]] = {}
        for test_case in test_cases.values():
            lookup = {
                ref: shared[(ref, revision)]
                for ref, revision in refs_by_test_case[test_case.id].items()
                if (ref, revision) in shared
            }
            static_steps = StepsParser(lookup).parse(test_case.steps_xml)
            results = test_case.action_results if with_runs else None
            aligned[test_case.id] = align_steps(static_steps, results)
        return aligned

    async def _resolve_links(
        self, inputs: _ReportInputs
    ) -> dict[int, LinkedRequirementEntry]:
        coverage = self._settings.coverage
        resolver = RelationGraphResolver(
            self._client.fetch_work_items_by_ids,
            requirements=inputs.requirements,
            requirement_relation_types=coverage.requirement_relation_types,
            bug_relation_types=coverage.bug_relation_types,
            terminal_states=self._settings.ingestion.terminal_states,
        )
        edges: dict[int, Sequence[Relation]] = {
            test_case_id: inputs.work_items[test_case_id].relations
            for test_case_id in inputs.test_cases
            if test_case_id in inputs.work_items
        }
        try:
            return await resolver.resolve_links(inputs.test_cases, edges)
        except BackendError as e:
            logger.error("Could not resolve relation targets: %s", e)
            return {test_case_id: LinkedRequirementEntry() for test_case_id in inputs.test_cases}

    async def _backend_bugs(
        self, linked: Mapping[int, LinkedRequirementEntry]
    ) -> dict[int, list[BugLink]]:
        bug_ids = sorted({bug_id for entry in linked.values() for bug_id in entry.bug_ids})
        if not bug_ids:
            return {}
        try:
            bugs = {item.id: item for item in await self._client.fetch_work_items_by_ids(bug_ids)}
        except BackendError as e:
            logger.warning("Could not fetch %d linked bugs: %s", len(bug_ids), e)
            return {}

        result: dict[int, list[BugLink]] = {}
        for test_case_id, entry in linked.items():
            links = []
            for bug_id in sorted(entry.bug_ids):
                work_item = bugs.get(bug_id)
                if work_item is None:
                    continue
                for base_key in sorted(entry.base_keys):
                    links.append(
                        BugLink(
                            bug_id=bug_id,
                            title=work_item.title,
                            responsibility=resolve_fields_responsibility(
                                work_item.fields, default_label=RESPONSIBILITY_ELISRA
                            ),
                            requirement_base_key=base_key,
                            state=work_item.state,
                        )
                    )
            if links:
                result[test_case_id] = links
        return result

    def _load_table(self, ref: ExternalFileRef | None, table_type: ExternalTableType) -> ExternalTable:
        if self._ingestor is None:
            msg = "External files were supplied but no external table ingestor is configured"
            raise RuntimeError(msg)
        return self._ingestor.fetch_external_table(ref, table_type)

    # -------------------------------------------------------------------------
    # Payloads
    # -------------------------------------------------------------------------

    async def get_coverage_payload(
        self,
        project: str,
        plan_id: int,
        suite_ids: Sequence[int] | None = None,
        *,
        bugs_file: ExternalFileRef | None = None,
        l3l4_file: ExternalFileRef | None = None,
    ) -> CoverageFlatPayload:
        """Build the L2 coverage payload of a test plan.

        Raises:
            BackendError: If the suites or the requirements cannot be fetched.
            ExternalFileValidationError: If a supplied external file is rejected.
        """
        inputs = await self._collect_inputs(project, plan_id, suite_ids, with_runs=True)
        aligned = await self._align_all(inputs.test_cases, with_runs=True)
        linked = await self._resolve_links(inputs)
        families = build_families(inputs.requirements)

        bugs_by_test_case: dict[int, list[BugLink]] = {}
        if bugs_file is not None:
            table = await asyncio.to_thread(self._load_table, bugs_file, ExternalTableType.BUGS)
            bugs_by_test_case = self._ingestion.ingest_bugs(table.rows, table.source_name)
        elif self._settings.coverage.use_backend_bugs_without_external_file:
            bugs_by_test_case = await self._backend_bugs(linked)

        l3l4_by_base_key = {}
        if l3l4_file is not None:
            table = await asyncio.to_thread(self._load_table, l3l4_file, ExternalTableType.L3L4)
            l3l4_by_base_key = self._ingestion.ingest_l3l4(
                table.rows, families.responsibility_by_base_key(), table.source_name
            )

        test_case_responsibility = {
            test_case_id: resolve_test_case_responsibility(work_item.fields)
            for test_case_id, work_item in inputs.work_items.items()
        }
        rows = build_coverage_rows(
            inputs.requirements,
            linked,
            aligned,
            bugs_by_test_case,
            l3l4_by_base_key,
            test_case_responsibility,
        )
        logger.info("Coverage report for plan %s: %d rows", plan_id, len(rows))
        return CoverageFlatPayload(
            sheet_name=f"{COVERAGE_SHEET_PREFIX} - {inputs.plan_name}",
            column_order=list(COVERAGE_COLUMNS),
            rows=rows,
        )

    async def get_internal_validation_payload(
        self,
        project: str,
        plan_id: int,
        suite_ids: Sequence[int] | None = None,
    ) -> InternalValidationFlatPayload:
        """Compare mentioned and linked requirements of every test case.

        Step text is taken from the test case definitions; run history is not read.

        Raises:
            BackendError: If the suites or the requirements cannot be fetched.
        """
        inputs = await self._collect_inputs(project, plan_id, suite_ids, with_runs=False)
        aligned = await self._align_all(inputs.test_cases, with_runs=False)
        linked = await self._resolve_links(inputs)
        families = build_families(inputs.requirements)

        rows: list[dict[str, Any]] = []
        for test_case_id in sorted(inputs.test_cases):
            result = validate_test_case(
                test_case_id, aligned.get(test_case_id, []), linked.get(test_case_id), families
            )
            rows.append(
                {
                    "Test Case ID": test_case_id,
                    "Test Case Title": inputs.test_cases[test_case_id].title,
                    "Mentioned but Not Linked": result.mentioned_not_linked_text,
                    "Linked but Not Mentioned": result.linked_not_mentioned_text,
                    "Validation Status": result.status,
                }
            )
        failed = sum(1 for row in rows if row["Validation Status"] != VALIDATION_PASS)
        logger.info("Internal validation for plan %s: %d test cases, %d failing", plan_id, len(rows), failed)
        return InternalValidationFlatPayload(
            sheet_name=f"{VALIDATION_SHEET_PREFIX} - {inputs.plan_name}",
            column_order=list(VALIDATION_COLUMNS),
            rows=rows,
        )


def validate_external_files(
    ingestor: ExternalTableIngestor,
    bugs_file: ExternalFileRef | None = None,
    l3l4_file: ExternalFileRef | None = None,
) -> ExternalFilesValidation:
    """Check the external files of a coverage request before running it."""
    bugs = ingestor.validate(bugs_file, ExternalTableType.BUGS)
    l3l4 = ingestor.validate(l3l4_file, ExternalTableType.L3L4)
    valid = all(result.valid for result in (bugs, l3l4) if result is not None)
    return ExternalFilesValidation(valid=valid, bugs=bugs, l3l4=l3l4)

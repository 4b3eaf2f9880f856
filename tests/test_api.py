"""Tests for the reqcov API.

Covers the health probe, request ID propagation, the report endpoints with
the report service replaced by a mock, and the error envelope for rejected
external files and backend failures.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient

from reqcov.api.routers.reports import get_external_ingestor, get_report_service
from reqcov.core.models import CoverageFlatPayload, InternalValidationFlatPayload
from reqcov.services.backend_client import BackendNotFoundError
from reqcov.services.external_tables import (
    ExternalFileRef,
    ExternalFileValidationError,
    ExternalTableIngestor,
    ExternalTableType,
    ExternalTableValidationResult,
)
from reqcov.services.reports import CoverageReportService

COVERAGE_ROW = {
    "L2 REQ ID": "10",
    "L2 REQ Title": "SR0001 Power",
    "L2 SubSystem": "PSU",
    "L2 Run Status": "Pass",
    "Bug ID": "",
    "Bug Title": "",
    "Bug Responsibility": "",
    "L3 REQ ID": "",
    "L3 REQ Title": "",
    "L4 REQ ID": "",
    "L4 REQ Title": "",
}


@pytest.fixture
def report_service(test_app) -> MagicMock:
    """Report service mock installed as the app's report dependency."""
    service = MagicMock(spec=CoverageReportService)
    service.get_coverage_payload = AsyncMock(
        return_value=CoverageFlatPayload(
            sheet_name="MEWP L2 Coverage - Release 1",
            column_order=list(COVERAGE_ROW),
            rows=[COVERAGE_ROW],
        )
    )
    service.get_internal_validation_payload = AsyncMock(
        return_value=InternalValidationFlatPayload(
            sheet_name="MEWP Internal Validation - Release 1",
            column_order=["Test Case ID", "Validation Status"],
            rows=[{"Test Case ID": 500, "Validation Status": "Pass"}],
        )
    )
    test_app.dependency_overrides[get_report_service] = lambda: service
    return service


@pytest.fixture
def ingestor(test_app) -> MagicMock:
    """External table ingestor mock installed as the app's ingestor dependency."""
    mock = MagicMock(spec=ExternalTableIngestor)
    test_app.dependency_overrides[get_external_ingestor] = lambda: mock
    return mock


# =============================================================================
# Health and request IDs
# =============================================================================


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, api_client: AsyncClient):
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_request_id_is_generated(self, api_client: AsyncClient):
        response = await api_client.get("/health")

        assert len(response.headers["X-Request-ID"]) == 36

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, api_client: AsyncClient):
        response = await api_client.get("/health", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    @pytest.mark.asyncio
    async def test_openapi_is_served_under_api(self, api_client: AsyncClient):
        response = await api_client.get("/api/openapi.json")

        assert response.status_code == 200
        assert "/reports/coverage" in response.json()["paths"]


# =============================================================================
# Report endpoints
# =============================================================================


class TestCoverageEndpoint:
    """Tests for POST /reports/coverage."""

    @pytest.mark.asyncio
    async def test_returns_camel_case_payload(self, api_client, report_service):
        response = await api_client.post(
            "/reports/coverage",
            json={
                "project": "Project",
                "planId": 12,
                "suiteIds": [2],
                "externalBugsFile": {
                    "url": "http://s3/mewp-external-ingestion/mewp-external-ingestion/bugs.xlsx",
                    "name": "bugs.xlsx",
                    "sourceType": "mewpExternalIngestion",
                },
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["sheetName"] == "MEWP L2 Coverage - Release 1"
        assert body["columnOrder"][:2] == ["L2 REQ ID", "L2 REQ Title"]
        assert body["rows"] == [COVERAGE_ROW]

        report_service.get_coverage_payload.assert_awaited_once_with(
            "Project",
            12,
            [2],
            bugs_file=ExternalFileRef(
                url="http://s3/mewp-external-ingestion/mewp-external-ingestion/bugs.xlsx",
                name="bugs.xlsx",
                source_type="mewpExternalIngestion",
            ),
            l3l4_file=None,
        )

    @pytest.mark.asyncio
    async def test_invalid_request(self, api_client, report_service):
        response = await api_client.post("/reports/coverage", json={"project": "Project", "planId": 0})

        assert response.status_code == 422
        report_service.get_coverage_payload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_external_file(self, api_client, report_service):
        details = ExternalTableValidationResult(
            table_type="bugs",
            source_name="bugs.xlsx",
            valid=False,
            total_required_columns=5,
            missing_required_columns=["TargetState"],
            message="Missing required columns: TargetState.",
        )
        report_service.get_coverage_payload.side_effect = ExternalFileValidationError(
            "Missing required columns: TargetState.", details=details
        )

        response = await api_client.post(
            "/reports/coverage",
            json={"project": "Project", "planId": 12, "externalBugsFile": {"name": "bugs.xlsx"}},
            headers={"X-Request-ID": "req-422"},
        )

        assert response.status_code == 422
        body = response.json()
        assert body["error"] == "MEWP_EXTERNAL_FILE_VALIDATION_FAILED"
        assert body["message"] == "Missing required columns: TargetState."
        assert body["detail"]["missing_required_columns"] == ["TargetState"]
        assert body["request_id"] == "req-422"

    @pytest.mark.asyncio
    async def test_backend_failure_is_bad_gateway(self, api_client, report_service):
        report_service.get_coverage_payload.side_effect = BackendNotFoundError(
            "No test suites found for plan 12", status_code=404, detail="plan missing"
        )

        response = await api_client.post("/reports/coverage", json={"project": "Project", "planId": 12})

        assert response.status_code == 502
        body = response.json()
        assert body["error"] == "backend_error"
        assert body["message"] == "No test suites found for plan 12"
        assert body["detail"] == {"upstream_status": 404, "upstream_detail": "plan missing"}

    @pytest.mark.asyncio
    async def test_unexpected_error(self, api_client, report_service):
        report_service.get_coverage_payload.side_effect = RuntimeError("boom")

        response = await api_client.post("/reports/coverage", json={"project": "Project", "planId": 12})

        assert response.status_code == 500
        assert response.json()["error"] == "internal_error"


class TestValidationEndpoint:
    """Tests for POST /reports/validation."""

    @pytest.mark.asyncio
    async def test_returns_rows(self, api_client, report_service):
        response = await api_client.post("/reports/validation", json={"project": "Project", "planId": 12})

        assert response.status_code == 200
        assert response.json() == {
            "sheetName": "MEWP Internal Validation - Release 1",
            "columnOrder": ["Test Case ID", "Validation Status"],
            "rows": [{"Test Case ID": 500, "Validation Status": "Pass"}],
        }
        report_service.get_internal_validation_payload.assert_awaited_once_with("Project", 12, None)

    @pytest.mark.asyncio
    async def test_snake_case_input_is_accepted(self, api_client, report_service):
        response = await api_client.post(
            "/reports/validation", json={"project": "Project", "plan_id": 12, "suite_ids": [3]}
        )

        assert response.status_code == 200
        report_service.get_internal_validation_payload.assert_awaited_once_with("Project", 12, [3])


class TestExternalFilesValidateEndpoint:
    """Tests for POST /reports/external-files/validate."""

    @pytest.mark.asyncio
    async def test_rejection_is_reported_in_body(self, api_client, ingestor):
        ingestor.validate.side_effect = [
            ExternalTableValidationResult(
                table_type="bugs",
                source_name="bugs.xlsx",
                valid=False,
                total_required_columns=5,
                missing_required_columns=["SR"],
                message="Missing required columns: SR.",
            ),
            None,
        ]

        response = await api_client.post(
            "/reports/external-files/validate",
            json={"externalBugsFile": {"name": "bugs.xlsx", "objectName": "mewp-external-ingestion/bugs.xlsx"}},
        )

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is False
        assert body["bugs"]["tableType"] == "bugs"
        assert body["bugs"]["missingRequiredColumns"] == ["SR"]
        assert body["l3l4"] is None

        first_call = ingestor.validate.call_args_list[0]
        assert first_call.args == (
            ExternalFileRef(name="bugs.xlsx", object_name="mewp-external-ingestion/bugs.xlsx"),
            ExternalTableType.BUGS,
        )


# =============================================================================
# Dependencies
# =============================================================================


def test_external_ingestor_is_created_once_per_app(settings):
    request = MagicMock()
    request.app.state = SimpleNamespace(settings=settings)

    first = get_external_ingestor(request, settings)
    second = get_external_ingestor(request, settings)

    assert isinstance(first, ExternalTableIngestor)
    assert first is second

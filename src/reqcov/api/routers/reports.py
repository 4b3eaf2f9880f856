"""Report API router.

Endpoints:
- POST /reports/coverage: L2 requirement coverage rows for a test plan
- POST /reports/validation: mentioned-vs-linked validation rows per test case
- POST /reports/external-files/validate: pre-check of external spreadsheets

Each request opens its own backend client, so the read cache and the
concurrency cap are scoped to one report.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Annotated

from fastapi import APIRouter, Depends, Request

from reqcov.api.schemas.reports import (
    CoverageReportRequest,
    ErrorResponse,
    ExternalFilesValidateRequest,
    ExternalFilesValidationResponse,
    ExternalTableValidation,
    FlatPayloadResponse,
    ValidationReportRequest,
    file_ref,
)
from reqcov.core.config import Settings
from reqcov.services.backend_client import BackendClient, BackendConfig
from reqcov.services.external_tables import ExternalTableIngestor, ExternalTableValidationResult
from reqcov.services.reports import CoverageReportService, validate_external_files
from reqcov.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/reports",
    tags=["reports"],
    responses={
        422: {"description": "Invalid request or rejected external file", "model": ErrorResponse},
        502: {"description": "Test-management backend failure", "model": ErrorResponse},
    },
)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_external_ingestor(
    request: Request,
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> ExternalTableIngestor:
    """Ingestor over the configured object store, created once per app."""
    ingestor = getattr(request.app.state, "external_ingestor", None)
    if ingestor is None:
        ingestor = ExternalTableIngestor(ObjectStoreClient.from_settings(settings.s3), settings.ingestion)
        request.app.state.external_ingestor = ingestor
    return ingestor


async def get_report_service(
    settings: Annotated[Settings, Depends(get_app_settings)],
    ingestor: Annotated[ExternalTableIngestor, Depends(get_external_ingestor)],
) -> AsyncIterator[CoverageReportService]:
    """Report service bound to a backend client for the duration of the request."""
    async with BackendClient(BackendConfig.from_settings(settings.backend)) as client:
        yield CoverageReportService(client, settings, ingestor)


ReportService = Annotated[CoverageReportService, Depends(get_report_service)]


def _validation_model(result: ExternalTableValidationResult | None) -> ExternalTableValidation | None:
    return ExternalTableValidation(**result.to_dict()) if result is not None else None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/coverage",
    response_model=FlatPayloadResponse,
    summary="Build the L2 coverage report of a test plan",
)
async def coverage_report(body: CoverageReportRequest, service: ReportService) -> FlatPayloadResponse:
    """One row per (requirement, bug or L3/L4 link), with the requirement's run status."""
    logger.info("Coverage report requested: project=%s plan=%s", body.project, body.plan_id)
    payload = await service.get_coverage_payload(
        body.project,
        body.plan_id,
        body.suite_ids,
        bugs_file=file_ref(body.bugs_file),
        l3l4_file=file_ref(body.l3l4_file),
    )
    return FlatPayloadResponse(
        sheet_name=payload.sheet_name,
        column_order=payload.column_order,
        rows=payload.rows,
    )


@router.post(
    "/validation",
    response_model=FlatPayloadResponse,
    summary="Build the internal validation report of a test plan",
)
async def validation_report(body: ValidationReportRequest, service: ReportService) -> FlatPayloadResponse:
    logger.info("Internal validation requested: project=%s plan=%s", body.project, body.plan_id)
    payload = await service.get_internal_validation_payload(body.project, body.plan_id, body.suite_ids)
    return FlatPayloadResponse(
        sheet_name=payload.sheet_name,
        column_order=payload.column_order,
        rows=payload.rows,
    )


@router.post(
    "/external-files/validate",
    response_model=ExternalFilesValidationResponse,
    summary="Check external spreadsheets before running a coverage report",
)
async def validate_files(
    body: ExternalFilesValidateRequest,
    ingestor: Annotated[ExternalTableIngestor, Depends(get_external_ingestor)],
) -> ExternalFilesValidationResponse:
    """Rejected files are reported in the response body, not as an error status."""
    result = await asyncio.to_thread(
        validate_external_files, ingestor, file_ref(body.bugs_file), file_ref(body.l3l4_file)
    )
    return ExternalFilesValidationResponse(
        valid=result.valid,
        bugs=_validation_model(result.bugs),
        l3l4=_validation_model(result.l3l4),
    )

"""Pydantic schemas for the report endpoints.

Field names are camelCase on the wire (`planId`, `sheetName`, ...) and
snake_case in Python; both spellings are accepted on input.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from reqcov.services.external_tables import ExternalFileRef


class CamelModel(BaseModel):
    """Base model with camelCase aliases."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExternalFileReference(CamelModel):
    """Reference to an uploaded external spreadsheet."""

    url: str = Field("", description="Direct object URL; bucket and key are inferred from its path")
    name: str = Field("", description="Display name of the upload")
    bucket_name: str = Field("", description="Bucket holding the object")
    object_name: str = Field("", description="Object key inside the bucket")
    text: str = Field("", description="Legacy alias of objectName")
    source_type: str = Field("", description="Declared origin of the upload")
    size_bytes: int | None = Field(None, ge=0, description="Declared size in bytes")

    def to_ref(self) -> ExternalFileRef | None:
        return ExternalFileRef.from_dict(self.model_dump(exclude_none=True))


def file_ref(model: ExternalFileReference | None) -> ExternalFileRef | None:
    return model.to_ref() if model is not None else None


class ValidationReportRequest(CamelModel):
    """Request body of the internal validation report."""

    project: str = Field(..., min_length=1, description="Team project name")
    plan_id: int = Field(..., gt=0, description="Test plan id")
    suite_ids: list[int] | None = Field(
        None, description="Suites to include; every suite of the plan when omitted"
    )


class CoverageReportRequest(ValidationReportRequest):
    """Request body of the L2 coverage report."""

    bugs_file: ExternalFileReference | None = Field(
        None, alias="externalBugsFile", description="External bug table"
    )
    l3l4_file: ExternalFileReference | None = Field(
        None, alias="externalL3L4File", description="External L3/L4 table"
    )


class ExternalFilesValidateRequest(CamelModel):
    """Request body of the external file pre-validation."""

    bugs_file: ExternalFileReference | None = Field(None, alias="externalBugsFile")
    l3l4_file: ExternalFileReference | None = Field(None, alias="externalL3L4File")


class FlatPayloadResponse(CamelModel):
    """Rows of one report sheet, in render order."""

    sheet_name: str = Field(..., description="Worksheet name")
    column_order: list[str] = Field(..., description="Column labels in display order")
    rows: list[dict[str, Any]] = Field(default_factory=list, description="Rows keyed by column label")


class ExternalTableValidation(CamelModel):
    """Validation result of one external file."""

    table_type: str
    source_name: str
    valid: bool
    header_row: str = ""
    matched_required_columns: int = 0
    total_required_columns: int = 0
    missing_required_columns: list[str] = Field(default_factory=list)
    row_count: int = 0
    message: str = ""


class ExternalFilesValidationResponse(CamelModel):
    """Pre-validation outcome for the files of a coverage request."""

    valid: bool = Field(..., description="True when every supplied file is valid")
    bugs: ExternalTableValidation | None = None
    l3l4: ExternalTableValidation | None = None


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    detail: dict[str, Any] | None = Field(None, description="Additional error details")
    request_id: str | None = Field(None, description="Request correlation id")

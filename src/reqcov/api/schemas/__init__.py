"""Pydantic schemas for the reqcov API."""

from reqcov.api.schemas.reports import (
    CoverageReportRequest,
    ErrorResponse,
    ExternalFileReference,
    ExternalFilesValidateRequest,
    ExternalFilesValidationResponse,
    ExternalTableValidation,
    FlatPayloadResponse,
    ValidationReportRequest,
)

__all__ = [
    "CoverageReportRequest",
    "ErrorResponse",
    "ExternalFileReference",
    "ExternalFilesValidateRequest",
    "ExternalFilesValidationResponse",
    "ExternalTableValidation",
    "FlatPayloadResponse",
    "ValidationReportRequest",
]

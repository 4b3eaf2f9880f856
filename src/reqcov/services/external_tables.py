"""External spreadsheet loading and validation.

Users upload bug and L3/L4 tables as .xlsx or .csv files to the dedicated
ingestion bucket. A file is accepted only when:

- its reference points at the dedicated bucket, under the ingestion path marker
- its extension is allow-listed and its size is under the configured ceiling
- its header row, expected at A3 with A1 checked as a fallback, carries every
  required column

Column names are compared after normalization (lowercase, alphanumerics
only), so "TargetWorkItemId Level 3" and "targetworkitemidlevel3" match.
"""

from __future__ import annotations

import csv
import io
import logging
import re
import zipfile
from collections.abc import Iterable, Iterator, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any
from urllib.parse import unquote, urlparse

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from reqcov.services.storage import StorageError

if TYPE_CHECKING:
    from reqcov.core.config import IngestionSettings
    from reqcov.services.storage import ObjectStoreClient

logger = logging.getLogger(__name__)

HEADER_ROW_A3 = "A3"
HEADER_ROW_A1 = "A1"

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_EXTENSION = re.compile(r"\.([a-z0-9]+)$", re.IGNORECASE)


class ExternalTableType(str, Enum):
    """Kinds of external tables."""

    BUGS = "bugs"
    L3L4 = "l3l4"


@dataclass(frozen=True)
class RequiredColumn:
    label: str
    aliases: tuple[str, ...]


REQUIRED_COLUMNS: dict[ExternalTableType, tuple[RequiredColumn, ...]] = {
    ExternalTableType.BUGS: (
        RequiredColumn("Elisra_SortIndex", ("Elisra_SortIndex", "Elisra SortIndex")),
        RequiredColumn("SR", ("SR",)),
        RequiredColumn("TargetWorkItemId", ("TargetWorkItemId", "BugId", "Bug ID")),
        RequiredColumn("Title", ("Title", "BugTitle", "Bug Title")),
        RequiredColumn("TargetState", ("TargetState", "State")),
    ),
    ExternalTableType.L3L4: (
        RequiredColumn("SR", ("SR",)),
        RequiredColumn("AREA 34", ("AREA 34",)),
        RequiredColumn("TargetWorkItemId Level 3", ("TargetWorkItemId Level 3",)),
        RequiredColumn("TargetTitleLevel3", ("TargetTitleLevel3",)),
        RequiredColumn("TargetStateLevel 3", ("TargetStateLevel 3",)),
        RequiredColumn("TargetWorkItemIdLevel 4", ("TargetWorkItemIdLevel 4",)),
        RequiredColumn("TargetTitleLevel4", ("TargetTitleLevel4",)),
        RequiredColumn("TargetStateLevel 4", ("TargetStateLevel 4",)),
    ),
}


def normalize_column_key(value: Any) -> str:
    """Lowercase a column name and drop everything but letters and digits."""
    if value is None:
        return ""
    return _NON_ALNUM.sub("", str(value).strip().lower())


def required_column_labels(table_type: ExternalTableType) -> list[str]:
    return [column.label for column in REQUIRED_COLUMNS[table_type]]


@dataclass(frozen=True)
class ExternalFileRef:
    """Reference to an uploaded external file.

    Attributes:
        url: Direct URL of the object; bucket and key are inferred from its path.
        name: Display name of the upload.
        bucket_name: Bucket holding the object.
        object_name: Object key in the bucket.
        text: Legacy alias of `object_name`.
        source_type: Declared origin of the upload.
        size_bytes: Declared size, if the uploader reported one.
    """

    url: str = ""
    name: str = ""
    bucket_name: str = ""
    object_name: str = ""
    text: str = ""
    source_type: str = ""
    size_bytes: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> ExternalFileRef | None:
        """Build a reference from a camelCase or snake_case mapping."""
        if not data:
            return None

        def pick(*keys: str) -> str:
            for key in keys:
                value = data.get(key)
                if value not in (None, ""):
                    return str(value).strip()
            return ""

        size = data.get("sizeBytes", data.get("size_bytes"))
        return cls(
            url=pick("url"),
            name=pick("name"),
            bucket_name=pick("bucketName", "bucket_name"),
            object_name=pick("objectName", "object_name"),
            text=pick("text"),
            source_type=pick("sourceType", "source_type"),
            size_bytes=int(size) if size not in (None, "") else None,
        )

    @property
    def display_name(self) -> str:
        return self.name or self.object_name or self.text or self.url

    @property
    def extension(self) -> str:
        """Lowercase extension of the first candidate name that has one."""
        for candidate in (self.name, self.object_name, self.text, self.url):
            clean = candidate.split("?")[0].split("#")[0]
            match = _EXTENSION.search(clean)
            if match:
                return f".{match.group(1).lower()}"
        return ""


@dataclass
class ExternalTableValidationResult:
    """Outcome of validating one external table."""

    table_type: str
    source_name: str
    valid: bool
    header_row: str = ""
    matched_required_columns: int = 0
    total_required_columns: int = 0
    missing_required_columns: list[str] = field(default_factory=list)
    row_count: int = 0
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ExternalFileValidationError(Exception):
    """Raised when an external file is rejected.

    Attributes:
        message: Human-readable reason.
        details: Structured validation result.
        status_code: HTTP status used when surfaced by the API.
        code: Stable machine-readable error code.
    """

    status_code = 422
    code = "MEWP_EXTERNAL_FILE_VALIDATION_FAILED"

    def __init__(self, message: str, *, details: ExternalTableValidationResult) -> None:
        self.message = message
        self.details = details
        super().__init__(message)


class ExternalTableRow(Mapping[str, Any]):
    """One data row keyed by normalized column name."""

    def __init__(self, values: Mapping[str, Any]) -> None:
        self._values: dict[str, Any] = {}
        for name, value in values.items():
            key = normalize_column_key(name)
            if key and _is_blank(self._values.get(key)):
                self._values[key] = value

    def __getitem__(self, key: str) -> Any:
        return self._values[normalize_column_key(key)]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def get_text(self, *aliases: str) -> str:
        """Return the first non-blank cell among `aliases`, as stripped text."""
        for alias in aliases:
            value = self._values.get(normalize_column_key(alias))
            if not _is_blank(value):
                return _cell_text(value)
        return ""


@dataclass
class ExternalTable:
    """Rows loaded from an external file, with header detection metadata."""

    table_type: ExternalTableType
    source_name: str = ""
    header_row: str = ""
    matched_required_columns: int = 0
    total_required_columns: int = 0
    rows: list[ExternalTableRow] = field(default_factory=list)

    def validation_result(self) -> ExternalTableValidationResult:
        return ExternalTableValidationResult(
            table_type=self.table_type.value,
            source_name=self.source_name,
            valid=True,
            header_row=self.header_row,
            matched_required_columns=self.matched_required_columns,
            total_required_columns=self.total_required_columns,
            row_count=len(self.rows),
        )


@dataclass(frozen=True)
class _HeaderCheck:
    matched: int
    total: int
    missing: list[str]

    @property
    def is_valid(self) -> bool:
        return not self.missing


def _is_blank(value: Any) -> bool:
    return value is None or str(value).strip() == ""


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def check_headers(header: Sequence[Any], table_type: ExternalTableType) -> _HeaderCheck:
    """Match a header row against the required columns of a table type."""
    keys = {normalize_column_key(cell) for cell in header} - {""}
    required = REQUIRED_COLUMNS[table_type]
    missing = [
        column.label
        for column in required
        if not any(normalize_column_key(alias) in keys for alias in column.aliases)
    ]
    return _HeaderCheck(matched=len(required) - len(missing), total=len(required), missing=missing)


def rows_from_matrix(matrix: Sequence[Sequence[Any]], header_index: int) -> list[ExternalTableRow]:
    """Turn the rows below `header_index` into keyed rows, skipping blank ones."""
    if header_index >= len(matrix):
        return []
    header = [_cell_text(cell) for cell in matrix[header_index]]
    rows = []
    for raw in matrix[header_index + 1 :]:
        if all(_is_blank(cell) for cell in raw):
            continue
        values = {
            name: _cell_text(raw[index]) if index < len(raw) else ""
            for index, name in enumerate(header)
            if name
        }
        rows.append(ExternalTableRow(values))
    return rows


def read_matrix(data: bytes, extension: str) -> list[list[Any]]:
    """Read the first worksheet (or the CSV body) into a list of rows."""
    if extension == ".csv":
        text = data.decode("utf-8-sig")
        return [list(row) for row in csv.reader(io.StringIO(text))]

    workbook = load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        if not workbook.worksheets:
            return []
        sheet = workbook.worksheets[0]
        return [list(row) for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


class ExternalTableIngestor:
    """Loads external tables from the ingestion bucket.

    Args:
        storage: Object store client used to read uploads.
        settings: Ingestion rules (bucket, path marker, extensions, size).
    """

    def __init__(self, storage: ObjectStoreClient, settings: IngestionSettings) -> None:
        self._storage = storage
        self._settings = settings

    def _error(
        self,
        table_type: ExternalTableType,
        source_name: str,
        message: str,
        *,
        check: _HeaderCheck | None = None,
    ) -> ExternalFileValidationError:
        labels = required_column_labels(table_type)
        details = ExternalTableValidationResult(
            table_type=table_type.value,
            source_name=source_name,
            valid=False,
            matched_required_columns=check.matched if check else 0,
            total_required_columns=len(labels),
            missing_required_columns=check.missing if check else labels,
            message=message,
        )
        return ExternalFileValidationError(message, details=details)

    @staticmethod
    def locate(ref: ExternalFileRef) -> tuple[str, str]:
        """Resolve `(bucket, object key)`, inferring missing parts from the URL path."""
        inferred_bucket = ""
        inferred_key = ""
        if ref.url:
            segments = [part for part in unquote(urlparse(ref.url).path).split("/") if part]
            if len(segments) >= 2:
                inferred_bucket = segments[0]
                inferred_key = "/".join(segments[1:])
        bucket = ref.bucket_name or inferred_bucket
        key = ref.object_name or ref.text or inferred_key
        return bucket, key

    def check_isolation(self, ref: ExternalFileRef, bucket: str, key: str) -> str | None:
        """Return a rejection message when the file lies outside the ingestion area."""
        expected_type = self._settings.source_type
        if ref.source_type and ref.source_type.lower() != expected_type.lower():
            return f"Unsupported sourceType '{ref.source_type}'. Expected '{expected_type}'."
        if bucket and bucket != self._settings.bucket:
            return f"Invalid storage bucket '{bucket}'. Expected '{self._settings.bucket}'."
        marker = self._settings.path_marker.lower()
        if key and marker not in f"/{key.lower()}":
            return (
                f"Invalid object path '{key}'. "
                f"Expected '{self._settings.path_marker}' prefix segment."
            )
        return None

    def fetch_external_table(
        self,
        ref: ExternalFileRef | None,
        table_type: ExternalTableType,
    ) -> ExternalTable:
        """Download and validate an external table.

        A missing reference yields an empty table.

        Raises:
            ExternalFileValidationError: If the file is rejected for any reason.
        """
        total = len(REQUIRED_COLUMNS[table_type])
        if ref is None or not ref.display_name:
            return ExternalTable(table_type=table_type, total_required_columns=total)

        bucket, key = self.locate(ref)
        source_name = ref.display_name
        if not bucket or not key:
            raise self._error(
                table_type,
                source_name,
                f"Missing file URL/object reference for '{source_name or table_type.value}'",
            )

        rejection = self.check_isolation(ref, bucket, key)
        if rejection:
            raise self._error(table_type, source_name, rejection)

        extension = ref.extension
        if extension not in self._settings.allowed_extensions:
            allowed = ", ".join(self._settings.allowed_extensions)
            raise self._error(
                table_type,
                source_name,
                f"Unsupported file type '{extension or 'unknown'}'. Allowed: {allowed}",
            )

        max_bytes = self._settings.max_file_size_bytes
        too_large = f"File exceeds maximum allowed size ({max_bytes} bytes)."
        try:
            metadata = self._storage.get_metadata(bucket, key)
            if metadata.size_bytes > max_bytes:
                raise self._error(table_type, source_name, too_large)
            data = self._storage.download(bucket, key)
            if not data:
                raise self._error(table_type, source_name, "File is empty")
            if len(data) > max_bytes:
                raise self._error(table_type, source_name, too_large)
            matrix = read_matrix(data, extension)
        except ExternalFileValidationError:
            raise
        except (
            StorageError,
            InvalidFileException,
            zipfile.BadZipFile,
            csv.Error,
            KeyError,
            ValueError,
            OSError,
        ) as e:
            logger.warning("Could not load external source %s/%s: %s", bucket, key, e)
            raise self._error(
                table_type, source_name, f"Unable to load or parse the file: {e}"
            ) from e

        if not matrix:
            raise self._error(table_type, source_name, "No worksheet was found in the uploaded file")

        return self._select_header(matrix, table_type, source_name)

    def _select_header(
        self,
        matrix: Sequence[Sequence[Any]],
        table_type: ExternalTableType,
        source_name: str,
    ) -> ExternalTable:
        # Header is expected at A3; A1 is still accepted for older uploads.
        checks = []
        for label, index in ((HEADER_ROW_A3, 2), (HEADER_ROW_A1, 0)):
            header = matrix[index] if index < len(matrix) else []
            check = check_headers(header, table_type)
            if check.is_valid:
                logger.debug("External %s table %s: header at %s", table_type.value, source_name, label)
                return ExternalTable(
                    table_type=table_type,
                    source_name=source_name,
                    header_row=label,
                    matched_required_columns=check.matched,
                    total_required_columns=check.total,
                    rows=rows_from_matrix(matrix, index),
                )
            checks.append(check)

        best = checks[0] if checks[0].matched >= checks[1].matched else checks[1]
        raise self._error(
            table_type,
            source_name,
            f"Missing required columns: {', '.join(best.missing)}. "
            "Expected header row at A3 (fallback A1 was also checked).",
            check=best,
        )

    def validate(
        self, ref: ExternalFileRef | None, table_type: ExternalTableType
    ) -> ExternalTableValidationResult | None:
        """Validate one file, returning its result instead of raising.

        Returns:
            None when no file was given.
        """
        if ref is None or not ref.display_name:
            return None
        try:
            return self.fetch_external_table(ref, table_type).validation_result()
        except ExternalFileValidationError as e:
            return e.details


def table_from_rows(table_type: ExternalTableType, rows: Iterable[Mapping[str, Any]]) -> ExternalTable:
    """Wrap already-parsed rows as a table."""
    return ExternalTable(
        table_type=table_type,
        total_required_columns=len(REQUIRED_COLUMNS[table_type]),
        rows=[ExternalTableRow(row) for row in rows],
    )

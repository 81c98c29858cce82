# ABOUTME: CSV and spreadsheet parsing utilities
# ABOUTME: Turns uploaded file bytes into row records plus an inferred column schema

import csv
import io
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from csvapi.models.errors import ParseError, SchemaConflictError
from csvapi.models.schemas import ColumnSchema
from csvapi.utils.data_cleaners import sanitize_column_name
from csvapi.utils.type_detector import infer_column

NO_DATA_MESSAGE = "No data found in CSV"
SPREADSHEET_EXTENSIONS = (".xlsx", ".xlsm")


@dataclass(frozen=True)
class ParsedDataset:
    """Rows and inferred schema of one uploaded file."""
    rows: List[Dict[str, Any]]
    schema: List[ColumnSchema]
    row_count: int
    errors: List[str] = field(default_factory=list)

    @property
    def column_names(self) -> List[str]:
        return [column.name for column in self.schema]


def parse_upload(filename: Optional[str], file_bytes: bytes) -> ParsedDataset:
    """Parse an upload as a spreadsheet or CSV depending on its file extension."""
    if filename and filename.lower().endswith(SPREADSHEET_EXTENSIONS):
        return parse_workbook(file_bytes)
    return parse_csv(file_bytes)


def parse_csv(file_bytes: bytes) -> ParsedDataset:
    """
    Parse CSV bytes into records and an inferred schema.

    The first non-empty row holds the headers. Blank lines are skipped and a
    row that is missing trailing fields gets None for them. Rows with more
    fields than the header are reported in ``errors``.

    Args:
        file_bytes: Raw file contents (UTF-8, optional BOM)

    Returns:
        ParsedDataset; empty with an explanatory error when there are no data rows

    Raises:
        ParseError: The bytes are not decodable or not a well-formed CSV file
        SchemaConflictError: Two headers sanitize to the same column name
    """
    try:
        text = file_bytes.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise ParseError(f"File is not valid UTF-8 text (byte {e.start}): {e.reason}")

    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    headers = None
    raw_rows = []
    errors = []

    try:
        for row in reader:
            if not row:
                continue
            if headers is None:
                headers = row
                continue
            if len(row) > len(headers):
                errors.append(
                    f"Row {len(raw_rows) + 1} (line {reader.line_num}) has {len(row)} fields, "
                    f"expected {len(headers)}"
                )
                continue
            raw_rows.append(row)
    except csv.Error as e:
        raise ParseError(f"Malformed CSV at line {reader.line_num}: {e}", errors=[str(e)])

    if errors:
        return ParsedDataset(rows=[], schema=[], row_count=0, errors=errors)

    return build_dataset(headers or [], raw_rows)


def parse_workbook(file_bytes: bytes) -> ParsedDataset:
    """
    Parse the first worksheet of an Excel workbook.

    Uses the same header, blank-row and schema rules as parse_csv.
    """
    try:
        wb = openpyxl.load_workbook(io.BytesIO(file_bytes), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as e:
        raise ParseError(f"File is not a readable Excel workbook: {e}")

    try:
        if not wb.sheetnames:
            return ParsedDataset(rows=[], schema=[], row_count=0, errors=[NO_DATA_MESSAGE])

        sheet = wb[wb.sheetnames[0]]
        rows = iter(sheet.iter_rows(values_only=True))

        header_row = None
        for row in rows:
            if any(v is not None and v != "" for v in row):
                header_row = row
                break
        if header_row is None:
            return ParsedDataset(rows=[], schema=[], row_count=0, errors=[NO_DATA_MESSAGE])

        # Drop trailing columns without a header
        last_valid_idx = max(i for i, h in enumerate(header_row) if h is not None and h != "")
        headers = [
            str(h) if h is not None and h != "" else f"column_{i + 1}"
            for i, h in enumerate(header_row[:last_valid_idx + 1])
        ]

        raw_rows = []
        for row in rows:
            values = list(row[:len(headers)])
            if all(v is None or v == "" for v in values):
                continue
            raw_rows.append(values)
    finally:
        wb.close()

    return build_dataset(headers, raw_rows)


def build_dataset(headers: List[Any], raw_rows: List[List[Any]]) -> ParsedDataset:
    """Key rows by sanitized header names and infer one schema entry per column."""
    if not headers or not raw_rows:
        return ParsedDataset(rows=[], schema=[], row_count=0, errors=[NO_DATA_MESSAGE])

    column_names = [sanitize_column_name(h) for h in headers]
    check_unique_names(column_names, headers)

    rows = []
    for raw in raw_rows:
        record = {}
        for i, name in enumerate(column_names):
            value = raw[i] if i < len(raw) else None
            record[name] = None if value == "" else value
        rows.append(record)

    schema = [
        infer_column(name, [row[name] for row in rows])
        for name in column_names
    ]

    return ParsedDataset(rows=rows, schema=schema, row_count=len(rows))


def check_unique_names(column_names: List[str], source_names: Optional[List[Any]] = None) -> None:
    """Raise SchemaConflictError when column names are not unique."""
    seen = {}
    for i, name in enumerate(column_names):
        if name in seen:
            source = source_names or column_names
            raise SchemaConflictError(
                f"Columns '{source[seen[name]]}' and '{source[i]}' both map to column name '{name}'"
            )
        seen[name] = i

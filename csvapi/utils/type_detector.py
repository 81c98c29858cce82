# ABOUTME: Column type detection for uploaded data
# ABOUTME: Infers INTEGER, FLOAT, DATE, BOOLEAN or TEXT from sampled cell values

import math
from typing import Sequence

from csvapi.models.schemas import ColumnSchema, ColumnType
from csvapi.utils.data_cleaners import (
    INT64_MAX, INT64_MIN, INTEGER_PATTERN, NUMBER_PATTERN, is_empty, parse_boolean, parse_date
)

SAMPLE_SIZE = 100


def detect_column_type(values: Sequence) -> ColumnType:
    """
    Detect the semantic type of a column from its values.

    Only the first 100 non-empty values are inspected. Rules are applied in
    order and the first one that holds for every sample wins: DATE, BOOLEAN,
    INTEGER, FLOAT, then TEXT. Dates are checked before numbers so values
    such as "2024-01-01" never become numeric, and booleans before integers
    so a 0/1 column is BOOLEAN.

    Args:
        values: Raw cell values from the column (may include None and "")

    Returns:
        The detected ColumnType
    """
    samples = [v for v in values if not is_empty(v)][:SAMPLE_SIZE]

    if not samples:
        return ColumnType.TEXT

    if all(_is_date(v) for v in samples):
        return ColumnType.DATE

    if all(parse_boolean(v) is not None for v in samples):
        return ColumnType.BOOLEAN

    if all(_is_integer(v) for v in samples):
        return ColumnType.INTEGER

    if all(_is_number(v) for v in samples):
        return ColumnType.FLOAT

    return ColumnType.TEXT


def detect_nullable(values: Sequence) -> bool:
    """A column is nullable when any of its values is None or an empty string."""
    return any(is_empty(v) for v in values)


def infer_column(name: str, values: Sequence) -> ColumnSchema:
    """Build the schema entry for one column."""
    return ColumnSchema(
        name=name,
        type=detect_column_type(values),
        nullable=detect_nullable(values),
    )


def _is_date(value) -> bool:
    if isinstance(value, bool) or not value:
        return False
    return parse_date(value) is not None


def _is_integer(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, float):
        if not value.is_integer():
            return False
        value = int(value)
    if isinstance(value, int):
        return INT64_MIN <= value <= INT64_MAX
    if isinstance(value, str):
        # Date and decimal separators rule out the integer path
        if "-" in value or "/" in value or "." in value:
            return False
        trimmed = value.strip()
        if not INTEGER_PATTERN.fullmatch(trimmed) or str(int(trimmed)) != trimmed:
            return False
        return INT64_MIN <= int(trimmed) <= INT64_MAX
    return False


def _is_number(value) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return math.isfinite(value)
    if isinstance(value, str):
        trimmed = value.strip()
        if not NUMBER_PATTERN.fullmatch(trimmed):
            return False
        # Whole numbers too wide for INTEGER stay TEXT rather than lose digits as floats
        if INTEGER_PATTERN.fullmatch(trimmed) and not INT64_MIN <= int(trimmed) <= INT64_MAX:
            return False
        return math.isfinite(float(trimmed))
    return False

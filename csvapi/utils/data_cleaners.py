# ABOUTME: Data cleaning utilities for uploaded files
# ABOUTME: Sanitizes column names and slugs, and coerces raw cell values to column types

import math
import re
from datetime import date, datetime

from csvapi.models.schemas import ColumnType

DATE_FORMATS = (
    (re.compile(r"^\d{4}-\d{2}-\d{2}$", re.ASCII), "%Y-%m-%d"),  # YYYY-MM-DD
    (re.compile(r"^\d{2}/\d{2}/\d{4}$", re.ASCII), "%m/%d/%Y"),  # MM/DD/YYYY
    (re.compile(r"^\d{2}-\d{2}-\d{4}$", re.ASCII), "%m-%d-%Y"),  # MM-DD-YYYY
    (re.compile(r"^\d{4}/\d{2}/\d{2}$", re.ASCII), "%Y/%m/%d"),  # YYYY/MM/DD
)

# ASCII-only numeric literals; rejects "1_000", non-Latin digits and "nan"/"inf"
INTEGER_PATTERN = re.compile(r"[+-]?\d+", re.ASCII)
NUMBER_PATTERN = re.compile(r"[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?", re.ASCII)

# Signed 64-bit range of an INTEGER column
INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1

TRUE_TOKENS = {"true", "yes", "y", "1"}
FALSE_TOKENS = {"false", "no", "n", "0"}


def sanitize_column_name(name) -> str:
    """
    Normalize a header to a safe column identifier.

    Examples:
        "Full Name" -> "full_name"
        "Price ($)" -> "price"
        "__ID__" -> "id"
        "%%%" -> "column"
    """
    name = str(name).lower()

    # Anything outside the identifier alphabet becomes an underscore
    name = re.sub(r"[^a-z0-9_]", "_", name)

    # Replace multiple underscores with single
    name = re.sub(r"_+", "_", name)

    # Remove leading/trailing underscores
    name = name.strip("_")

    return name or "column"


def slugify(text: str) -> str:
    """
    Convert free text to a URL slug.

    Examples:
        "Sales Report 2024" -> "sales-report-2024"
        "  my_data.final " -> "my-datafinal"
    """
    text = text.lower().strip()
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"[\s_-]+", "-", text)
    return text.strip("-")


def parse_date(value) -> date | None:
    """Parse a value in one of the supported literal date patterns, or return None."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        return None

    value_str = value.strip()
    for pattern, fmt in DATE_FORMATS:
        if pattern.match(value_str):
            try:
                return datetime.strptime(value_str, fmt).date()
            except ValueError:
                return None
    return None


def parse_boolean(value) -> bool | None:
    """Map native booleans, 0/1 and yes/no style tokens to bool, or return None."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        if value == 1:
            return True
        if value == 0:
            return False
        return None
    if isinstance(value, str):
        token = value.strip().lower()
        if token in TRUE_TOKENS:
            return True
        if token in FALSE_TOKENS:
            return False
    return None


def is_empty(value) -> bool:
    return value is None or value == ""


def coerce_value(value, column_type: ColumnType):
    """
    Convert a raw cell value to the Python value stored for a column type.

    Empty cells become None. Raises ValueError when the value does not fit
    the column type.
    """
    if is_empty(value):
        return None

    if column_type == ColumnType.INTEGER:
        if isinstance(value, bool):
            raise ValueError(f"{value!r} is not an integer")
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"{value!r} is not an integer")
            value = int(value)
        if isinstance(value, str):
            if not INTEGER_PATTERN.fullmatch(value.strip()):
                raise ValueError(f"{value!r} is not an integer")
            value = int(value.strip())
        if not isinstance(value, int):
            raise ValueError(f"{value!r} is not an integer")
        if not INT64_MIN <= value <= INT64_MAX:
            raise ValueError(f"{value!r} is outside the 64-bit integer range")
        return value

    if column_type == ColumnType.FLOAT:
        if isinstance(value, bool):
            raise ValueError(f"{value!r} is not a number")
        if isinstance(value, str):
            if not NUMBER_PATTERN.fullmatch(value.strip()):
                raise ValueError(f"{value!r} is not a number")
            number = float(value.strip())
        elif isinstance(value, (int, float)):
            number = float(value)
        else:
            raise ValueError(f"{value!r} is not a number")
        if not math.isfinite(number):
            raise ValueError(f"{value!r} is not a finite number")
        return number

    if column_type == ColumnType.DATE:
        parsed = parse_date(value)
        if parsed is None:
            raise ValueError(f"{value!r} is not a supported date")
        return parsed

    if column_type == ColumnType.BOOLEAN:
        parsed = parse_boolean(value)
        if parsed is None:
            raise ValueError(f"{value!r} is not a boolean")
        return parsed

    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)

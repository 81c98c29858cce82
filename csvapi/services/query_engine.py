# ABOUTME: Dataset query engine
# ABOUTME: Parses query-string parameters into a QueryPlan and runs it against a dataset table

import math
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import and_, false, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from csvapi.models.errors import QueryError, QueryExecutionError
from csvapi.models.schemas import ColumnSchema, ColumnType
from csvapi.services.table_manager import ROW_ID_COLUMN, build_table
from csvapi.utils.data_cleaners import coerce_value

RESERVED_PARAMS = {"page", "limit", "sort", "order", "q", "fields"}
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
RANGE_SUFFIXES = {"_min": "min", "_max": "max"}
# Row offsets are bound as signed 64-bit integers
MAX_OFFSET = 2 ** 63 - 1


@dataclass(frozen=True)
class EqualityFilter:
    field: str
    value: Any


@dataclass(frozen=True)
class RangeFilter:
    """Inclusive bounds on one column; either bound may be absent."""
    field: str
    min: Any = None
    max: Any = None


FilterSpec = Union[EqualityFilter, RangeFilter]


@dataclass(frozen=True)
class QueryPlan:
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    sort_field: Optional[str] = None
    sort_order: str = "asc"
    search_term: Optional[str] = None
    filters: Tuple[FilterSpec, ...] = ()
    fields: Optional[Tuple[str, ...]] = None

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    @property
    def equality_filters(self) -> Dict[str, Any]:
        return {f.field: f.value for f in self.filters if isinstance(f, EqualityFilter)}

    @property
    def range_filters(self) -> Dict[str, Dict[str, Any]]:
        return {
            f.field: {k: v for k, v in (("min", f.min), ("max", f.max)) if v is not None}
            for f in self.filters if isinstance(f, RangeFilter)
        }

    def to_dict(self) -> Dict[str, Any]:
        """Resolved parameters in a JSON-friendly shape, as written to the usage log."""
        return {
            "page": self.page,
            "limit": self.limit,
            "sort": self.sort_field,
            "order": self.sort_order,
            "q": self.search_term,
            "fields": list(self.fields) if self.fields else None,
            "filters": {k: _jsonable(v) for k, v in self.equality_filters.items()},
            "ranges": {
                k: {bound: _jsonable(v) for bound, v in bounds.items()}
                for k, bounds in self.range_filters.items()
            },
        }


@dataclass(frozen=True)
class QueryResult:
    rows: List[Dict[str, Any]]
    total: int


def total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


def parse_query_params(
    params: Union[Mapping[str, str], Iterable[Tuple[str, str]]],
    schema: List[ColumnSchema]
) -> QueryPlan:
    """
    Build a QueryPlan from raw query-string parameters.

    Reserved names control pagination (page, limit), ordering (sort, order),
    free-text search (q) and projection (fields). Any other name that is a
    column is an equality filter; a name ending in _min or _max whose base
    is a column is an inclusive range bound on that column.

    Args:
        params: Query parameters as a mapping or as (name, value) pairs
        schema: Schema of the dataset being queried

    Returns:
        The QueryPlan

    Raises:
        QueryError: A parameter is malformed or names an unknown column
    """
    items = list(params.items()) if isinstance(params, Mapping) else list(params)
    raw = {}
    for key, value in items:
        raw[key] = value
    columns = {column.name: column for column in schema}

    page = _positive_int("page", raw.get("page"), DEFAULT_PAGE)
    limit = min(_positive_int("limit", raw.get("limit"), DEFAULT_LIMIT), MAX_LIMIT)
    if (page - 1) * limit > MAX_OFFSET:
        raise QueryError(f"Page {page} is out of range for limit {limit}")

    sort_field = (raw.get("sort") or "").strip() or None
    if sort_field is not None and sort_field not in columns:
        raise QueryError(
            f"Unknown sort column '{sort_field}'. Available columns: {', '.join(columns)}"
        )

    sort_order = (raw.get("order") or "asc").strip().lower()
    if sort_order not in ("asc", "desc"):
        raise QueryError('Order must be "asc" or "desc"')

    search_term = (raw.get("q") or "").strip() or None

    fields = None
    if raw.get("fields"):
        field_list = [f.strip() for f in raw["fields"].split(",") if f.strip()]
        unknown = [f for f in field_list if f not in columns]
        if unknown:
            raise QueryError(f"Unknown field(s) in fields: {', '.join(unknown)}")
        fields = tuple(dict.fromkeys(field_list)) or None

    equality = {}
    ranges = {}
    for key, value in items:
        if key in RESERVED_PARAMS:
            continue

        if key in columns:
            equality[key] = _coerce_filter_value(columns[key], key, value)
            continue

        suffix = key[-4:]
        base = key[:-4]
        if suffix in RANGE_SUFFIXES and base in columns:
            column = columns[base]
            if column.type == ColumnType.BOOLEAN:
                raise QueryError(f"Range filters are not supported on boolean column '{base}'")
            if value.strip() == "":
                continue
            bounds = ranges.setdefault(base, {})
            bounds[RANGE_SUFFIXES[suffix]] = _coerce_filter_value(column, key, value)
            continue

        raise QueryError(f"Unknown filter field '{key}'. Available columns: {', '.join(columns)}")

    filters = tuple(EqualityFilter(field=k, value=v) for k, v in equality.items()) + tuple(
        RangeFilter(field=k, min=b.get("min"), max=b.get("max")) for k, b in ranges.items()
    )

    return QueryPlan(
        page=page,
        limit=limit,
        sort_field=sort_field,
        sort_order=sort_order,
        search_term=search_term,
        filters=filters,
        fields=fields,
    )


def execute_query(db: Session, table_name: str, schema: List[ColumnSchema], plan: QueryPlan) -> QueryResult:
    """
    Run a QueryPlan against a dataset table.

    Filters and search are combined with AND, then rows are sorted (NULLs
    last, ties by row number) and paginated. The total counts the filtered
    rows before pagination.

    Raises:
        QueryExecutionError: The database failed while running the query
    """
    table = build_table(table_name, schema)

    conditions = []
    for spec in plan.filters:
        column = table.c[spec.field]
        if isinstance(spec, EqualityFilter):
            conditions.append(column.is_(None) if spec.value is None else column == spec.value)
        else:
            if spec.min is not None:
                conditions.append(column >= spec.min)
            if spec.max is not None:
                conditions.append(column <= spec.max)

    if plan.search_term:
        text_columns = [table.c[c.name] for c in schema if c.type == ColumnType.TEXT]
        if text_columns:
            pattern = f"%{_escape_like(plan.search_term)}%"
            conditions.append(or_(*[c.ilike(pattern, escape="\\") for c in text_columns]))
        else:
            conditions.append(false())

    where_clause = and_(*conditions) if conditions else None

    row_id = table.c[ROW_ID_COLUMN]
    if plan.sort_field:
        sort_column = table.c[plan.sort_field]
        direction = sort_column.desc() if plan.sort_order == "desc" else sort_column.asc()
        order_by = [direction.nulls_last(), row_id.asc()]
    else:
        order_by = [row_id.asc()]

    output_columns = list(plan.fields) if plan.fields else [c.name for c in schema]

    count_query = select(func.count()).select_from(table)
    data_query = select(*[table.c[name] for name in output_columns])
    if where_clause is not None:
        count_query = count_query.where(where_clause)
        data_query = data_query.where(where_clause)
    data_query = data_query.order_by(*order_by).limit(plan.limit).offset(plan.offset)

    try:
        total = db.execute(count_query).scalar_one()
        result = db.execute(data_query)
        rows = [dict(row) for row in result.mappings()]
    except (SQLAlchemyError, OverflowError) as e:
        raise QueryExecutionError(f"Query execution failed: {e.__class__.__name__}") from e

    return QueryResult(rows=rows, total=total)


def _positive_int(name: str, raw: Optional[str], default: int) -> int:
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        raise QueryError(f"{name.capitalize()} must be a positive integer")
    if value < 1:
        raise QueryError(f"{name.capitalize()} must be a positive integer")
    return value


def _coerce_filter_value(column: ColumnSchema, param: str, value: str):
    try:
        return coerce_value(value, column.type)
    except ValueError:
        raise QueryError(
            f"Invalid value '{value}' for {param}: column '{column.name}' is {column.type.value}"
        )


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _jsonable(value):
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value

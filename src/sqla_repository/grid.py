"""Server-side data grid and type-ahead lookup adapters.

``build_grid`` answers the request a DataTables-style grid sends::

    {
        "draw": 3,
        "columns": [
            {"data": "name", "name": ""},
            {"data": "country", "name": "country.name"},
            {"data": "roles", "name": "roles.name,roles.level"},
        ],
        "order": [{"column": 1, "dir": "desc"}],
        "start": 20,
        "length": 10,
        "search": {"value": "ali"},
    }

A column with a ``name`` is *virtual*: ``name`` lists one or more
comma-separated dotted paths, and the row's ``data`` key receives every value
found along them, joined with ``VIRTUAL_SEPARATOR``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Final

from .exceptions import ValidationError
from .query import DEFAULT_PER_PAGE
from .tools import split_path, unique


if TYPE_CHECKING:
    from .repository import Repository, Row


LOOKUP_PAGE_SIZE: Final[int] = 30
VIRTUAL_SEPARATOR: Final[str] = " / "


@dataclass(frozen=True, slots=True)
class GridColumn:
    data: str
    paths: tuple[str, ...]
    virtual: bool = False

    @classmethod
    def from_request(cls, column: Any) -> GridColumn:
        if not isinstance(column, Mapping) or not column.get("data"):
            raise ValidationError(f"Grid column must be a mapping with a 'data' key, got {column!r}")

        data = str(column["data"])
        paths = tuple(path.strip() for path in str(column.get("name") or "").split(",") if path.strip())
        if not paths:
            return cls(data=data, paths=(data,))

        return cls(data=data, paths=paths, virtual=True)


def parse_columns(request: Mapping[str, Any]) -> list[GridColumn]:
    columns = request.get("columns")
    if not columns or isinstance(columns, (str, bytes)) or not isinstance(columns, Iterable):
        raise ValidationError("Grid request needs a non-empty 'columns' list")

    return [GridColumn.from_request(column) for column in columns]


def collect_values(item: Any, path: str) -> list[Any]:
    """Every value found by walking *path* through *item*.

    Single-valued steps (a mapping) are followed, multi-valued steps (a list
    of mappings) fan out, and ``None`` ends the walk without a value. Lists
    found at the leaf are skipped.

    Raises:
        ValidationError: If a step lands on anything else, e.g. a scalar.
    """
    found: list[Any] = []
    _collect(item, path, found)

    return found


def _collect(item: Any, path: str, found: list[Any]) -> None:
    if item is None:
        return

    if isinstance(item, (list, tuple)):
        for element in item:
            _collect(element, path, found)
        return

    if not isinstance(item, Mapping):
        raise ValidationError(f"Cannot read {path!r} from {type(item).__name__} value {item!r}")

    head, rest = split_path(path)
    value = item.get(head)
    if rest is None:
        if not isinstance(value, (list, tuple)):
            found.append(value)
        return

    _collect(value, rest, found)


def virtual_value(row: Row, paths: Iterable[str]) -> str:
    values = [value for path in paths for value in collect_values(row, path)]

    return VIRTUAL_SEPARATOR.join("" if value is None else str(value) for value in values)


def _sort_key(value: Any) -> tuple[bool, Any]:
    return (value is None, "" if value is None else value)


def build_grid(repository: Repository, request: Mapping[str, Any], where: Any = None) -> dict[str, Any]:
    """Answer a grid request with one page of rows and the record counts.

    Every column path is both searched and returned. The order column's first
    path is the sort field; when it goes through a relation the page is also
    re-sorted in memory on the column's rendered value.

    Returns:
        The request echoed back with ``recordsTotal``, ``recordsFiltered``
        and ``data`` set.

    Raises:
        ValidationError: On a malformed request.
    """
    columns = parse_columns(request)
    fields = unique(path for column in columns for path in column.paths)

    orders = request.get("order") or [{}]
    order = orders[0] if isinstance(orders, (list, tuple)) else orders
    if not isinstance(order, Mapping):
        raise ValidationError(f"Grid order must be a mapping, got {order!r}")

    try:
        sort_column = columns[int(order.get("column", 0))]
        start = int(request.get("start") or 0)
        length = int(request.get("length") or DEFAULT_PER_PAGE)
    except (IndexError, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid grid paging or order: {e}") from e

    direction = str(order.get("dir") or "asc").lower()
    sort_field = sort_column.paths[0]
    search = request.get("search")
    term = search.get("value") if isinstance(search, Mapping) else search

    result = (
        repository.order_by(sort_field, direction)
        .limit(start, length if length >= 0 else None)
        .search(term, fields, fields, where)
    )

    virtual = [column for column in columns if column.virtual]
    rows = [
        {**row, **{column.data: virtual_value(row, column.paths) for column in virtual}}
        for row in result
    ]

    if "." in sort_field:
        rows.sort(key=lambda row: _sort_key(row.get(sort_column.data)), reverse=direction == "desc")

    total = repository.count()

    return {
        **request,
        "recordsTotal": total,
        "recordsFiltered": total if result.filtered is None else result.filtered,
        "data": rows,
    }


def build_lookup(repository: Repository, request: Mapping[str, Any]) -> dict[str, Any]:
    """Answer a type-ahead request: ``{"q": "ali", "field": "name", "page": 2}``.

    Returns:
        ``{"items": [{"id": ..., "text": ...}], "total_count": n}`` with
        ``LOOKUP_PAGE_SIZE`` items per page.
    """
    field = request.get("field")
    if not field or not isinstance(field, str):
        raise ValidationError("Lookup request needs a 'field'")

    term = request.get("q") or ""
    try:
        page = max(1, int(request.get("page") or 1))
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid lookup page {request.get('page')!r}") from e

    primary_key = repository.primary_key
    result = (
        repository.order_by(field)
        .limit((page - 1) * LOOKUP_PAGE_SIZE, LOOKUP_PAGE_SIZE)
        .search(term, [field], [primary_key, field])
    )

    items = [{"id": row[primary_key], "text": virtual_value(row, [field])} for row in result]
    total = result.filtered if result.filtered is not None else repository.count()

    return {"items": items, "total_count": total}

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time
from functools import lru_cache
from typing import Any

import sqlalchemy as sa

from .exceptions import ValidationError


_FIRST_CAP = re.compile(r"(.)([A-Z][a-z]+)")
_ALL_CAP = re.compile(r"([a-z0-9])([A-Z])")
_REPOSITORY_SUFFIX = "_repository"


@lru_cache(maxsize=1024)
def snake_case(name: str) -> str:
    """Convert ``CamelCase`` or ``mixedCase`` to ``snake_case``.

    Example:
        >>> snake_case("OrderLineRepository")
        'order_line_repository'
    """
    name = _FIRST_CAP.sub(r"\1_\2", name)

    return _ALL_CAP.sub(r"\1_\2", name).replace("-", "_").lower()


def pluralize(word: str) -> str:
    """Naive English plural, enough for table names."""
    if word.endswith("y") and word[-2:-1] not in ("a", "e", "i", "o", "u"):
        return f"{word[:-1]}ies"

    if word.endswith(("s", "x", "z", "ch", "sh")):
        return f"{word}es"

    return f"{word}s"


@lru_cache(maxsize=256)
def _infer_table_name(class_name: str) -> str:
    """Return the conventional table name for a repository class name (cached)."""
    name = snake_case(class_name)
    if name.endswith(_REPOSITORY_SUFFIX) and name != _REPOSITORY_SUFFIX.lstrip("_"):
        name = name[: -len(_REPOSITORY_SUFFIX)]

    return pluralize(name)


def infer_table_name(class_name: str) -> str:
    """Infer a table name from a repository class name.

    ``CustomerRepository`` becomes ``customers`` and ``CategoryRepository``
    becomes ``categories``.

    Args:
        class_name: Name of the repository class.

    Returns:
        The pluralised snake-case table name.
    """
    return _infer_table_name(class_name)


def default_foreign_key(table_name: str) -> str:
    """Conventional foreign key column pointing at *table_name*."""
    return f"{snake_case(table_name)}_id"


def split_path(path: str) -> tuple[str, str | None]:
    """Split ``"relation.rest.of.path"`` into ``("relation", "rest.of.path")``."""
    head, sep, rest = path.partition(".")

    return head, (rest if sep else None)


def qualify(table_name: str, column: str) -> str:
    """Prefix *column* with *table_name* unless it already carries a qualifier."""
    if column == "*" or "." in column:
        return column

    return f"{table_name}.{column}"


def unique(items: Iterable[Any]) -> list[Any]:
    """De-duplicate *items* preserving their first-seen order.

    Unhashable items are compared by equality.
    """
    out: list[Any] = []
    seen: set[Any] = set()
    for item in items:
        try:
            if item in seen:
                continue
            seen.add(item)
        except TypeError:
            if item in out:
                continue
        out.append(item)

    return out


def pluck(rows: Iterable[Any], key: str) -> list[Any]:
    """Distinct, non-null values of *key* across *rows*, in row order."""
    return unique(value for row in rows if (value := row.get(key)) is not None)


def parse_date(value: Any, *formats: str) -> datetime:
    """Coerce *value* to a ``datetime``.

    Accepts ``date``/``datetime`` objects, ISO 8601 strings and strings in any
    of *formats*. Slashes are read as dashes, so ``"05/01/2024"`` matches
    ``"%d-%m-%Y"``.

    Raises:
        ValidationError: If a string matches none of the accepted formats.
    """
    if isinstance(value, datetime):
        return value

    if isinstance(value, date):
        return datetime.combine(value, time())

    text = str(value).strip().replace("/", "-")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass

    for fmt in (*formats, "%d-%m-%Y", "%d-%m-%Y %H:%M:%S"):
        try:
            return datetime.strptime(text, fmt.replace("/", "-"))
        except ValueError:
            continue

    raise ValidationError(f"Cannot read {value!r} as a date")


def get_table_names(query: sa.Select[Any]) -> Sequence[str]:
    """Extract all table and alias names from a select's FROM clause.

    Tables are reported by name and aliases by their alias name, so a target
    table joined through two different relations is listed twice under two
    names.

    Args:
        query: SQLAlchemy select statement.

    Returns:
        Names in the order they were found.
    """
    seen: set[str] = set()
    out: list[str] = []

    def add(name: str | None) -> None:
        if name and name not in seen:
            seen.add(name)
            out.append(name)

    for root in query.get_final_froms():
        stack: list[Any] = [root]
        while stack:
            node = stack.pop()

            if isinstance(node, sa.Table):
                add(node.name)
                continue

            if isinstance(node, sa.Join):
                stack.extend([node.right, node.left])
                continue

            add(getattr(node, "name", None))

    return out


def cache_clear() -> None:
    """Clear the naming caches (primarily for tests)."""
    snake_case.cache_clear()
    _infer_table_name.cache_clear()

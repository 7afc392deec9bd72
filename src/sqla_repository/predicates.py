from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any, Final, NamedTuple

import sqlalchemy as sa

from .exceptions import ValidationError
from .joins import set_join
from .tools import qualify


if TYPE_CHECKING:
    from .query import Query
    from .repository import Repository


class Predicate(NamedTuple):
    """A single ``field operator value`` condition.

    ``field`` may be dot-qualified (``"orders.status"``) to filter on a
    related entity's column.
    """

    field: str
    operator: str
    value: Any

    @property
    def is_relation_path(self) -> bool:
        return "." in self.field


def _in(column: sa.ColumnElement[Any], value: Any) -> sa.ColumnElement[bool]:
    return column.in_(_as_sequence(value))


def _not_in(column: sa.ColumnElement[Any], value: Any) -> sa.ColumnElement[bool]:
    return column.not_in(_as_sequence(value))


OPERATORS: Final[dict[str, Callable[[sa.ColumnElement[Any], Any], sa.ColumnElement[bool]]]] = {
    "=": lambda c, v: c.is_(None) if v is None else c == v,
    "==": lambda c, v: c.is_(None) if v is None else c == v,
    "!=": lambda c, v: c.is_not(None) if v is None else c != v,
    "<>": lambda c, v: c.is_not(None) if v is None else c != v,
    "<": lambda c, v: c < v,
    "<=": lambda c, v: c <= v,
    ">": lambda c, v: c > v,
    ">=": lambda c, v: c >= v,
    "like": lambda c, v: c.like(v),
    "not like": lambda c, v: c.not_like(v),
    "ilike": lambda c, v: c.ilike(v),
    "in": _in,
    "not in": _not_in,
    "is": lambda c, v: c.is_(v),
    "is not": lambda c, v: c.is_not(v),
}


def _as_sequence(value: Any) -> Sequence[Any]:
    if isinstance(value, (str, bytes)) or not isinstance(value, (Sequence, set, frozenset)):
        raise ValidationError(f"'in' operators expect a sequence of values, got {value!r}")

    return list(value)


def _normalize_operator(operator: Any) -> str:
    if not isinstance(operator, str):
        raise ValidationError(f"Operator must be a string, got {operator!r}")

    op = " ".join(operator.lower().split())
    if op not in OPERATORS:
        raise ValidationError(f"Unsupported operator {operator!r}. Supported: {sorted(OPERATORS)}")

    return op


def _from_triple(triple: Any) -> Predicate:
    if isinstance(triple, Predicate):
        return triple._replace(operator=_normalize_operator(triple.operator))

    if isinstance(triple, (str, bytes)) or not isinstance(triple, Sequence) or len(triple) != 3:  # noqa: PLR2004
        raise ValidationError(
            f"A condition must be a (field, operator, value) triple, got {triple!r}"
        )

    field, operator, value = triple
    if not isinstance(field, str) or not field:
        raise ValidationError(f"Condition field must be a non-empty string, got {field!r}")

    return Predicate(field, _normalize_operator(operator), value)


def normalize(where: Any) -> tuple[Predicate, ...]:
    """Turn any accepted condition shape into a tuple of ``Predicate``.

    Accepted shapes:

    * ``None`` or empty -> no predicates;
    * ``{"field": value}`` -> equality;
    * ``{"any key": ("field", "operator", value)}`` -> explicit triple;
    * ``[("field", "operator", value), Predicate(...), ...]``.

    Raises:
        ValidationError: On any other shape or an unsupported operator.
    """
    if not where:
        return ()

    if isinstance(where, Predicate):
        return (_from_triple(where),)

    if isinstance(where, Mapping):
        out: list[Predicate] = []
        for key, value in where.items():
            if isinstance(value, (Predicate, tuple, list)):
                out.append(_from_triple(value))
                continue
            if not isinstance(key, str) or not key:
                raise ValidationError(f"Condition field must be a non-empty string, got {key!r}")
            out.append(Predicate(key, "=", value))
        return tuple(out)

    if isinstance(where, (str, bytes)) or not isinstance(where, Sequence):
        raise ValidationError(f"Unsupported condition container {type(where).__name__}")

    return tuple(_from_triple(item) for item in where)


def has_relation_path(predicates: Sequence[Predicate]) -> bool:
    """Whether any predicate filters on a dot-qualified field."""
    return any(p.is_relation_path for p in predicates)


def to_clause(column: sa.ColumnElement[Any], predicate: Predicate) -> sa.ColumnElement[bool]:
    """Compile *predicate* against an already resolved *column*."""
    return OPERATORS[predicate.operator](column, predicate.value)


def apply_joined(repository: Repository, query: Query, predicates: Sequence[Predicate]) -> Query:
    """Apply *predicates* to *query* directly, joining relation paths as needed.

    The result may hold several rows per entity when a path crosses a HasMany
    or BelongsToMany relation; callers group or count distinct keys.
    """
    for predicate in predicates:
        query, ref = set_join(repository, query, predicate.field)
        query = query.where_clause(to_clause(query.column(ref), predicate))

    return query


def compile_where(
    repository: Repository,
    query: Query,
    predicates: Sequence[Predicate],
    *,
    only_primary_key: bool = False,
) -> Query:
    """Restrict *query* to the rows matching *predicates*.

    Without relation paths the predicates become plain conditions on the base
    table. Otherwise a side query on the same table joins every path, applies
    every predicate, and is grouped by primary key; its keys are fetched and
    folded back into *query* as ``pk IN (...)``, so the result holds exactly one
    row per matching entity. When the caller only selects the primary key, the
    grouped side query is returned as is instead.
    """
    if not predicates:
        return query

    table = repository.table_name
    if not has_relation_path(predicates):
        return query.where_clause(
            *(to_clause(query.column(qualify(table, p.field)), p) for p in predicates)
        )

    primary_key = qualify(table, repository.primary_key)
    side = apply_joined(repository, repository.new_query(), predicates).group_by(primary_key)

    if only_primary_key and not query.joins:
        return side.where_clause(*query.conditions).or_where_clause(*query.or_conditions)

    return query.where_in(primary_key, side.pluck(primary_key))

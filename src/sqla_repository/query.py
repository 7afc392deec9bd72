from __future__ import annotations

import math
import warnings
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Final, Generic, TypeVar, Union

import sqlalchemy as sa

from .datastructures import frozendict
from .exceptions import ConfigurationError
from .predicates import Predicate, normalize, to_clause
from .tools import get_table_names, unique


if TYPE_CHECKING:
    from .store import Store


Row = dict[str, Any]
T = TypeVar("T")

DEFAULT_PER_PAGE: Final[int] = 15
_DIRECTIONS: Final[frozenset[str]] = frozenset({"asc", "desc"})

ColumnRef = Union[str, sa.ColumnElement[Any]]


def normalize_direction(direction: str | None) -> str:
    """Lower-case *direction*, falling back to ``asc`` with a warning on unknown values."""
    value = (direction or "asc").lower()
    if value not in _DIRECTIONS:
        warnings.warn(f"Unknown sort direction {direction!r}. Using 'asc'.", stacklevel=3)
        return "asc"

    return value


@dataclass(frozen=True)
class Paginator(Generic[T]):
    """A page of results together with the totals needed to render pagination."""

    items: Sequence[T]
    total: int
    per_page: int
    current_page: int

    @property
    def last_page(self) -> int:
        return max(1, math.ceil(self.total / self.per_page)) if self.per_page else 1

    @property
    def has_more_pages(self) -> bool:
        return self.current_page < self.last_page

    def __iter__(self) -> Any:
        return iter(self.items)

    def __len__(self) -> int:
        return len(self.items)


@dataclass(frozen=True, slots=True, eq=False)
class _Join:
    alias: str
    target: sa.FromClause
    onclause: sa.ColumnElement[bool]


@dataclass(frozen=True, slots=True, eq=False)
class Query:
    """Generative SELECT/DML builder over one base table.

    Every method returns a new ``Query``; the receiver is never modified, so a
    partially built query can be shared between a data query and a count
    query without one leaking into the other.

    Column references are strings: ``"name"`` (base table), ``"users.name"``
    or ``"<alias>.name"`` for a joined alias. A reference that does not match
    any known table or column is sent to the database verbatim.

    Example::

        rows = (
            store.query("users")
            .left_join("country", store.table("countries"), "country.id", "users.country_id")
            .where("country.code", "=", "FR")
            .order_by("users.name")
            .limit(10)
            .get(["users.id", "users.name"])
        )
    """

    store: Store
    table: sa.Table
    joins: tuple[_Join, ...] = ()
    aliases: frozendict[str, sa.FromClause] = field(default_factory=frozendict)
    conditions: tuple[sa.ColumnElement[bool], ...] = ()
    or_conditions: tuple[sa.ColumnElement[bool], ...] = ()
    grouping: tuple[sa.ColumnElement[Any], ...] = ()
    ordering: tuple[sa.ColumnElement[Any], ...] = ()
    skip: int | None = None
    take: int | None = None

    # -- column resolution -------------------------------------------------

    def column(self, ref: ColumnRef) -> sa.ColumnElement[Any]:
        """Resolve a column reference against the base table and joined aliases."""
        if not isinstance(ref, str):
            return ref

        owner, sep, name = ref.rpartition(".")
        if not sep:
            return self.table.c[name] if name in self.table.c else sa.literal_column(name)

        if owner == self.table.name and name in self.table.c:
            return self.table.c[name]

        if (source := self.aliases.get(owner)) is not None and name in source.c:
            return source.c[name]

        return sa.literal_column(ref)

    def _columns(self, columns: Iterable[ColumnRef] | None) -> list[Any]:
        refs = list(columns or ())
        if not refs or any(isinstance(ref, str) and ref == "*" for ref in refs):
            return [self.table]

        return unique(self.column(ref) for ref in refs)

    # -- building ----------------------------------------------------------

    def where(self, ref: ColumnRef, operator: str = "=", value: Any = None) -> Query:
        """Add ``ref operator value`` to the conjunctive WHERE clause."""
        (predicate,) = normalize([Predicate(str(ref), operator, value)])
        return self.where_clause(to_clause(self.column(ref), predicate))

    def where_clause(self, *clauses: sa.ColumnElement[bool]) -> Query:
        """Add already compiled conditions to the conjunctive WHERE clause."""
        return replace(self, conditions=(*self.conditions, *clauses))

    def where_in(self, ref: ColumnRef, values: Iterable[Any]) -> Query:
        return self.where_clause(self.column(ref).in_(list(values)))

    def where_not_in(self, ref: ColumnRef, values: Iterable[Any]) -> Query:
        return self.where_clause(self.column(ref).not_in(list(values)))

    def or_where_clause(self, *clauses: sa.ColumnElement[bool]) -> Query:
        """Add conditions to the OR group.

        The OR group is rendered as one parenthesised disjunction ANDed with
        the other conditions.
        """
        return replace(self, or_conditions=(*self.or_conditions, *clauses))

    def or_where(self, ref: ColumnRef, operator: str = "=", value: Any = None) -> Query:
        (predicate,) = normalize([Predicate(str(ref), operator, value)])
        return self.or_where_clause(to_clause(self.column(ref), predicate))

    def has_join(self, alias: str) -> bool:
        """Whether a table or alias called *alias* is already joined."""
        return alias in self.aliases

    def left_join(
        self,
        alias: str,
        target: sa.FromClause,
        left: ColumnRef,
        right: ColumnRef,
        where: Any = None,
    ) -> Query:
        """``LEFT JOIN target AS alias ON left = right``; a no-op if *alias* is joined.

        *target* is aliased to *alias* unless its name already is *alias*.
        *left* and *right* may reference *alias* itself. Conditions in *where*
        (any shape :func:`~sqla_repository.predicates.normalize` accepts) name
        columns of *target* and are ANDed into the ON clause.

        Raises:
            ConfigurationError: If *alias* is the name of the base table.
        """
        if alias == self.table.name:
            raise ConfigurationError(f"Cannot join {alias!r} under the name of the base table")

        if self.has_join(alias):
            return self

        source = target if getattr(target, "name", None) == alias else target.alias(alias)
        aliases = self.aliases.set(alias, source)
        joined = replace(self, aliases=aliases)
        onclause = sa.and_(
            joined.column(left) == joined.column(right),
            *(to_clause(joined.column(f"{alias}.{p.field}"), p) for p in normalize(where)),
        )

        return replace(
            self,
            joins=(*self.joins, _Join(alias, source, onclause)),
            aliases=aliases,
        )

    def group_by(self, *refs: ColumnRef) -> Query:
        """Add GROUP BY columns; a column already grouped on is not repeated."""
        grouping = unique((*self.grouping, *(self.column(ref) for ref in refs)))

        return replace(self, grouping=tuple(grouping))

    def order_by(self, ref: ColumnRef, direction: str | None = "asc") -> Query:
        column = self.column(ref)
        clause = column.desc() if normalize_direction(direction) == "desc" else column.asc()

        return replace(self, ordering=(*self.ordering, clause))

    def order_by_clause(self, *clauses: sa.ColumnElement[Any]) -> Query:
        return replace(self, ordering=(*self.ordering, *clauses))

    def offset(self, offset: int | None) -> Query:
        return replace(self, skip=offset)

    def limit(self, limit: int | None) -> Query:
        return replace(self, take=limit)

    def unordered(self) -> Query:
        """Drop ordering and the page window (used for counts and id lookups)."""
        return replace(self, ordering=(), skip=None, take=None)

    def from_clause(self) -> sa.FromClause:
        """The base table outer-joined with every joined alias, in join order."""
        source: sa.FromClause = self.table
        for join in self.joins:
            source = source.outerjoin(join.target, join.onclause)

        return source

    def _filter(self, statement: Any) -> Any:
        if self.conditions:
            statement = statement.where(*self.conditions)
        if self.or_conditions:
            statement = statement.where(sa.or_(*self.or_conditions))

        return statement

    def select(self, columns: Iterable[ColumnRef] | None = ("*",)) -> sa.Select[Any]:
        """Compile to a ``Select`` returning *columns*."""
        statement = self._filter(sa.select(*self._columns(columns)).select_from(self.from_clause()))
        if self.grouping:
            statement = statement.group_by(*self.grouping)
        if self.ordering:
            statement = statement.order_by(*self.ordering)
        if self.skip:
            statement = statement.offset(self.skip)
        if self.take is not None:
            statement = statement.limit(self.take)

        return statement

    def tables(self) -> Sequence[str]:
        """Names of every table and alias the compiled SELECT reads from."""
        return get_table_names(self.select())

    # -- execution ---------------------------------------------------------

    def get(self, columns: Iterable[ColumnRef] | None = ("*",)) -> list[Row]:
        return self.store.rows(self.select(columns))

    def first(self, columns: Iterable[ColumnRef] | None = ("*",)) -> Row | None:
        rows = self.limit(1).get(columns)

        return rows[0] if rows else None

    def pluck(self, ref: ColumnRef) -> list[Any]:
        """Distinct values of one column, in result order."""
        column = self.column(ref)
        return unique(row[column.key] for row in self.store.rows(self.select([column])))

    def count(self) -> int:
        """Number of rows matched, ignoring ordering and the page window."""
        query = self.unordered()
        if query.grouping:
            subquery = query.select(query.grouping).subquery()
            statement = sa.select(sa.func.count()).select_from(subquery)
        else:
            statement = query._filter(sa.select(sa.func.count()).select_from(query.from_clause()))

        return int(self.store.scalar(statement) or 0)

    def count_distinct(self, ref: ColumnRef) -> int:
        """``COUNT(DISTINCT ref)`` over the joined, filtered rows."""
        query = self.unordered()
        statement = query._filter(
            sa.select(sa.func.count(sa.distinct(query.column(ref)))).select_from(query.from_clause())
        )

        return int(self.store.scalar(statement) or 0)

    def paginate(
        self,
        per_page: int = DEFAULT_PER_PAGE,
        page: int = 1,
        columns: Iterable[ColumnRef] | None = ("*",),
    ) -> Paginator[Row]:
        page = max(1, int(page))
        items = self.offset((page - 1) * per_page).limit(per_page).get(columns)

        return Paginator(items=items, total=self.count(), per_page=per_page, current_page=page)

    def insert(self, rows: Sequence[Mapping[str, Any]]) -> int:
        """Insert several rows in one statement; returns the number of rows sent."""
        if not rows:
            return 0

        self.store.execute(sa.insert(self.table), [dict(row) for row in rows])
        return len(rows)

    def insert_get_id(self, values: Mapping[str, Any]) -> Any:
        return self.store.inserted_id(sa.insert(self.table).values(dict(values)))

    def update(self, values: Mapping[str, Any]) -> int:
        """UPDATE the matched rows; an empty *values* runs nothing and returns 0."""
        if not values:
            return 0

        return self.store.execute(self._filter(sa.update(self.table)).values(dict(values)))

    def delete(self) -> int:
        return self.store.execute(self._filter(sa.delete(self.table)))

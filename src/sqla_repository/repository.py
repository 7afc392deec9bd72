from __future__ import annotations

import copy
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar, Final

import sqlalchemy as sa

from .columns import ComputedAttribute, LoadContext, ViewIntrospector, collect_computed, resolve_columns
from .datastructures import frozendict
from .exceptions import ConfigurationError, ValidationError
from .grid import build_grid, build_lookup
from .joins import set_join
from .loading import load_relations
from .predicates import compile_where, normalize
from .query import DEFAULT_PER_PAGE, Paginator, Query, normalize_direction
from .registry import Registry, resolve_target
from .relations import BelongsToMany, Relation, bind, validate
from .tools import infer_table_name, parse_date, pluck, qualify, unique


if TYPE_CHECKING:
    from .store import Store


Row = dict[str, Any]

DEFAULT_DATE_FORMAT: Final[str] = "%Y-%m-%d"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchResult:
    """Rows returned by :meth:`Repository.search`.

    ``filtered`` is the number of distinct entities matching the search term
    and extra conditions, regardless of the page window. It is ``None`` when
    nothing was filtered, in which case callers use :meth:`Repository.count`.
    """

    rows: list[Row]
    filtered: int | None = None

    def __iter__(self) -> Iterator[Row]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def __getitem__(self, index: int) -> Row:
        return self.rows[index]


class Repository:
    """Relation-aware access to one table.

    Subclasses describe the table and its relations; every read returns plain
    ``dict`` rows with the requested relations attached::

        class CustomerRepository(Repository):
            fillable = ("name", "email", "country_id")
            dates = ("birthday",)

            def relations(self):
                return {
                    "country": BelongsTo(CountryRepository),
                    "orders": HasMany("OrderRepository"),
                }

        customers = CustomerRepository(store)
        customers.order_by("name").limit(0, 20).all(["name", "country.name", "orders"])

    ``__tablename__`` defaults to the class name without its ``Repository``
    suffix, snake-cased and pluralised (``customers`` above).

    An instance only holds configuration: ``order_by``, ``limit`` and
    ``fill_from_view`` return configured copies, and everything a call
    resolves lives in a per-call ``LoadContext``.
    """

    __tablename__: ClassVar[str] = ""
    __abstract__: ClassVar[bool] = False

    primary_key: ClassVar[str] = "id"
    fillable: ClassVar[tuple[str, ...]] = ()
    dates: ClassVar[tuple[str, ...]] = ()
    date_format_get: ClassVar[str] = DEFAULT_DATE_FORMAT
    date_format_store: ClassVar[str] = DEFAULT_DATE_FORMAT

    timestamps: ClassVar[bool] = False
    CREATED_AT: ClassVar[str] = "created_at"
    UPDATED_AT: ClassVar[str] = "updated_at"
    clock: ClassVar[Callable[[], datetime]] = staticmethod(datetime.now)

    view_introspector: ClassVar[ViewIntrospector | None] = None

    _computed: ClassVar[frozendict[str, ComputedAttribute]] = frozendict()

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls._computed = collect_computed(cls)
        if cls.__dict__.get("__abstract__", False):
            return

        if not cls.__tablename__:
            cls.__tablename__ = infer_table_name(cls.__name__)
        Registry().register(cls)

    def __init__(self, store: Store) -> None:
        self.store = store
        self._ordering: tuple[str, str] | None = None
        self._window: tuple[int, int | None] | None = None
        self._view_columns: tuple[str, ...] = ()
        self._related: dict[str, Repository] = {}
        self._bound: dict[str, Relation] = {}

        # reflects the table when the store was built without its metadata
        columns = {self.primary_key, *self.fillable, *self.column_names}
        self._relations = validate(self.relations(), columns, type(self).__name__)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.table_name}>"

    # -- declaration -------------------------------------------------------

    def relations(self) -> Mapping[str, Relation]:
        """Relation name to declaration; evaluated once per instance."""
        return {}

    def relation(self, name: str) -> Relation | None:
        """The relation called *name* with its conventional keys filled in, or ``None``."""
        if (bound := self._bound.get(name)) is not None:
            return bound

        if (relation := self._relations.get(name)) is None:
            return None

        bound = bind(relation, self, self.related(name))
        self._bound[name] = bound

        return bound

    def related(self, name: str) -> Repository:
        """The target repository of relation *name*, built once on the same store."""
        if (target := self._related.get(name)) is not None:
            return target

        if (relation := self._relations.get(name)) is None:
            raise ConfigurationError(f"{self!r} has no relation {name!r}")

        target = resolve_target(relation.target)(self.store)
        self._related[name] = target

        return target

    @property
    def table_name(self) -> str:
        return type(self).__tablename__

    @property
    def table(self) -> sa.Table:
        return self.store.table(self.table_name)

    @property
    def column_names(self) -> frozenset[str]:
        return frozenset(self.table.c.keys())

    @property
    def computed_attributes(self) -> frozendict[str, ComputedAttribute]:
        return self._computed

    def visible_columns(self) -> tuple[str, ...]:
        """Columns ``"*"`` stands for: the fillable ones, plus timestamps when enabled."""
        if self.timestamps:
            return (*self.fillable, self.CREATED_AT, self.UPDATED_AT)

        return self.fillable

    def new_query(self) -> Query:
        return self.store.query(self.table_name)

    # -- configured copies -------------------------------------------------

    def _copy(self, **changes: Any) -> Repository:
        clone = copy.copy(self)
        for key, value in changes.items():
            setattr(clone, key, value)

        return clone

    def order_by(self, field: str, direction: str = "asc") -> Repository:
        """Return a copy sorting on *field*, which may be relation-qualified."""
        return self._copy(_ordering=(field, normalize_direction(direction)))

    def limit(self, offset: int, length: int | None) -> Repository:
        """Return a copy reading ``length`` rows from ``offset``; ``None`` reads to the end."""
        return self._copy(_window=(max(0, int(offset)), None if length is None else int(length)))

    def fill_from_view(self, view: str, introspector: ViewIntrospector | None = None) -> Repository:
        """Return a copy selecting the fillable attributes and relations *view* mentions.

        Raises:
            ConfigurationError: If no introspector is given or configured.
        """
        introspector = introspector or self.view_introspector
        if introspector is None:
            raise ConfigurationError(f"{self!r} has no view introspector")

        names = introspector.referenced_names(view, [*self.fillable, *self._relations])

        return self._copy(_view_columns=tuple(names))

    # -- reading -----------------------------------------------------------

    def _resolve(self, columns: Iterable[str] | None) -> LoadContext:
        return resolve_columns(self, columns, self._view_columns)

    def _qualified_key(self) -> str:
        return qualify(self.table_name, self.primary_key)

    def _sorts_on_relation(self) -> bool:
        return self._ordering is not None and "." in self._ordering[0]

    def _windowed(self, query: Query) -> Query:
        if self._window is None:
            return query

        offset, length = self._window

        return query.offset(offset).limit(length)

    def _ordered(self, query: Query) -> Query:
        if self._ordering is not None:
            field, direction = self._ordering
            query = query.order_by(qualify(self.table_name, field), direction)

        return self._windowed(query)

    def _key_query(self, query: Query) -> Query:
        """One row per entity: *query* grouped by primary key, sorted and windowed.

        A relation-qualified sort orders each group by the smallest (ascending)
        or largest (descending) value found through the relation.
        """
        query = query.group_by(self._qualified_key())
        if self._sorts_on_relation():
            assert self._ordering is not None
            field, direction = self._ordering
            query, ref = set_join(self, query, field)
            if direction == "desc":
                query = query.order_by_clause(sa.func.max(query.column(ref)).desc())
            else:
                query = query.order_by_clause(sa.func.min(query.column(ref)).asc())
            return self._windowed(query)

        return self._ordered(query)

    def _fetch(self, query: Query, context: LoadContext) -> list[Row]:
        """Run the base query of a read call.

        Joined queries are first reduced to an ordered list of primary keys so
        a multi-valued join can neither duplicate rows nor shift the window.
        """
        if not query.joins and not self._sorts_on_relation():
            return self._ordered(query).get(context.columns)

        primary_key = self._qualified_key()
        keys_query = self._key_query(query)
        if context.columns == (primary_key,):
            return keys_query.get(context.columns)

        keys = keys_query.pluck(primary_key)
        if not keys:
            return []

        rows = self.new_query().where_in(primary_key, keys).get(context.columns)
        index = {row[self.primary_key]: row for row in rows}

        return [index[key] for key in keys if key in index]

    def _format_dates(self, row: Row) -> None:
        for name in self.dates:
            if row.get(name) is not None:
                row[name] = parse_date(row[name], self.date_format_get).strftime(self.date_format_get)

    def _respond(self, rows: list[Row], context: LoadContext) -> list[Row]:
        rows = load_relations(self, rows, context)
        for row in rows:
            self._format_dates(row)
            for name in context.computed:
                row[name] = self._computed[name].function(self, row)

        return rows

    def all(self, columns: Iterable[str] | None = ("*",)) -> list[Row]:
        context = self._resolve(columns)

        return self._respond(self._fetch(self.new_query(), context), context)

    def first(self, columns: Iterable[str] | None = ("*",)) -> Row | None:
        offset = self._window[0] if self._window else 0
        rows = self.limit(offset, 1).all(columns)

        return rows[0] if rows else None

    def find(self, id: Any, columns: Iterable[str] | None = ("*",)) -> Row | None:
        """Fetch the row whose primary key is *id*, or ``None``."""
        context = self._resolve(columns)
        query = self.new_query().where(self._qualified_key(), "=", id)
        rows = self._respond(self._fetch(query, context), context)

        return rows[0] if rows else None

    def find_by_field(self, field: str, value: Any, columns: Iterable[str] | None = ("*",)) -> list[Row]:
        return self.find_where({field: value}, columns)

    def find_where(self, where: Any, columns: Iterable[str] | None = ("*",)) -> list[Row]:
        """Fetch the rows matching *where*.

        *where* takes any shape :func:`~sqla_repository.predicates.normalize`
        accepts; fields may go through relations (``"orders.status"``) and
        still yield one row per entity.
        """
        context = self._resolve(columns)
        query = self._where(self.new_query(), where, context)

        return self._respond(self._fetch(query, context), context)

    def _where(self, query: Query, where: Any, context: LoadContext) -> Query:
        return compile_where(
            self,
            query,
            normalize(where),
            only_primary_key=context.columns == (self._qualified_key(),),
        )

    def find_where_in(
        self,
        field: str,
        values: Iterable[Any],
        columns: Iterable[str] | None = ("*",),
        where: Any = None,
    ) -> list[Row]:
        context = self._resolve(columns)
        query = self.new_query().where_in(qualify(self.table_name, field), values)
        query = self._where(query, where, context)

        return self._respond(self._fetch(query, context), context)

    def find_where_not_in(
        self,
        field: str,
        values: Iterable[Any],
        columns: Iterable[str] | None = ("*",),
        where: Any = None,
    ) -> list[Row]:
        context = self._resolve(columns)
        query = self.new_query().where_not_in(qualify(self.table_name, field), values)
        query = self._where(query, where, context)

        return self._respond(self._fetch(query, context), context)

    def paginate(
        self,
        per_page: int = DEFAULT_PER_PAGE,
        columns: Iterable[str] | None = ("*",),
        page: int = 1,
    ) -> Paginator[Row]:
        """Fetch page *page* (1-based) of *per_page* rows with the total count."""
        page = max(1, int(page))
        context = self._resolve(columns)
        rows = self.limit((page - 1) * per_page, per_page)._fetch(self.new_query(), context)

        return Paginator(
            items=self._respond(rows, context),
            total=self.count(),
            per_page=per_page,
            current_page=page,
        )

    def count(self) -> int:
        """Number of rows in the table, ignoring ordering and the page window."""
        return self.new_query().count()

    def search(
        self,
        term: str | None,
        fields: Sequence[str],
        columns: Iterable[str] | None = ("*",),
        where: Any = None,
    ) -> SearchResult:
        """Fetch the rows where any of *fields* contains *term*, case-insensitively.

        Fields may be relation-qualified. An empty term only applies *where*,
        the configured sort and the page window.

        Args:
            term: Free text to look for.
            fields: Searchable fields; names that are not columns of the table
                (computed attributes, bare relation names) are skipped.
            columns: Columns and relations to return.
            where: Extra conditions, in any shape ``find_where`` accepts.

        Returns:
            The page of rows and the filtered total, see :class:`SearchResult`.
        """
        term = "" if term is None else str(term)
        context = self._resolve(columns)
        query = self.new_query()

        if term:
            clauses: list[sa.ColumnElement[bool]] = []
            for field in unique(fields):
                if "." not in field and field not in self.column_names:
                    logger.debug("Not searching %r on %r: not a column", field, self)
                    continue
                query, ref = set_join(self, query, field)
                clauses.append(sa.cast(query.column(ref), sa.String).icontains(term, autoescape=True))
            query = query.or_where_clause(*clauses) if clauses else query.where_clause(sa.false())

        predicates = normalize(where)
        query = compile_where(self, query, predicates)

        filtered = query.count_distinct(self._qualified_key()) if term or predicates else None
        rows = self._fetch(query, context)

        return SearchResult(rows=self._respond(rows, context), filtered=filtered)

    # -- writing -----------------------------------------------------------

    def _store_date(self, name: str, value: Any) -> Any:
        parsed = parse_date(value, self.date_format_store, self.date_format_get)
        column = self.table.c.get(name)
        if column is not None and isinstance(column.type, sa.DateTime):
            return parsed
        if column is not None and isinstance(column.type, sa.Date):
            return parsed.date()

        return parsed.strftime(self.date_format_store)

    def _fill(self, attributes: Any, *, creating: bool) -> dict[str, Any]:
        """Writable subset of *attributes*, dates converted and timestamps set."""
        if not isinstance(attributes, Mapping):
            raise ValidationError(f"Expected a mapping of attributes, got {type(attributes).__name__}")

        columns = self.column_names
        values: dict[str, Any] = {}
        for name, value in attributes.items():
            if self.fillable and name not in self.fillable:
                continue
            if name in self._relations or (name in self._computed and name not in columns):
                continue
            values[name] = value

        for name in self.dates:
            if values.get(name) not in (None, ""):
                values[name] = self._store_date(name, values[name])

        if self.timestamps:
            now = self.clock()
            if creating:
                values[self.CREATED_AT] = now
            values[self.UPDATED_AT] = now

        return values

    def create(self, attributes: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> Any:
        """Insert one row and return its id, or several rows and return how many.

        Belongs-to-many relation names in a single mapping are synced with
        :meth:`sync` in the same transaction.
        """
        if isinstance(attributes, Sequence) and not isinstance(attributes, (str, bytes)):
            rows = [self._fill(item, creating=True) for item in attributes]
            with self.store.transaction():
                return self.new_query().insert(rows)

        values = self._fill(attributes, creating=True)
        with self.store.transaction():
            id = self.new_query().insert_get_id(values)
            self._sync_relations(id, attributes)

        return id

    def update(self, id: Any, attributes: Mapping[str, Any]) -> int:
        """Update the row *id* and return the number of rows matched."""
        values = self._fill(attributes, creating=False)
        query = self.new_query().where(self._qualified_key(), "=", id)
        with self.store.transaction():
            count = query.update(values) if values else query.count()
            self._sync_relations(id, attributes)

        return count

    def update_or_create(self, attributes: Mapping[str, Any], values: Mapping[str, Any] | None = None) -> Any:
        """Update the first row matching *attributes* with *values*, or create it.

        Returns:
            The id of the updated or created row.
        """
        payload = {**attributes, **(values or {})}
        plain = self._copy(_ordering=None, _window=None)
        existing = plain.find_where(dict(attributes), [self.primary_key])
        if not existing:
            return self.create(payload)

        id = existing[0][self.primary_key]
        self.update(id, payload)

        return id

    def delete(self, id: Any) -> int:
        """Delete one id or a sequence of ids; returns the number of rows deleted."""
        query = self.new_query()
        if isinstance(id, (list, tuple, set, frozenset)):
            query = query.where_in(self._qualified_key(), list(id))
        else:
            query = query.where(self._qualified_key(), "=", id)

        return query.delete()

    def _sync_relations(self, id: Any, attributes: Mapping[str, Any]) -> None:
        for name, value in attributes.items():
            if isinstance(self._relations.get(name), BelongsToMany):
                self.sync(id, name, value)

    def sync(self, id: Any, relation: str, ids: Iterable[Any] | None) -> None:
        """Make *ids* the exact set linked to *id* through belongs-to-many *relation*.

        Pivot rows for other ids are deleted, missing ones inserted and
        existing ones left untouched. An empty *ids* unlinks everything.

        Raises:
            ValidationError: If *relation* is not a belongs-to-many relation.
        """
        declaration = self.relation(relation)
        if not isinstance(declaration, BelongsToMany):
            raise ValidationError(f"{relation!r} is not a belongs-to-many relation of {self!r}")

        assert declaration.foreign_key and declaration.other_foreign_key
        foreign_key, other_foreign_key = declaration.foreign_key, declaration.other_foreign_key
        wanted = unique(ids or ())
        pivot = self.store.query(declaration.pivot_table).where(foreign_key, "=", id)

        with self.store.transaction():
            if not wanted:
                pivot.delete()
                return

            pivot.where_not_in(other_foreign_key, wanted).delete()
            present = set(pluck(pivot.get([other_foreign_key]), other_foreign_key))
            pivot.insert(
                [{foreign_key: id, other_foreign_key: key} for key in wanted if key not in present]
            )

    # -- grid --------------------------------------------------------------

    def grid(self, request: Mapping[str, Any], where: Any = None) -> dict[str, Any]:
        """Answer a server-side data grid request, see :func:`~sqla_repository.grid.build_grid`."""
        return build_grid(self, request, where)

    def lookup(self, request: Mapping[str, Any]) -> dict[str, Any]:
        """Answer a type-ahead request, see :func:`~sqla_repository.grid.build_lookup`."""
        return build_lookup(self, request)

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from .datastructures import frozendict
from .relations import BelongsTo
from .tools import qualify, split_path, unique


if TYPE_CHECKING:
    from .repository import Repository


logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

_COMPUTED_MARKER = "__computed_requires__"


@dataclass(frozen=True, slots=True)
class ComputedAttribute:
    """A value derived from a row after it is fetched.

    ``requires`` lists the base columns the function reads; they are added to
    the SELECT whenever the attribute is requested.
    """

    name: str
    function: Callable[[Any, dict[str, Any]], Any]
    requires: tuple[str, ...] = ()


def computed(*requires: str) -> Callable[[F], F]:
    """Mark a repository method as a computed attribute.

    The method name is the attribute name; it receives the fetched row::

        class CustomerRepository(Repository):
            fillable = ("first", "last")

            @computed("first", "last")
            def full_name(self, row):
                return f"{row['first']} {row['last']}"
    """

    def decorator(function: F) -> F:
        setattr(function, _COMPUTED_MARKER, tuple(requires))
        return function

    return decorator


def collect_computed(cls: type) -> frozendict[str, ComputedAttribute]:
    """Gather every ``@computed`` method of *cls* and its bases."""
    found: dict[str, ComputedAttribute] = {}
    for klass in reversed(cls.__mro__):
        for name, value in vars(klass).items():
            requires = getattr(value, _COMPUTED_MARKER, None)
            if requires is not None:
                found[name] = ComputedAttribute(name=name, function=value, requires=requires)
            elif name in found:
                del found[name]

    return frozendict(found)


@dataclass(frozen=True, slots=True)
class LoadContext:
    """Everything one read call resolved from its requested columns.

    Built by :func:`resolve_columns` and threaded through predicate
    compilation, the base query and relation loading. It is never stored on a
    repository, so nothing requested by one call can leak into the next.

    Attributes:
        columns: Table-qualified base columns for the SELECT, or ``("*",)``.
        relations: Relation names to batch-load, each listed once.
        eager: Sub-paths requested per relation (``{"orders": ("lines.sku",)}``).
        computed: Computed attribute names to evaluate on every row.
    """

    columns: tuple[str, ...] = ("*",)
    relations: tuple[str, ...] = ()
    eager: frozendict[str, tuple[str, ...]] = field(default_factory=frozendict)
    computed: tuple[str, ...] = ()

    def with_relation(self, name: str, subpath: str | None = None) -> LoadContext:
        """Register relation *name*; registering it again is a no-op."""
        relations = self.relations if name in self.relations else (*self.relations, name)
        eager = self.eager.append(name, subpath) if subpath else self.eager

        return replace(self, relations=relations, eager=eager)

    def with_computed(self, name: str) -> LoadContext:
        if name in self.computed:
            return self

        return replace(self, computed=(*self.computed, name))

    def eager_columns(self, name: str) -> tuple[str, ...]:
        """Columns to request from relation *name*'s target."""
        return self.eager.get(name) or ("*",)


def resolve_columns(
    repository: Repository,
    requested: Iterable[str] | None = ("*",),
    view_columns: Sequence[str] = (),
) -> LoadContext:
    """Resolve a requested column list into a ``LoadContext``.

    1. A view selection replaces ``"*"`` or is merged into explicit columns.
    2. ``"*"`` expands to the fillable attributes (and the timestamp columns
       when the repository is timestamped); fillable names that are computed
       attributes are marked and pull in the columns they require.
    3. Requested computed attributes are marked, pull in their columns and
       are dropped from the SELECT unless they are also table columns.
    4. Names whose first segment is a relation register that relation; the
       remainder becomes an eager-load sub-path. Anything else passes
       through unchanged, so an unknown ``"foo.bar"`` is selected literally.
    5. An empty result selects ``"*"``. Otherwise the primary key and every
       BelongsTo foreign key are added and every column is table-qualified.

    Pure: neither the repository nor *requested* is modified.
    """
    names = list(requested or ("*",))
    if view_columns:
        names = list(view_columns) if "*" in names else [*names, *view_columns]

    context = LoadContext()
    attributes = repository.computed_attributes
    fillable = repository.fillable

    if "*" in names and fillable:
        expanded: list[str] = []
        for name in names:
            expanded.extend(repository.visible_columns() if name == "*" else (name,))
        names = expanded
        for name in fillable:
            if (attribute := attributes.get(name)) is not None:
                context = context.with_computed(name)
                names.extend(attribute.requires)

    base: list[str] = []
    required: list[str] = []
    for name in names:
        if (attribute := attributes.get(name)) is not None:
            context = context.with_computed(name)
            required.extend(attribute.requires)
            if name not in repository.column_names:
                continue
        base.append(name)

    columns: list[str] = []
    for name in (*base, *required):
        head, rest = split_path(name)
        if repository.relation(head) is not None:
            context = context.with_relation(head, rest)
            continue
        if rest is not None and head != repository.table_name:
            logger.debug("%r is not a relation of %r, selecting it literally", head, repository)
        columns.append(name)

    if not columns:
        return replace(context, columns=("*",))

    if "*" in columns:
        return replace(context, columns=("*",))

    columns.append(repository.primary_key)
    for name in context.relations:
        relation = repository.relation(name)
        if isinstance(relation, BelongsTo) and relation.foreign_key:
            columns.append(relation.foreign_key)

    qualified = unique(qualify(repository.table_name, column) for column in columns)

    return replace(context, columns=tuple(qualified))


class ViewIntrospector(Protocol):
    """Finds which of *candidates* a view (template) refers to."""

    def referenced_names(self, view: str, candidates: Iterable[str]) -> list[str]: ...


class TemplateIntrospector:
    """Best-effort view introspection by substring search in a template file.

    ``TemplateIntrospector("templates", ".html").referenced_names("users/index",
    ["name", "email"])`` reads ``templates/users/index.html`` and returns the
    candidates that appear in it, case-insensitively.
    """

    def __init__(self, directory: str | Path, suffix: str = ".html") -> None:
        self.directory = Path(directory)
        self.suffix = suffix

    def path(self, view: str) -> Path:
        return self.directory / f"{view}{self.suffix}"

    def referenced_names(self, view: str, candidates: Iterable[str]) -> list[str]:
        contents = self.path(view).read_text(encoding="utf-8").lower()

        return [name for name in unique(candidates) if name.lower() in contents]

"""Relation-aware data access on top of SQLAlchemy Core.

sqla_repository gives plain SQL tables ORM-like ergonomics without an ORM:
subclass ``Repository``, declare the table's relations once in
``relations()``, and read rows as plain dicts with any mix of columns,
relation paths (``"orders.lines.sku"``) and computed attributes. Related
rows are loaded for a whole page with one statement per relation, and
filters or searches through one-to-many relations never duplicate rows.
"""

from ._version import __version__, __version_tuple__
from .columns import LoadContext, TemplateIntrospector, ViewIntrospector, computed, resolve_columns
from .datastructures import frozendict
from .exceptions import ConfigurationError, RepositoryError, ValidationError
from .grid import LOOKUP_PAGE_SIZE, VIRTUAL_SEPARATOR, build_grid, build_lookup
from .joins import set_join
from .loading import load_relations
from .predicates import Predicate, compile_where, normalize
from .query import DEFAULT_PER_PAGE, Paginator, Query
from .registry import Registry
from .relations import BelongsTo, BelongsToMany, HasMany, Relation
from .repository import DEFAULT_DATE_FORMAT, Repository, SearchResult
from .store import Store
from .tools import cache_clear


__all__ = (
    "DEFAULT_DATE_FORMAT",
    "DEFAULT_PER_PAGE",
    "LOOKUP_PAGE_SIZE",
    "VIRTUAL_SEPARATOR",
    "BelongsTo",
    "BelongsToMany",
    "ConfigurationError",
    "HasMany",
    "LoadContext",
    "Paginator",
    "Predicate",
    "Query",
    "Registry",
    "Relation",
    "Repository",
    "RepositoryError",
    "SearchResult",
    "Store",
    "TemplateIntrospector",
    "ValidationError",
    "ViewIntrospector",
    "__version__",
    "__version_tuple__",
    "build_grid",
    "build_lookup",
    "cache_clear",
    "compile_where",
    "computed",
    "frozendict",
    "load_relations",
    "normalize",
    "resolve_columns",
    "set_join",
)

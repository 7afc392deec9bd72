from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .relations import BelongsTo, BelongsToMany, HasMany
from .tools import split_path


if TYPE_CHECKING:
    from .query import Query
    from .repository import Repository


logger = logging.getLogger(__name__)


def pivot_alias(relation_name: str, pivot_table: str) -> str:
    """Alias under which the pivot table of a BelongsToMany relation is joined."""
    return f"{relation_name}_{pivot_table}"


def join_alias(query: Query, parent: str, relation_name: str) -> str:
    """Alias for *relation_name* joined from *parent*.

    The relation name itself, unless it is the name of the query's base table
    (``"country.users"`` from a users query), which becomes ``country_users``.
    """
    if relation_name == query.table.name:
        return f"{parent}_{relation_name}"

    return relation_name


def set_join(
    repository: Repository,
    query: Query,
    path: str,
    alias: str | None = None,
) -> tuple[Query, str]:
    """Join every relation named along *path* and return the column it ends on.

    ``"author.country.name"`` on a post repository left-joins ``users AS author``
    then ``countries AS country`` and returns ``(query, "country.name")``.
    Each joined table is aliased with its relation name, so one target table
    reached through two relations is joined twice. Joining an alias that is
    already present is a no-op. A relation named like the query's base table
    is aliased ``<parent alias>_<relation>`` instead (see :func:`join_alias`).

    Only relation segments are resolved: the last segment is the column. A
    path whose first segment is not a relation is returned unchanged (as a
    literal column) without joining anything.

    Args:
        repository: Repository owning the first segment.
        query: Query to extend; it is not modified.
        path: Dotted ``relation[.relation...].column`` path.
        alias: Name the owning table is known by in *query*; defaults to the
            repository's table name.

    Returns:
        ``(query, column_ref)`` with the joins added.
    """
    alias = alias or repository.table_name
    head, rest = split_path(path)

    if rest is None:
        return query, f"{alias}.{head}"

    relation = repository.relation(head)
    if relation is None:
        logger.debug("%s has no relation %r, using %r as a literal column", repository, head, path)
        return query, path

    target = repository.related(head)
    name = join_alias(query, alias, head)

    match relation:
        case BelongsTo():
            query = query.left_join(
                name,
                target.table,
                f"{name}.{target.primary_key}",
                f"{alias}.{relation.foreign_key}",
                relation.where,
            )
        case HasMany():
            query = query.left_join(
                name,
                target.table,
                f"{name}.{relation.foreign_key}",
                f"{alias}.{repository.primary_key}",
                relation.where,
            )
        case BelongsToMany():
            if not query.has_join(name):
                pivot = pivot_alias(name, relation.pivot_table)
                query = query.left_join(
                    pivot,
                    repository.store.table(relation.pivot_table),
                    f"{pivot}.{relation.foreign_key}",
                    f"{alias}.{repository.primary_key}",
                ).left_join(
                    name,
                    target.table,
                    f"{name}.{target.primary_key}",
                    f"{pivot}.{relation.other_foreign_key}",
                    relation.where,
                )

    return set_join(target, query, rest, alias=name)

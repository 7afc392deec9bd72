"""Batched relation loading.

After the base query of a read call has produced its rows, every relation
registered in the call's ``LoadContext`` is loaded with one statement for the
whole page (two for BelongsToMany: the pivot, then the targets) and stitched
back into the rows in memory. The number of statements depends only on the
number of relations, never on the number of rows.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from .relations import LOAD_ORDER, BelongsTo, BelongsToMany, HasMany
from .tools import pluck


if TYPE_CHECKING:
    from .columns import LoadContext
    from .repository import Repository

    Row = dict[str, Any]


logger = logging.getLogger(__name__)


def load_relations(
    repository: Repository,
    rows: Sequence[Row],
    context: LoadContext,
) -> list[Row]:
    """Attach every relation of *context* to *rows*.

    BelongsTo relations attach a row or ``None``; HasMany and BelongsToMany
    attach a list, empty when nothing matches. The key is always present.

    Returns:
        New row dicts; *rows* is left untouched.
    """
    out = [dict(row) for row in rows]
    if not out or not context.relations:
        return out

    for kind in LOAD_ORDER:
        for name in context.relations:
            relation = repository.relation(name)
            if not isinstance(relation, kind):
                continue

            match relation:
                case BelongsTo():
                    _load_belongs_to(repository, name, relation, out, context)
                case HasMany():
                    _load_has_many(repository, name, relation, out, context)
                case BelongsToMany():
                    _load_belongs_to_many(repository, name, relation, out, context)

    return out


def _load_belongs_to(
    repository: Repository,
    name: str,
    relation: BelongsTo,
    rows: list[Row],
    context: LoadContext,
) -> None:
    target = repository.related(name)
    foreign_key = relation.foreign_key
    assert foreign_key
    keys = pluck(rows, foreign_key)
    logger.debug("Loading belongs-to %s.%s for %d keys", repository.table_name, name, len(keys))

    related = (
        target.find_where_in(
            target.primary_key, keys, context.eager_columns(name), relation.where
        )
        if keys
        else []
    )

    index: dict[Any, Row] = {}
    for item in related:
        index.setdefault(item.get(target.primary_key), item)

    for row in rows:
        parent = index.get(row.get(foreign_key))
        row[name] = copy.deepcopy(parent) if parent is not None else None


def _load_has_many(
    repository: Repository,
    name: str,
    relation: HasMany,
    rows: list[Row],
    context: LoadContext,
) -> None:
    target = repository.related(name)
    foreign_key = relation.foreign_key
    assert foreign_key
    keys = pluck(rows, repository.primary_key)
    logger.debug("Loading has-many %s.%s for %d keys", repository.table_name, name, len(keys))

    columns = context.eager_columns(name)
    if foreign_key not in columns:
        columns = (*columns, foreign_key)

    related = target.find_where_in(foreign_key, keys, columns, relation.where) if keys else []

    groups: dict[Any, list[Row]] = {}
    for item in related:
        groups.setdefault(item.get(foreign_key), []).append(item)

    for row in rows:
        row[name] = groups.get(row.get(repository.primary_key), [])


def _load_belongs_to_many(
    repository: Repository,
    name: str,
    relation: BelongsToMany,
    rows: list[Row],
    context: LoadContext,
) -> None:
    target = repository.related(name)
    foreign_key, other_foreign_key = relation.foreign_key, relation.other_foreign_key
    assert foreign_key and other_foreign_key
    keys = pluck(rows, repository.primary_key)
    logger.debug("Loading belongs-to-many %s.%s for %d keys", repository.table_name, name, len(keys))

    pivots = (
        repository.store.query(relation.pivot_table)
        .where_in(foreign_key, keys)
        .get([foreign_key, other_foreign_key])
        if keys
        else []
    )
    other_keys = pluck(pivots, other_foreign_key)
    related = (
        target.find_where_in(
            target.primary_key, other_keys, context.eager_columns(name), relation.where
        )
        if other_keys
        else []
    )

    index: dict[Any, Row] = {}
    for item in related:
        index.setdefault(item.get(target.primary_key), item)

    links: dict[Any, list[Any]] = {}
    for pivot in pivots:
        linked = links.setdefault(pivot[foreign_key], [])
        if pivot[other_foreign_key] not in linked:
            linked.append(pivot[other_foreign_key])

    for row in rows:
        row[name] = [
            copy.deepcopy(index[key])
            for key in links.get(row.get(repository.primary_key), [])
            if key in index
        ]

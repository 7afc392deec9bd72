"""Relation declarations.

A repository declares its relations once, by returning a mapping from
``relations()``::

    class CustomerRepository(Repository):
        fillable = ("name", "country_id")

        def relations(self):
            return {
                "country": BelongsTo(CountryRepository),
                "orders": HasMany("OrderRepository", "customer_id"),
                "tags": BelongsToMany(TagRepository, "customer_tag"),
            }

The three kinds form a closed union (``Relation``); code dispatches on the
concrete class with ``match``/``isinstance`` rather than on method names.
Foreign keys left out are derived from table names, see :func:`bind`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Final, Union

from .datastructures import frozendict
from .exceptions import ConfigurationError
from .tools import default_foreign_key


if TYPE_CHECKING:
    from .repository import Repository

    Target = Union[type[Repository], str]


@dataclass(frozen=True, slots=True)
class BelongsTo:
    """Single parent: this table holds ``foreign_key`` pointing at the target's primary key."""

    target: Target
    foreign_key: str | None = None
    where: Any = field(default=(), compare=False)


@dataclass(frozen=True, slots=True)
class HasMany:
    """One-to-many: the target table holds ``foreign_key`` pointing at this primary key."""

    target: Target
    foreign_key: str | None = None
    where: Any = field(default=(), compare=False)


@dataclass(frozen=True, slots=True)
class BelongsToMany:
    """Many-to-many through ``pivot_table``.

    ``foreign_key`` is the pivot column pointing at this table,
    ``other_foreign_key`` the one pointing at the target.
    """

    target: Target
    pivot_table: str
    foreign_key: str | None = None
    other_foreign_key: str | None = None
    where: Any = field(default=(), compare=False)


Relation = Union[BelongsTo, HasMany, BelongsToMany]

# Batch loading order; only affects the sequence of statements.
LOAD_ORDER: Final[tuple[type, ...]] = (BelongsTo, HasMany, BelongsToMany)


def bind(relation: Relation, owner: Repository, target: Repository) -> Relation:
    """Fill in conventional foreign keys once both ends are known.

    * ``BelongsTo``: ``<target table>_id``
    * ``HasMany``: ``<owner table>_id``
    * ``BelongsToMany``: ``<owner table>_id`` / ``<target table>_id``
    """
    match relation:
        case BelongsTo(foreign_key=None):
            return replace(relation, foreign_key=default_foreign_key(target.table_name))
        case HasMany(foreign_key=None):
            return replace(relation, foreign_key=default_foreign_key(owner.table_name))
        case BelongsToMany():
            return replace(
                relation,
                foreign_key=relation.foreign_key or default_foreign_key(owner.table_name),
                other_foreign_key=(
                    relation.other_foreign_key or default_foreign_key(target.table_name)
                ),
            )
    return relation


def validate(
    relations: Mapping[str, Any], columns: set[str], owner: str
) -> frozendict[str, Relation]:
    """Check a ``relations()`` result and freeze it.

    Raises:
        ConfigurationError: If a value is not a relation, a name is not a valid
            identifier, or a name collides with a column of the entity.
    """
    checked: dict[str, Relation] = {}
    for name, relation in relations.items():
        if not isinstance(relation, (BelongsTo, HasMany, BelongsToMany)):
            raise ConfigurationError(
                f"{owner}.relations()[{name!r}] must be BelongsTo, HasMany or "
                f"BelongsToMany, got {type(relation).__name__}"
            )
        if not name or "." in name:
            raise ConfigurationError(f"Invalid relation name {name!r} on {owner}")
        if name in columns:
            raise ConfigurationError(
                f"Relation {name!r} on {owner} has the same name as a column"
            )
        checked[name] = relation

    return frozendict(checked)

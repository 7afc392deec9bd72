from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa


if TYPE_CHECKING:
    from .query import Query


logger = logging.getLogger(__name__)


class Store:
    """Execution layer shared by every repository built on it.

    Wraps either an ``Engine`` or an already open ``Connection``:

    * with an ``Engine`` each statement runs in its own short transaction,
      unless it is issued inside :meth:`transaction`;
    * with a ``Connection`` the caller owns the transaction boundaries and
      every statement runs on that connection.

    Tables are reflected on first use and cached in ``metadata``. Passing the
    application's own ``MetaData`` skips reflection entirely.
    """

    __slots__ = ("_connection", "bind", "metadata")

    def __init__(
        self,
        bind: sa.Engine | sa.Connection,
        *,
        metadata: sa.MetaData | None = None,
    ) -> None:
        self.bind = bind
        self.metadata = metadata if metadata is not None else sa.MetaData()
        self._connection: sa.Connection | None = None

    @contextmanager
    def connect(self) -> Iterator[sa.Connection]:
        """Yield the connection the next statement should run on."""
        if self._connection is not None:
            yield self._connection
        elif isinstance(self.bind, sa.Connection):
            yield self.bind
        else:
            with self.bind.begin() as connection:
                yield connection

    @contextmanager
    def transaction(self) -> Iterator[sa.Connection]:
        """Run every statement of the block in a single transaction.

        Nested calls join the outer transaction. On a caller-supplied
        ``Connection`` this only groups statements; committing stays with the
        caller.
        """
        if self._connection is not None or isinstance(self.bind, sa.Connection):
            with self.connect() as connection:
                yield connection
            return

        with self.bind.begin() as connection:
            self._connection = connection
            try:
                yield connection
            finally:
                self._connection = None

    def table(self, name: str) -> sa.Table:
        """Return the ``Table`` called *name*, reflecting it on first use."""
        if (table := self.metadata.tables.get(name)) is not None:
            return table

        logger.debug("Reflecting table %s", name)
        with self.connect() as connection:
            return sa.Table(name, self.metadata, autoload_with=connection)

    def query(self, name: str) -> Query:
        """Start a new query on the table called *name*."""
        from .query import Query

        return Query(store=self, table=self.table(name))

    def rows(self, statement: sa.Executable) -> list[dict[str, Any]]:
        """Execute a SELECT and return its rows as plain dicts."""
        with self.connect() as connection:
            return [dict(row) for row in connection.execute(statement).mappings()]

    def scalar(self, statement: sa.Executable) -> Any:
        """Execute *statement* and return the first column of the first row."""
        with self.connect() as connection:
            return connection.execute(statement).scalar()

    def execute(
        self,
        statement: sa.Executable,
        parameters: Sequence[Mapping[str, Any]] | Mapping[str, Any] | None = None,
    ) -> int:
        """Execute a DML statement and return the number of affected rows."""
        with self.connect() as connection:
            return connection.execute(statement, parameters).rowcount

    def inserted_id(self, statement: sa.Insert) -> Any:
        """Execute a single-row INSERT and return the new primary key value."""
        with self.connect() as connection:
            result = connection.execute(statement)
            if (key := result.inserted_primary_key) is None:
                return None

            return key[0]

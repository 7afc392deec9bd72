"""Errors raised by sqla_repository.

Failures coming from the database itself are not wrapped: SQLAlchemy's
``sqlalchemy.exc.SQLAlchemyError`` hierarchy reaches the caller unchanged.
"""


class RepositoryError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(RepositoryError):
    """A repository or relation declaration is invalid.

    Raised for relations pointing at unknown repositories and for relation
    names that collide with a column name. Never retried.
    """


class ValidationError(RepositoryError, ValueError):
    """A predicate, payload or grid request has an unsupported shape."""

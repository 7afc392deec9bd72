from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, ClassVar, final

from .exceptions import ConfigurationError


if TYPE_CHECKING:
    from .repository import Repository


@final
class Registry:
    """Singleton mapping repository class names to repository classes.

    Every ``Repository`` subclass registers itself here when it is defined, so
    relations can name their target as a string (``HasMany("OrderRepository")``)
    and cyclic declarations between two modules resolve lazily.

    The registry is the entity factory of the package: given a relation
    target it hands back the class to instantiate.
    """

    __instance: ClassVar[Registry | None] = None
    _repositories: dict[str, type[Repository]]

    def __new__(cls) -> Registry:
        if cls.__instance is None:
            instance = super().__new__(cls)
            instance._repositories = {}
            cls.__instance = instance

        return cls.__instance

    def register(self, repository: type[Repository]) -> None:
        """Register *repository* under its class name.

        Re-registering a name replaces the previous class, which happens when a
        module defining repositories is reloaded.
        """
        self._repositories[repository.__name__] = repository

    def get(self, name: str) -> type[Repository] | None:
        """Look up a repository class by name, returning ``None`` if unknown."""
        return self._repositories.get(name)

    def __getitem__(self, name: str) -> type[Repository]:
        """Look up a repository class by name, raising ``ConfigurationError`` if unknown."""
        try:
            return self._repositories[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown repository {name!r}. Registered: {sorted(self._repositories)}"
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self._repositories

    @property
    def repositories(self) -> Mapping[str, type[Repository]]:
        """The registered name-to-class mapping (read-only view)."""
        return dict(self._repositories)

    @classmethod
    def reset(cls) -> None:
        """Destroy the singleton, dropping every registration (primarily for tests)."""
        cls.__instance = None


def resolve_target(target: type[Repository] | str) -> type[Repository]:
    """Resolve a relation target to a repository class.

    Args:
        target: A ``Repository`` subclass or the name it was registered under.

    Returns:
        The repository class.

    Raises:
        ConfigurationError: If the name is unknown or the class is not a repository.
    """
    from .repository import Repository

    if isinstance(target, str):
        return Registry()[target]

    if isinstance(target, type) and issubclass(target, Repository):
        return target

    raise ConfigurationError(f"Relation target must be a Repository subclass or name, got {target!r}")

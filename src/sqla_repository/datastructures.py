from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, hashable mapping.

    Relation maps and the eager-load map of a ``LoadContext`` are stored as
    frozendicts so a resolved load pass can never be altered by the code that
    consumes it. Every "modifying" method returns a new instance.

    Example:
        >>> eager = frozendict({"author": ("name",)})
        >>> eager.append("author", "email")
        <frozendict {'author': ('name', 'email')}>
        >>> eager.append("tags", "label")["tags"]
        ('label',)
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def set(self, key: K, value: V) -> Self:
        """Return a new frozendict where *key* maps to *value*."""
        data = dict(self._dict)
        data[key] = value

        return type(self)(data)

    def append(self, key: K, *items: Any) -> Self:
        """Return a new frozendict with *items* appended to the tuple under *key*.

        Missing keys start from an empty tuple; items already present are not
        repeated, so registering the same eager path twice is a no-op.
        """
        current: tuple[Any, ...] = tuple(self._dict.get(key, ()))  # type: ignore[arg-type]
        merged = current + tuple(item for item in dict.fromkeys(items) if item not in current)

        return self.set(key, merged)  # type: ignore[arg-type]

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return self._dict == other._dict

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(frozenset(self._dict.items()))

        return self._hash

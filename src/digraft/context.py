from __future__ import annotations

from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any

from digraft.exceptions import DigraftInvalidContextError

Fingerprint = frozenset[tuple[Any, Any]]


class ContextDefinition:
    """Immutable, composable set of context key/value pairs.

    A definition accumulates context along a resolution path. Every operation
    returns a new definition, so a partially built context can be shared by
    sibling subgraphs.

    Keys outside the *recognized* set are ignored by ``fingerprint`` and
    equality but kept for forwarding, since a dependency deeper in the graph
    may recognize a key an intermediate component does not. ``recognized`` of
    ``None`` means every key is recognized.
    """

    __slots__ = ("_fingerprint", "_recognized", "_values")

    _EMPTY: ContextDefinition | None = None

    def __init__(
        self,
        values: Mapping[Any, Any] | None = None,
        recognized: frozenset[Any] | None = None,
    ) -> None:
        self._values: Mapping[Any, Any] = MappingProxyType(dict(values or {}))
        self._recognized = recognized
        self._fingerprint: Fingerprint | None = None

    @classmethod
    def empty(cls) -> ContextDefinition:
        """Return the shared empty definition used at the root of resolution."""
        if cls._EMPTY is None:
            cls._EMPTY = cls()
        return cls._EMPTY

    @classmethod
    def of(cls, values: Mapping[Any, Any] | ContextDefinition | None) -> ContextDefinition:
        """Build a definition from a mapping, passing definitions through."""
        if values is None:
            return cls.empty()
        if isinstance(values, ContextDefinition):
            return values
        definition = cls.empty()
        for key, value in values.items():
            definition = definition.extend(key, value)
        return definition

    def extend(self, key: Any, value: Any) -> ContextDefinition:
        """Return a copy with ``key`` set to ``value``.

        Raises:
            DigraftInvalidContextError: If the key or value is not hashable.

        """
        _ensure_hashable(key, value)
        values = dict(self._values)
        values.pop(key, None)
        values[key] = value
        return ContextDefinition(values, self._recognized)

    def narrow(self, *keys: Any) -> ContextDefinition:
        """Return a copy that recognizes only ``keys``.

        Narrowing never widens: the result recognizes the intersection of
        ``keys`` with the keys already recognized.
        """
        wanted = frozenset(keys)
        recognized = wanted if self._recognized is None else self._recognized & wanted
        return ContextDefinition(self._values, recognized)

    def combine(self, other: ContextDefinition | Mapping[Any, Any]) -> ContextDefinition:
        """Merge ``other`` into a copy of this definition.

        Values of ``other`` win on conflicts. The result recognizes the union of
        both recognized sets.
        """
        child = ContextDefinition.of(other)
        if not child._values:
            return self
        values = dict(self._values)
        for key, value in child._values.items():
            values.pop(key, None)
            values[key] = value
        if self._recognized is None or child._recognized is None:
            recognized = None
        else:
            recognized = self._recognized | child._recognized
        return ContextDefinition(values, recognized)

    def fingerprint(self) -> Fingerprint:
        """Return a canonical, order-independent key of recognized pairs."""
        if self._fingerprint is None:
            self._fingerprint = frozenset(
                (key, value) for key, value in self._values.items() if self.recognizes(key)
            )
        return self._fingerprint

    def recognizes(self, key: Any) -> bool:
        return self._recognized is None or key in self._recognized

    def recognized(self) -> dict[Any, Any]:
        """Return the recognized key/value pairs in insertion order."""
        return {key: value for key, value in self._values.items() if self.recognizes(key)}

    def get(self, key: Any, default: Any = None) -> Any:
        """Return a recognized value, or ``default`` when absent or unrecognized."""
        if not self.recognizes(key):
            return default
        return self._values.get(key, default)

    def keys(self) -> tuple[Any, ...]:
        """Return every key carried for forwarding, recognized or not."""
        return tuple(self._values)

    def values(self) -> Mapping[Any, Any]:
        return self._values

    def is_empty(self) -> bool:
        return not self.fingerprint()

    def __contains__(self, key: object) -> bool:
        return key in self._values and self.recognizes(key)

    def __iter__(self) -> Iterator[Any]:
        return iter(self.recognized())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ContextDefinition):
            return NotImplemented
        return self.fingerprint() == other.fingerprint()

    def __hash__(self) -> int:
        return hash(self.fingerprint())

    def __repr__(self) -> str:
        items = ", ".join(f"{key!r}: {value!r}" for key, value in self.recognized().items())
        return f"ContextDefinition({{{items}}})"


def _ensure_hashable(*items: Any) -> None:
    for item in items:
        try:
            hash(item)
        except TypeError as error:
            msg = f"Context keys and values must be hashable, got {item!r}."
            raise DigraftInvalidContextError(msg) from error


from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Lifetime(str, Enum):
    """Defines whether a component instance may be shared."""

    STATELESS = "stateless"
    """A single instance is shared by all resolutions with the same fingerprint."""

    STATEFUL = "stateful"
    """A new instance is created every time the component is requested."""


@dataclass(frozen=True, slots=True, kw_only=True, eq=False)
class ComponentDeclaration:
    """Immutable description of one component known to a container.

    ``implementation`` is either a class or a factory callable. Explicit
    bindings carry the bound value in ``instance`` and use the API itself as
    implementation.
    """

    api: Any
    implementation: Any
    lifetime: Lifetime = Lifetime.STATELESS
    groups: tuple[Any, ...] = ()
    context: frozenset[Any] = frozenset()
    overrides: tuple[Any, ...] = ()
    instance: Any = None
    is_binding: bool = False
    is_factory: bool = False

    @property
    def is_stateless(self) -> bool:
        return self.lifetime is Lifetime.STATELESS

    @property
    def constructs_class(self) -> bool:
        return not self.is_binding and not self.is_factory and inspect.isclass(self.implementation)


@dataclass(frozen=True, slots=True, eq=False)
class ShutdownJob:
    """A named action run once when its container terminates.

    Jobs compare by identity so two jobs sharing a name stay distinct.
    """

    name: str
    action: Callable[[], Any]

    def __call__(self) -> Any:
        return self.action()

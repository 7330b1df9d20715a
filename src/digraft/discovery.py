from __future__ import annotations

import inspect
import threading
from collections.abc import Sequence
from types import ModuleType
from typing import Any, Protocol, runtime_checkable

from digraft.markers import component_spec
from digraft.types import ComponentDeclaration


@runtime_checkable
class ClassDiscovery(Protocol):
    """Supply candidate implementation types for API types and group tags.

    Implementations must be deterministic for a fixed input: the same API
    yields the same candidates in the same order.
    """

    def find_candidates(self, api: Any) -> Sequence[type]: ...

    def find_group(self, tag: Any) -> Sequence[type]: ...


class ComponentRegistry:
    """Explicit registration table of component declarations.

    Declarations keep registration order, which fixes the order of group
    members. Explicit bindings are kept apart from class and factory
    declarations because a binding replaces every other candidate for its
    API.
    """

    def __init__(self) -> None:
        self._declarations: list[ComponentDeclaration] = []
        self._bindings: dict[Any, ComponentDeclaration] = {}
        self._lock = threading.RLock()
        self._version = 0

    @property
    def version(self) -> int:
        """Counter bumped by every mutation, used to invalidate derived data."""
        return self._version

    def add(self, declaration: ComponentDeclaration) -> None:
        with self._lock:
            self._declarations.append(declaration)
            self._version += 1

    def bind(self, declaration: ComponentDeclaration) -> ComponentDeclaration | None:
        """Store an explicit binding, returning the binding it replaced."""
        with self._lock:
            previous = self._bindings.get(declaration.api)
            self._bindings[declaration.api] = declaration
            self._version += 1
            return previous

    def binding(self, api: Any) -> ComponentDeclaration | None:
        with self._lock:
            return self._bindings.get(api)

    def for_api(self, api: Any) -> list[ComponentDeclaration]:
        """Return declarations providing ``api`` or implemented by ``api``."""
        with self._lock:
            return [
                declaration
                for declaration in self._declarations
                if declaration.api is api or declaration.implementation is api
            ]

    def for_group(self, tag: Any) -> list[ComponentDeclaration]:
        """Return declarations providing ``tag`` or tagged with it."""
        with self._lock:
            members = [
                declaration
                for declaration in self._declarations
                if declaration.api is tag or tag in declaration.groups
            ]
            binding = self._bindings.get(tag)
        if binding is not None:
            members.insert(0, binding)
        return members

    def find_candidates(self, api: Any) -> Sequence[type]:
        return [
            declaration.implementation
            for declaration in self.for_api(api)
            if inspect.isclass(declaration.implementation)
        ]

    def find_group(self, tag: Any) -> Sequence[type]:
        return [
            declaration.implementation
            for declaration in self.for_group(tag)
            if inspect.isclass(declaration.implementation)
        ]

    def declarations(self) -> list[ComponentDeclaration]:
        with self._lock:
            return [*self._bindings.values(), *self._declarations]

    def __len__(self) -> int:
        with self._lock:
            return len(self._declarations) + len(self._bindings)


class ModuleScanDiscovery:
    """Discover ``@component`` classes defined in a set of modules.

    A class is a candidate for an API when its declared ``api`` is that API,
    when it is the API itself, or when it declares no ``api`` and subclasses
    an abstract API. Candidates are returned in module order, then definition
    order.
    """

    def __init__(self, *modules: ModuleType) -> None:
        self._modules = modules
        self._classes: tuple[type, ...] | None = None

    def find_candidates(self, api: Any) -> Sequence[type]:
        candidates: list[type] = []
        for cls in self._components():
            spec = component_spec(cls)
            if spec is None:
                continue
            if spec.api is api or cls is api:
                candidates.append(cls)
            elif spec.api is None and _implements_abstract(cls, api):
                candidates.append(cls)
        return candidates

    def find_group(self, tag: Any) -> Sequence[type]:
        members: list[type] = []
        for cls in self._components():
            spec = component_spec(cls)
            if spec is not None and tag in spec.groups:
                members.append(cls)
        return members

    def _components(self) -> tuple[type, ...]:
        if self._classes is None:
            found: list[type] = []
            for module in self._modules:
                for value in vars(module).values():
                    if (
                        inspect.isclass(value)
                        and value.__module__ == module.__name__
                        and component_spec(value) is not None
                        and value not in found
                    ):
                        found.append(value)
            self._classes = tuple(found)
        return self._classes


def _implements_abstract(cls: type, api: Any) -> bool:
    if not inspect.isclass(api) or cls is api or not inspect.isabstract(api):
        return False
    try:
        return issubclass(cls, api)
    except TypeError:
        return False

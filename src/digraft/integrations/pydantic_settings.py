"""Configuration source support for pydantic-settings models.

Classes deriving from ``pydantic_settings.BaseSettings`` read their values
from the environment when called without arguments. Containers autoregister
them as stateless components built through a zero-argument factory, so a
component can declare a settings model as an ordinary constructor
dependency::

    class DatabaseSettings(BaseSettings):
        url: str = "sqlite://"

    class Repository:
        def __init__(self, settings: DatabaseSettings) -> None: ...

pydantic-settings is an optional dependency; without it no class is treated
as a settings model.
"""

from __future__ import annotations

import functools
import importlib
import types
from collections.abc import Callable
from typing import Any

SETTINGS_MODULES: tuple[str, ...] = ("pydantic_settings",)


@functools.cache
def settings_bases() -> tuple[type[Any], ...]:
    """Return the ``BaseSettings`` classes importable in this environment."""
    bases: list[type[Any]] = []
    for module_name in SETTINGS_MODULES:
        try:
            module = importlib.import_module(module_name)
        except ImportError:
            continue
        base = getattr(module, "BaseSettings", None)
        if isinstance(base, type) and base not in bases:
            bases.append(base)
    return tuple(bases)


def is_pydantic_settings_subclass(candidate: object) -> bool:
    """Return whether ``candidate`` is a concrete pydantic settings model.

    ``BaseSettings`` itself is not a model and returns ``False``.
    """
    if not isinstance(candidate, type) or isinstance(candidate, types.GenericAlias):
        return False
    bases = settings_bases()
    if candidate in bases:
        return False
    try:
        return any(issubclass(candidate, base) for base in bases)
    except TypeError:
        return False


@functools.cache
def settings_factory(settings_type: type[Any]) -> Callable[[], Any]:
    """Return the zero-argument factory building ``settings_type`` from its sources."""

    def build_settings() -> Any:
        return settings_type()

    build_settings.__qualname__ = f"{settings_type.__qualname__}.from_environment"
    return build_settings


__all__ = [
    "SETTINGS_MODULES",
    "is_pydantic_settings_subclass",
    "settings_bases",
    "settings_factory",
]

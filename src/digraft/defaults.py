from __future__ import annotations

import datetime
import decimal
import inspect
import pathlib
import types
import uuid
from dataclasses import dataclass
from typing import Any, TypeGuard

from digraft.context import ContextDefinition
from digraft.integrations.pydantic_settings import is_pydantic_settings_subclass
from digraft.types import Lifetime

DEFAULT_LIFETIME = Lifetime.STATELESS


def is_runtime_class(candidate: object) -> TypeGuard[type[Any]]:
    """Return true when candidate is a runtime class safe for class-only operations."""
    return isinstance(candidate, type) and not isinstance(candidate, types.GenericAlias)


@dataclass(frozen=True, slots=True)
class AutoregistrationPolicy:
    """Decide which unregistered classes a container may construct on demand.

    Value types that are never meaningful components (builtins, dates,
    paths, identifiers and the like) are refused, as are abstract classes,
    protocols and metaclasses. Pydantic settings models are accepted and
    built with their own environment-driven constructor.
    """

    ignored_base_types: tuple[type[Any], ...] = (
        pathlib.PurePath,
        datetime.datetime,
        datetime.date,
        datetime.time,
        datetime.timedelta,
        uuid.UUID,
        decimal.Decimal,
        ContextDefinition,
    )

    def is_eligible_concrete(self, candidate: object) -> TypeGuard[type[Any]]:
        if not is_runtime_class(candidate):
            return False
        if candidate.__module__ == "builtins":
            return False
        if inspect.isabstract(candidate) or getattr(candidate, "_is_protocol", False):
            return False
        if issubclass(candidate, type):
            return False
        return not issubclass(candidate, self.ignored_base_types)

    def is_settings(self, candidate: object) -> bool:
        return is_pydantic_settings_subclass(candidate)


DEFAULT_AUTOREGISTRATION_POLICY = AutoregistrationPolicy()

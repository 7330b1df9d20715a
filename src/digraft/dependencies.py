from __future__ import annotations

import inspect
import threading
import types
from collections import abc
from collections.abc import Callable
from dataclasses import dataclass
from inspect import Parameter
from typing import TYPE_CHECKING, Any, Union, get_args, get_origin, get_type_hints

from digraft.exceptions import DigraftInvalidRegistrationError
from digraft.markers import (
    AllMarker,
    Context,
    InjectedMarker,
    MaybeMarker,
    annotation_metadata,
    is_constructor,
)

if TYPE_CHECKING:
    from digraft.context import ContextDefinition

_MISSING_ANNOTATION = object()
_IMPLICIT_FIRST_PARAMETER_NAMES = frozenset({"self", "cls"})
_GENERATOR_ORIGINS = (abc.Generator, abc.Iterator, abc.Iterable)


@dataclass(frozen=True, slots=True)
class Dependency:
    """One injection point parameter or field."""

    name: str
    key: Any
    optional: bool = False
    group: bool = False
    has_default: bool = False
    kind: Any = Parameter.POSITIONAL_OR_KEYWORD
    context: tuple[tuple[Any, Any], ...] = ()

    @property
    def context_keys(self) -> frozenset[Any]:
        return frozenset(key for key, _ in self.context)

    def edge_context(self, context: ContextDefinition) -> ContextDefinition:
        """Return ``context`` combined with the values of this edge's ``Context`` marker."""
        if not self.context:
            return context
        return context.combine(dict(self.context))


@dataclass(frozen=True, slots=True)
class InjectionPoint:
    """A constructor candidate: a callable and the dependencies it declares."""

    name: str
    target: Callable[..., Any]
    dependencies: tuple[Dependency, ...]


class DependenciesExtractor:
    """Extract constructor, factory and field injection points."""

    def __init__(self) -> None:
        self._points_cache: dict[Any, tuple[InjectionPoint, ...]] = {}
        self._fields_cache: dict[type, tuple[Dependency, ...]] = {}
        self._lock = threading.Lock()

    def constructors(self, implementation: Any) -> tuple[InjectionPoint, ...]:
        """Return constructor candidates of a class, or the factory itself.

        Classes contribute ``__init__`` plus every class method marked with
        ``@constructor``. Factory callables contribute exactly one candidate.
        """
        cached = self._points_cache.get(implementation)
        if cached is not None:
            return cached

        if inspect.isclass(implementation):
            points = self._class_constructors(implementation)
        else:
            points = (
                InjectionPoint(
                    name=_callable_name(implementation),
                    target=implementation,
                    dependencies=self._extract(implementation, skip_first_parameter=False),
                ),
            )

        with self._lock:
            self._points_cache[implementation] = points
        return points

    def fields(self, cls: type) -> tuple[Dependency, ...]:
        """Return class attributes annotated with ``Injected[...]``."""
        cached = self._fields_cache.get(cls)
        if cached is not None:
            return cached

        try:
            hints = get_type_hints(cls, include_extras=True)
        except (AttributeError, NameError, TypeError) as error:
            msg = f"Unable to read field annotations of '{_callable_name(cls)}': {error}"
            raise DigraftInvalidRegistrationError(msg) from error

        result: list[Dependency] = []
        for name, hint in hints.items():
            _, metadata = annotation_metadata(hint)
            if not any(isinstance(item, InjectedMarker) for item in metadata):
                continue
            result.append(self._dependency(name=name, annotation=hint, has_default=False))

        fields = tuple(result)
        with self._lock:
            self._fields_cache[cls] = fields
        return fields

    def _class_constructors(self, cls: type) -> tuple[InjectionPoint, ...]:
        points = [
            InjectionPoint(
                name=f"{_callable_name(cls)}.__init__",
                target=cls,
                dependencies=self._extract(cls.__init__, skip_first_parameter=True),
            ),
        ]
        seen: set[str] = set()
        for owner in cls.__mro__:
            for name, member in vars(owner).items():
                if name in seen or not isinstance(member, classmethod):
                    continue
                seen.add(name)
                if not is_constructor(member):
                    continue
                bound = getattr(cls, name)
                points.append(
                    InjectionPoint(
                        name=f"{_callable_name(cls)}.{name}",
                        target=bound,
                        dependencies=self._extract(bound, skip_first_parameter=False),
                    ),
                )
        return tuple(points)

    def _extract(self, func: Callable[..., Any], *, skip_first_parameter: bool) -> tuple[Dependency, ...]:
        try:
            parameters = tuple(inspect.signature(func).parameters.values())
        except (TypeError, ValueError):
            return ()
        if (
            skip_first_parameter
            and parameters
            and parameters[0].name in _IMPLICIT_FIRST_PARAMETER_NAMES
        ):
            parameters = parameters[1:]

        hints_source = getattr(func, "__func__", func)
        try:
            hints = get_type_hints(hints_source, include_extras=True)
            annotation_error: Exception | None = None
        except (AttributeError, NameError, TypeError) as error:
            hints = {}
            annotation_error = error

        dependencies: list[Dependency] = []
        for parameter in parameters:
            if parameter.kind in (Parameter.VAR_POSITIONAL, Parameter.VAR_KEYWORD):
                continue
            annotation = hints.get(parameter.name, _MISSING_ANNOTATION)
            if annotation is _MISSING_ANNOTATION:
                raw = parameter.annotation
                if raw is not Parameter.empty and not isinstance(raw, str):
                    annotation = raw
            has_default = parameter.default is not Parameter.empty
            if annotation is _MISSING_ANNOTATION:
                if has_default:
                    continue
                message = (
                    f"Unable to infer dependency for required parameter '{parameter.name}' "
                    f"of '{_callable_name(func)}'. Add a type annotation."
                )
                if annotation_error is not None:
                    message = f"{message} Original annotation error: {annotation_error}"
                raise DigraftInvalidRegistrationError(message) from annotation_error
            dependencies.append(
                self._dependency(
                    name=parameter.name,
                    annotation=annotation,
                    has_default=has_default,
                    kind=parameter.kind,
                ),
            )
        return tuple(dependencies)

    def _dependency(
        self,
        *,
        name: str,
        annotation: Any,
        has_default: bool,
        kind: Any = Parameter.POSITIONAL_OR_KEYWORD,
    ) -> Dependency:
        key, metadata = annotation_metadata(annotation)
        optional = any(isinstance(item, MaybeMarker) for item in metadata)
        group = any(isinstance(item, AllMarker) for item in metadata)
        context: dict[Any, Any] = {}
        for item in metadata:
            if isinstance(item, Context):
                context.update(item.values)

        inner = _strip_none(key)
        if inner is not None:
            key = inner
            optional = True
        key, _ = annotation_metadata(key)

        return Dependency(
            name=name,
            key=key,
            optional=optional,
            group=group,
            has_default=has_default,
            kind=kind,
            context=tuple(context.items()),
        )


def _strip_none(annotation: Any) -> Any | None:
    """Return ``T`` for ``T | None`` / ``Optional[T]``, otherwise ``None``."""
    origin = get_origin(annotation)
    if origin is not Union and origin is not types.UnionType:
        return None
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if len(args) != 1 or len(args) == len(get_args(annotation)):
        return None
    return args[0]


def _callable_name(func: Any) -> str:
    return getattr(func, "__qualname__", repr(func))


def factory_return_type(factory: Callable[..., Any]) -> Any:
    """Return the type produced by ``factory`` from its return annotation.

    Generator factories (``Generator[T, None, None]`` / ``Iterator[T]``)
    produce the yielded type ``T``.

    Raises:
        DigraftInvalidRegistrationError: If the annotation is missing or does
            not name a produced type.

    """
    name = _callable_name(factory)
    try:
        hints = get_type_hints(factory, include_extras=True)
        annotation_error: Exception | None = None
    except (AttributeError, NameError, TypeError) as error:
        hints = {}
        annotation_error = error

    annotation = hints.get("return", _MISSING_ANNOTATION)
    if annotation is _MISSING_ANNOTATION:
        try:
            raw = inspect.signature(factory).return_annotation
        except (TypeError, ValueError):
            raw = Parameter.empty
        if raw is not Parameter.empty and not isinstance(raw, str):
            annotation = raw

    if annotation is _MISSING_ANNOTATION or annotation is None or annotation is type(None):
        message = f"Factory '{name}' has no return annotation. Pass 'provides=' explicitly."
        if annotation_error is not None:
            message = f"{message} Original annotation error: {annotation_error}"
        raise DigraftInvalidRegistrationError(message) from annotation_error

    if inspect.isgeneratorfunction(factory):
        base, _ = annotation_metadata(annotation)
        if get_origin(base) not in _GENERATOR_ORIGINS or not get_args(base):
            msg = (
                f"Generator factory '{name}' must be annotated as "
                "`Generator[T, None, None]` or `Iterator[T]`."
            )
            raise DigraftInvalidRegistrationError(msg)
        return get_args(base)[0]
    return annotation

from __future__ import annotations

import inspect
import logging
from collections.abc import Generator, Sequence
from dataclasses import dataclass
from inspect import Parameter
from typing import Any, Protocol

from digraft.context import ContextDefinition
from digraft.dependencies import DependenciesExtractor, Dependency, InjectionPoint
from digraft.exceptions import (
    DigraftAmbiguousResolutionError,
    DigraftConstructionError,
    DigraftError,
    DigraftUnresolvedDependencyError,
)
from digraft.interceptors import InterceptorRegistration, intercept
from digraft.types import ComponentDeclaration, ShutdownJob

logger = logging.getLogger(__name__)

_SKIP = object()


class DependencyResolver(Protocol):
    """Callbacks the injector uses to obtain dependency values."""

    def resolve_dependency(self, dependency: Dependency, context: ContextDefinition) -> Any: ...

    def is_resolvable(self, dependency: Dependency) -> bool: ...

    def register_shutdown(self, job: ShutdownJob) -> None: ...

    def resolution_path(self) -> tuple[Any, ...]: ...

    def interceptors(self) -> Sequence[InterceptorRegistration]: ...


@dataclass(frozen=True, slots=True)
class PreparedConstruction:
    """A selected injection point with its resolved arguments."""

    point: InjectionPoint
    args: tuple[Any, ...]
    kwargs: dict[str, Any]


class DependencyInjector:
    """Select injection points and supply resolved dependency values.

    Constructor selection prefers candidates whose required parameters are all
    resolvable and, among those, the one with most parameters. Values are
    obtained from a ``DependencyResolver``, normally the dependency graph of
    the container that owns the component.
    """

    def __init__(self, extractor: DependenciesExtractor | None = None) -> None:
        self._extractor = extractor or DependenciesExtractor()

    @property
    def extractor(self) -> DependenciesExtractor:
        return self._extractor

    def select(
        self,
        declaration: ComponentDeclaration,
        resolver: DependencyResolver,
    ) -> InjectionPoint:
        """Pick the constructor to call for ``declaration``.

        Raises:
            DigraftUnresolvedDependencyError: If no candidate has all required
                parameters resolvable.
            DigraftAmbiguousResolutionError: If several candidates tie for the
                most parameters.

        """
        points = self._extractor.constructors(declaration.implementation)
        if len(points) == 1:
            return points[0]

        qualified = [point for point in points if not self._missing(point, resolver)]
        if not qualified:
            most_specific = max(points, key=lambda point: len(point.dependencies))
            raise DigraftUnresolvedDependencyError(
                declaration.api,
                missing=self._missing(most_specific, resolver),
                path=resolver.resolution_path(),
            )

        size = max(len(point.dependencies) for point in qualified)
        best = [point for point in qualified if len(point.dependencies) == size]
        if len(best) > 1:
            raise DigraftAmbiguousResolutionError(
                declaration.api,
                [point.name for point in best],
                path=resolver.resolution_path(),
            )
        return best[0]

    def prepare(
        self,
        declaration: ComponentDeclaration,
        context: ContextDefinition,
        resolver: DependencyResolver,
    ) -> PreparedConstruction:
        """Select a constructor and resolve its arguments."""
        point = self.select(declaration, resolver)
        args: list[Any] = []
        kwargs: dict[str, Any] = {}
        for dependency in point.dependencies:
            value = self._value(dependency, declaration, context, resolver)
            if value is _SKIP:
                continue
            if dependency.kind is Parameter.POSITIONAL_ONLY:
                args.append(value)
            else:
                kwargs[dependency.name] = value
        return PreparedConstruction(point=point, args=tuple(args), kwargs=kwargs)

    def construct(
        self,
        declaration: ComponentDeclaration,
        prepared: PreparedConstruction,
        resolver: DependencyResolver,
    ) -> Any:
        """Call the prepared constructor, unwrapping generator factories.

        Raises:
            DigraftConstructionError: If the constructor or factory raises a
                non-digraft exception.

        """
        try:
            instance = prepared.point.target(*prepared.args, **prepared.kwargs)
            if isinstance(instance, Generator):
                instance = self._start_generator(declaration, instance, resolver)
        except DigraftError:
            raise
        except Exception as error:
            raise DigraftConstructionError(
                declaration.api,
                declaration.implementation,
                error,
            ) from error
        return instance

    def inject_fields(
        self,
        instance: Any,
        declaration: ComponentDeclaration,
        context: ContextDefinition,
        resolver: DependencyResolver,
    ) -> Any:
        """Resolve and assign every ``Injected[...]`` class attribute of ``instance``."""
        for dependency in self._extractor.fields(type(instance)):
            value = self._value(dependency, declaration, context, resolver)
            if value is _SKIP:
                continue
            setattr(instance, dependency.name, value)
        return instance

    def _value(
        self,
        dependency: Dependency,
        declaration: ComponentDeclaration,
        context: ContextDefinition,
        resolver: DependencyResolver,
    ) -> Any:
        if dependency.key is ContextDefinition and not dependency.group:
            return context.narrow(*declaration.context)

        try:
            return intercept(
                resolver.interceptors(),
                dependency,
                dependency.edge_context(context),
                lambda: resolver.resolve_dependency(dependency, context),
            )
        except DigraftUnresolvedDependencyError:
            if dependency.optional:
                logger.debug(
                    "Optional dependency %r of %r is unresolved, injecting None",
                    dependency.key,
                    declaration.implementation,
                )
                return None
            if dependency.has_default:
                return _SKIP
            raise

    def _missing(self, point: InjectionPoint, resolver: DependencyResolver) -> list[Any]:
        return [
            dependency.key
            for dependency in point.dependencies
            if not (
                dependency.optional
                or dependency.has_default
                or dependency.group
                or dependency.key is ContextDefinition
                or resolver.is_resolvable(dependency)
            )
        ]

    def _start_generator(
        self,
        declaration: ComponentDeclaration,
        generator: Generator[Any, None, None],
        resolver: DependencyResolver,
    ) -> Any:
        try:
            instance = next(generator)
        except StopIteration as error:
            msg = f"Generator factory '{_name(declaration.implementation)}' did not yield a value."
            raise RuntimeError(msg) from error
        resolver.register_shutdown(
            ShutdownJob(
                name=f"close {_name(declaration.implementation)}",
                action=lambda: _finish_generator(generator),
            ),
        )
        return instance


def _name(value: Any) -> str:
    if inspect.isclass(value) or inspect.isroutine(value):
        return value.__qualname__
    return repr(value)


def _finish_generator(generator: Generator[Any, None, None]) -> None:
    """Run a generator factory's code after ``yield``."""
    try:
        next(generator)
    except StopIteration:
        return
    generator.close()
    msg = "Generator factory yielded more than once."
    raise RuntimeError(msg)

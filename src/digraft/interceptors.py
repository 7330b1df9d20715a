from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from digraft.context import ContextDefinition
    from digraft.dependencies import Dependency

logger = logging.getLogger(__name__)


@runtime_checkable
class DependencyInterceptor(Protocol):
    """Wrap or replace the value injected for a dependency.

    ``intercept`` is called once per injected parameter or field with the
    dependency being satisfied, the context of the dependency edge and a
    ``proceed`` callable producing the value the container would inject. An
    interceptor may return that value, a wrapper around it, or a replacement
    without calling ``proceed`` at all.
    """

    def intercept(
        self,
        dependency: Dependency,
        context: ContextDefinition,
        proceed: Callable[[], Any],
    ) -> Any: ...


@dataclass(frozen=True, slots=True)
class InterceptorRegistration:
    """An interceptor and the context keys an edge must carry for it to apply."""

    interceptor: DependencyInterceptor
    context: frozenset[Any] = frozenset()

    def applies(self, context: ContextDefinition) -> bool:
        values = context.values()
        return all(key in values for key in self.context)


def intercept(
    registrations: Iterable[InterceptorRegistration],
    dependency: Dependency,
    context: ContextDefinition,
    obtain: Callable[[], Any],
) -> Any:
    """Obtain a dependency value through every applicable interceptor.

    Interceptors run in registration order: the first one receives a
    ``proceed`` that calls the second, and the last one's ``proceed`` calls
    ``obtain``.
    """
    chain = [
        registration.interceptor
        for registration in registrations
        if registration.applies(context)
    ]
    if not chain:
        return obtain()

    logger.debug("Intercepting %r with %d interceptor(s)", dependency.key, len(chain))
    return _proceed(chain, 0, dependency, context, obtain)


def _proceed(
    chain: Sequence[DependencyInterceptor],
    index: int,
    dependency: Dependency,
    context: ContextDefinition,
    obtain: Callable[[], Any],
) -> Any:
    if index == len(chain):
        return obtain()
    return chain[index].intercept(
        dependency,
        context,
        lambda: _proceed(chain, index + 1, dependency, context, obtain),
    )

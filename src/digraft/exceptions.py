from __future__ import annotations

from collections.abc import Sequence
from typing import Any


def _format_key(key: Any) -> str:
    qualname = getattr(key, "__qualname__", None)
    if qualname is not None:
        return qualname
    return repr(key)


def _format_path(path: Sequence[Any]) -> str:
    return " -> ".join(_format_key(item) for item in path)


class DigraftError(Exception):
    """Represent a base class for all digraft-specific failures.

    Catch this type when you want to handle any digraft error path without
    matching each concrete exception class individually.
    """


class DigraftInvalidRegistrationError(DigraftError):
    """Signal invalid registration configuration.

    Raised by ``Container.register``, ``Container.add_factory`` and
    ``Container.bind_instance`` when arguments are invalid, for example when a
    factory has no usable return annotation and ``provides`` is omitted.
    """


class DigraftBindingFrozenError(DigraftInvalidRegistrationError):
    """Signal an explicit binding for an API that has already been resolved.

    Bindings are frozen once used: after ``resolve`` has cached an instance for
    an API, ``bind_instance`` for the same API on the same container fails.

    Typical fix is binding every explicit instance before the first resolution,
    or binding it in a child container created for that purpose.
    """

    def __init__(self, api: Any) -> None:
        self.api = api
        super().__init__(
            f"Cannot bind {_format_key(api)}: it has already been resolved and cached.",
        )


class DigraftInvalidContextError(DigraftError):
    """Signal an invalid context key or value.

    Context values take part in cache fingerprints, so both keys and values
    must be hashable.
    """


class DigraftResolutionError(DigraftError):
    """Represent a failure to resolve the dependency graph of an API.

    Carries the requested ``api`` and the resolution ``path`` (outermost
    request first) at the point of failure.
    """

    def __init__(self, message: str, *, api: Any, path: Sequence[Any] = ()) -> None:
        self.api = api
        self.path = tuple(path)
        if self.path:
            message = f"{message} Resolution path: {_format_path(self.path)}."
        super().__init__(message)


class DigraftUnresolvedDependencyError(DigraftResolutionError):
    """Signal that no implementation exists for a required dependency.

    Raised by ``resolve`` when neither the container, its parents, nor
    autoregistration can supply a candidate, and by constructor selection when
    no constructor has all of its required parameters resolvable.

    Typical fixes include registering an implementation for the API, binding
    an instance, or marking the dependency optional with ``Maybe[T]``.
    """

    def __init__(
        self,
        api: Any,
        *,
        missing: Sequence[Any] = (),
        path: Sequence[Any] = (),
    ) -> None:
        self.missing = tuple(missing) or (api,)
        if missing:
            missing_names = ", ".join(_format_key(key) for key in self.missing)
            message = f"Cannot resolve {_format_key(api)}: missing dependencies {missing_names}."
        else:
            message = f"No implementation found for {_format_key(api)}."
        super().__init__(message, api=api, path=path)


class DigraftAmbiguousResolutionError(DigraftResolutionError):
    """Signal that several equally eligible candidates exist for one API.

    Typical fixes include removing one registration, binding the API
    explicitly, or declaring ``overrides=`` on the preferred implementation.
    """

    def __init__(
        self,
        api: Any,
        candidates: Sequence[Any],
        *,
        path: Sequence[Any] = (),
    ) -> None:
        self.candidates = tuple(candidates)
        candidate_names = ", ".join(_format_key(candidate) for candidate in self.candidates)
        super().__init__(
            f"Ambiguous resolution for {_format_key(api)}: candidates {candidate_names}.",
            api=api,
            path=path,
        )


class DigraftCircularDependencyError(DigraftResolutionError):
    """Signal a dependency cycle that cannot be broken.

    Concrete-to-concrete cycles have no seam to defer construction through.
    Cycles are tolerated only when at least one dependency on the cycle is
    requested through an interface (an abstract class or a protocol).

    Also raised when a deferred reference is used before the component it
    points to has finished construction.
    """

    def __init__(self, api: Any, path: Sequence[Any], *, reason: str | None = None) -> None:
        message = reason or f"Circular dependency detected for {_format_key(api)}."
        super().__init__(message, api=api, path=path)


class DigraftConstructionError(DigraftError):
    """Signal that a constructor or factory raised while building a component.

    The original exception is chained as ``__cause__``. Construction failures
    are cached for the failing fingerprint so a second request does not retry
    construction with partially-applied side effects; call
    ``Container.clear_cache`` to retry.
    """

    def __init__(self, api: Any, implementation: Any, error: BaseException) -> None:
        self.api = api
        self.implementation = implementation
        self.error = error
        super().__init__(
            f"Failed to construct {_format_key(implementation)} for {_format_key(api)}: "
            f"{type(error).__name__}: {error}",
        )


class DigraftTerminationError(DigraftError):
    """Signal that one or more shutdown jobs failed.

    All jobs are attempted before this error is raised; ``failures`` holds
    ``(job, exception)`` pairs in execution order.
    """

    def __init__(self, failures: Sequence[tuple[Any, BaseException]]) -> None:
        self.failures = tuple(failures)
        names = ", ".join(getattr(job, "name", repr(job)) for job, _ in self.failures)
        super().__init__(f"{len(self.failures)} shutdown job(s) failed: {names}.")

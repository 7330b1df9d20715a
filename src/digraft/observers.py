from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class ResolutionObserver(Protocol):
    """Receive a notification for every successful resolution.

    ``requested`` is the API that was asked for and ``resolved`` the
    implementation (class or factory) that satisfied it.
    """

    def on_resolved(self, requested: Any, resolved: Any) -> None: ...


class CompositeObserver:
    """Fan a notification out to several observers in registration order."""

    __slots__ = ("_observers",)

    def __init__(self, observers: Iterable[ResolutionObserver] = ()) -> None:
        self._observers: tuple[ResolutionObserver, ...] = tuple(observers)

    @classmethod
    def combine(cls, *observers: ResolutionObserver | None) -> CompositeObserver:
        """Flatten observers and nested composites into one composite."""
        flat: list[ResolutionObserver] = []
        for observer in observers:
            if observer is None:
                continue
            if isinstance(observer, CompositeObserver):
                flat.extend(observer._observers)
            else:
                flat.append(observer)
        return cls(flat)

    def on_resolved(self, requested: Any, resolved: Any) -> None:
        for observer in self._observers:
            observer.on_resolved(requested, resolved)

    def __bool__(self) -> bool:
        return bool(self._observers)

    def __len__(self) -> int:
        return len(self._observers)


class LoggingObserver:
    """Log every resolution at DEBUG level."""

    def __init__(self, log: logging.Logger | None = None) -> None:
        self._log = log or logger

    def on_resolved(self, requested: Any, resolved: Any) -> None:
        self._log.debug("Resolved %r with %r", requested, resolved)

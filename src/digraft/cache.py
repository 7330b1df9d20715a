from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any, TypeVar

from digraft.context import Fingerprint
from digraft.types import Lifetime

T = TypeVar("T")

logger = logging.getLogger(__name__)

CacheKey = tuple[Any, Fingerprint]


class ComponentCache:
    """Map (component, context fingerprint) pairs to single constructed instances.

    Each entry is a single-assignment cell (a ``concurrent.futures.Future``).
    The first caller for a key runs the factory and publishes the outcome;
    concurrent callers block on the cell and observe the same instance or the
    same exception. Failures stay cached and are re-raised to later callers,
    except for exception types listed in ``evict_on``: those are delivered to
    the current waiters and the cell is dropped so a later request computes
    again.

    The factory runs without any cache lock held, so it may resolve further
    components through the same cache.
    """

    __slots__ = ("_cells", "_evict_on", "_lock")

    def __init__(self, *, evict_on: tuple[type[BaseException], ...] = ()) -> None:
        self._cells: dict[CacheKey, Future[Any]] = {}
        self._evict_on = evict_on
        self._lock = threading.Lock()

    def get_or_create(
        self,
        component: Any,
        fingerprint: Fingerprint,
        factory: Callable[[], T],
        *,
        lifetime: Lifetime = Lifetime.STATELESS,
    ) -> T:
        """Return the cached instance for the key, constructing it at most once.

        Args:
            component: Component identity, usually its implementation.
            fingerprint: Context fingerprint of the request.
            factory: Zero-argument callable building the instance.
            lifetime: ``Lifetime.STATEFUL`` bypasses the cache and calls
                ``factory`` every time.

        Returns:
            The instance produced by the single factory call for the key.

        """
        if lifetime is Lifetime.STATEFUL:
            return factory()

        key = (component, fingerprint)
        with self._lock:
            cell = self._cells.get(key)
            owner = cell is None
            if cell is None:
                cell = Future()
                cell.set_running_or_notify_cancel()
                self._cells[key] = cell

        if not owner:
            if not cell.done():
                logger.debug("Waiting for %r%s", component, _describe(fingerprint))
            result = cell.result()
            logger.debug("Reusing %r%s", component, _describe(fingerprint))
            return result

        try:
            instance = factory()
        except BaseException as error:
            cell.set_exception(error)
            if isinstance(error, self._evict_on):
                self._discard(key, cell)
            raise

        cell.set_result(instance)
        logger.debug("Created %r%s", component, _describe(fingerprint))
        return instance

    def lookup(self, component: Any, fingerprint: Fingerprint, default: Any = None) -> Any:
        """Return a completed instance for the key or ``default``.

        Cells still under construction or holding a failure return ``default``.
        """
        with self._lock:
            cell = self._cells.get((component, fingerprint))
        if cell is None or not cell.done() or cell.exception() is not None:
            return default
        return cell.result()

    def clear(self) -> None:
        """Drop every entry, including cached failures."""
        with self._lock:
            self._cells.clear()

    def _discard(self, key: CacheKey, cell: Future[Any]) -> None:
        with self._lock:
            if self._cells.get(key) is cell:
                del self._cells[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._cells)


def _describe(fingerprint: Fingerprint) -> str:
    if not fingerprint:
        return ""
    pairs = ", ".join(f"{key!r}={value!r}" for key, value in sorted(fingerprint, key=repr))
    return f" for context {{{pairs}}}"

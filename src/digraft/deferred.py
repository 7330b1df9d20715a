from __future__ import annotations

import threading
from collections.abc import Sequence
from typing import Any

from digraft.exceptions import DigraftCircularDependencyError

_UNSET = object()


class DeferredReference:
    """Stand-in for a component that is still under construction.

    The dependency graph hands a ``DeferredReference`` to a component that
    depends, through an interface, on a component further up the resolution
    path. The reference is created eagerly; its target is published with
    ``_bind`` once the upstream component finishes construction and is read
    under a lock on first use, then memoized.

    Using the reference before the target is published raises
    ``DigraftCircularDependencyError``, so a constructor may store the
    reference but must not call into it.
    """

    __slots__ = ("__weakref__", "_api", "_lock", "_path", "_target")

    def __init__(self, api: Any, path: Sequence[Any]) -> None:
        object.__setattr__(self, "_api", api)
        object.__setattr__(self, "_path", tuple(path))
        object.__setattr__(self, "_lock", threading.Lock())
        object.__setattr__(self, "_target", _UNSET)

    def _bind(self, target: Any) -> None:
        with object.__getattribute__(self, "_lock"):
            object.__setattr__(self, "_target", target)

    def _resolved(self) -> Any:
        target = object.__getattribute__(self, "_target")
        if target is not _UNSET:
            return target
        with object.__getattribute__(self, "_lock"):
            target = object.__getattribute__(self, "_target")
        if target is _UNSET:
            api = object.__getattribute__(self, "_api")
            raise DigraftCircularDependencyError(
                api,
                object.__getattribute__(self, "_path"),
                reason=(
                    f"Deferred reference to {getattr(api, '__qualname__', api)!s} "
                    "was used before the component finished construction."
                ),
            )
        return target

    @property
    def is_bound(self) -> bool:
        return object.__getattribute__(self, "_target") is not _UNSET

    @property  # type: ignore[misc]
    def __class__(self) -> type:  # noqa: D105
        target = object.__getattribute__(self, "_target")
        if target is _UNSET:
            return DeferredReference
        return type(target)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._resolved(), name)

    def __setattr__(self, name: str, value: Any) -> None:
        setattr(self._resolved(), name, value)

    def __delattr__(self, name: str) -> None:
        delattr(self._resolved(), name)

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self._resolved()(*args, **kwargs)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, DeferredReference):
            other = other._resolved()
        return self._resolved() == other

    def __ne__(self, other: object) -> bool:
        return not self == other

    def __hash__(self) -> int:
        return hash(self._resolved())

    def __bool__(self) -> bool:
        return bool(self._resolved())

    def __len__(self) -> int:
        return len(self._resolved())

    def __iter__(self) -> Any:
        return iter(self._resolved())

    def __contains__(self, item: object) -> bool:
        return item in self._resolved()

    def __getitem__(self, key: Any) -> Any:
        return self._resolved()[key]

    def __str__(self) -> str:
        return str(self._resolved())

    def __repr__(self) -> str:
        target = object.__getattribute__(self, "_target")
        api = object.__getattribute__(self, "_api")
        if target is _UNSET:
            return f"<DeferredReference to {getattr(api, '__qualname__', api)} (unbound)>"
        return repr(target)

    def __enter__(self) -> Any:
        return self._resolved().__enter__()

    def __exit__(self, *exc_info: Any) -> Any:
        return self._resolved().__exit__(*exc_info)


from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Annotated, Any, TypeVar, Union, get_args, get_origin

from digraft.types import Lifetime

T = TypeVar("T")
C = TypeVar("C", bound=type[Any])
F = TypeVar("F", bound=Callable[..., Any])

_ANNOTATED_MARKER_MIN_ARGS = 2
COMPONENT_ATTR = "__digraft_component__"
CONSTRUCTOR_ATTR = "__digraft_constructor__"


class InjectedMarker:
    """Marker for class attributes that are filled by field injection."""


class MaybeMarker:
    """Marker that indicates dependency is optional and may resolve to ``None``."""


@dataclass(frozen=True, slots=True)
class AllMarker:
    """Marker for collecting every implementation and group member of a key."""

    dependency_key: Any


class Context:
    """Contribute context to the subgraph of one dependency.

    ``Annotated[Store, Context(region="eu")]`` extends the resolution context
    passed to ``Store`` and everything it depends on. Values must be hashable.

    Examples:
        .. code-block:: python

            class Reports:
                def __init__(self, store: Annotated[Store, Context(region="eu")]) -> None:
                    self.store = store

    """

    __slots__ = ("values",)

    def __init__(self, values: Mapping[Any, Any] | None = None, /, **kwargs: Any) -> None:
        merged = dict(values or {})
        merged.update(kwargs)
        self.values: tuple[tuple[Any, Any], ...] = tuple(merged.items())

    def as_dict(self) -> dict[Any, Any]:
        return dict(self.values)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Context) and dict(self.values) == dict(other.values)

    def __hash__(self) -> int:
        return hash(frozenset(self.values))

    def __repr__(self) -> str:
        items = ", ".join(f"{key!r}: {value!r}" for key, value in self.values)
        return f"Context({{{items}}})"


@dataclass(frozen=True, slots=True, kw_only=True)
class ComponentSpec:
    """Component metadata attached to a class by the ``component`` decorator."""

    api: Any = None
    lifetime: Lifetime | None = None
    groups: tuple[Any, ...] = ()
    context: frozenset[Any] = frozenset()
    overrides: tuple[Any, ...] = ()


def component(
    api: Any = None,
    *,
    lifetime: Lifetime | None = None,
    groups: Iterable[Any] = (),
    context: Iterable[Any] = (),
    overrides: Iterable[Any] = (),
) -> Callable[[C], C]:
    """Mark a class as a component and record its declaration metadata.

    The decorator only records metadata; registration happens through
    ``Container.register`` or a discovery strategy such as
    ``ModuleScanDiscovery``.

    Args:
        api: API type the class implements. Defaults to the class itself.
        lifetime: ``Lifetime.STATELESS`` (shared) or ``Lifetime.STATEFUL``
            (fresh per request). Defaults to the container default.
        groups: Group tags the component belongs to (see ``All[...]``).
        context: Context keys the component recognizes.
        overrides: Implementation types this component replaces when both are
            candidates for the same API.

    Returns:
        A class decorator.

    """

    def decorator(cls: C) -> C:
        setattr(
            cls,
            COMPONENT_ATTR,
            ComponentSpec(
                api=api,
                lifetime=lifetime,
                groups=tuple(groups),
                context=frozenset(context),
                overrides=tuple(overrides),
            ),
        )
        return cls

    return decorator


def component_spec(cls: Any) -> ComponentSpec | None:
    """Return metadata declared directly on ``cls`` (not inherited)."""
    try:
        return vars(cls).get(COMPONENT_ATTR)
    except TypeError:
        return None


def constructor(func: F) -> F:
    """Mark a class method as an alternative injection constructor.

    Apply below ``@classmethod``. Among ``__init__`` and marked class methods
    the injector prefers the resolvable constructor with most parameters.
    """
    target = func.__func__ if isinstance(func, classmethod) else func
    setattr(target, CONSTRUCTOR_ATTR, True)
    return func


def is_constructor(member: Any) -> bool:
    target = member.__func__ if isinstance(member, classmethod) else member
    return bool(getattr(target, CONSTRUCTOR_ATTR, False))


if TYPE_CHECKING:
    Injected = Union[T, T]  # noqa: UP007,PYI016
    """Mark a class attribute for field injection."""

    Maybe = T | None  # type: ignore[misc]
    """Mark a dependency as explicitly optional."""

    All = tuple[T, ...]
    """Resolve all implementations and group members of a key as a tuple."""

else:

    class Injected:
        """Mark a class attribute for field injection.

        At runtime ``Injected[T]`` resolves to ``Annotated[T, InjectedMarker()]``.

        Examples:
            .. code-block:: python

                class Handler:
                    repository: Injected[Repository]

        """

        def __class_getitem__(cls, item: T) -> Annotated[T, InjectedMarker]:
            return _append_marker(item, InjectedMarker())

    class Maybe:
        """Mark a dependency as explicitly optional.

        At runtime ``Maybe[T]`` resolves to ``Annotated[T, MaybeMarker()]``.
        An unresolvable optional dependency is injected as ``None``.
        """

        def __class_getitem__(cls, item: T) -> Annotated[T, MaybeMarker]:
            return _append_marker(item, MaybeMarker())

    class All:
        """Resolve all implementations and group members of a key.

        ``All[T]`` resolves to a tuple holding every implementation registered
        for ``T`` plus every component tagged with group ``T``, in declaration
        order. It is an empty tuple when nothing matches.
        """

        def __class_getitem__(cls, item: Any) -> Any:
            base_key = item
            if get_origin(item) is Annotated:
                base_key = get_args(item)[0]
            return build_annotated((base_key, AllMarker(dependency_key=base_key)))


def annotation_metadata(annotation: Any) -> tuple[Any, tuple[Any, ...]]:
    """Split an annotation into its base type and ``Annotated`` metadata."""
    if get_origin(annotation) is not Annotated:
        return annotation, ()
    annotation_args = get_args(annotation)
    if len(annotation_args) < _ANNOTATED_MARKER_MIN_ARGS:
        return annotation_args[0], ()  # pragma: no cover - Annotated requires metadata
    return annotation_args[0], tuple(annotation_args[1:])


def is_injected_annotation(annotation: Any) -> bool:
    _, metadata = annotation_metadata(annotation)
    return any(isinstance(item, InjectedMarker) for item in metadata)


def build_annotated(params: tuple[object, ...]) -> Any:
    """Return Annotated[...] with a pre-built params tuple (Py 3.10+ compatible)."""
    try:
        return Annotated.__class_getitem__(params)  # type: ignore[attr-defined]
    except AttributeError:
        return Annotated.__getitem__(params)  # type: ignore[attr-defined]


def _append_marker(item: Any, marker: object) -> Any:
    if get_origin(item) is Annotated:
        args = get_args(item)
        return build_annotated((args[0], *args[1:], marker))
    return build_annotated((item, marker))

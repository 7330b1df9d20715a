"""Dependency graph traversal.

Resolution walks the dependency graph depth first. Every request becomes a
``GraphNode`` on a per-thread resolution path held in a ``ContextVar``; the
path drives cycle detection and error reporting. Nodes move through
``NodeState`` as they are resolved::

    REQUESTED -> CANDIDATE_SELECTED -> ARGUMENTS_RESOLVING -> CONSTRUCTING
              -> CACHED | TRANSIENT -> DONE

with ``ERROR`` reachable from every non-terminal state. A cache hit goes
straight from ``CANDIDATE_SELECTED`` to ``CACHED``.

A request that recurs on the path with the same declaration and context
fingerprint is a cycle. It is tolerated when some edge of the cycle requests
an interface, an abstract class or a protocol distinct from the
implementation:

- if the recurring request itself is such an edge, the requester receives a
  ``DeferredReference`` bound to the upstream instance once that instance has
  been constructed;
- otherwise resolution unwinds to the innermost interface edge between the
  upstream entry and the recurrence. That edge receives the
  ``DeferredReference``, and it is resolved and bound right after the
  upstream entry has been constructed.

A cycle without an interface edge fails with ``DigraftCircularDependencyError``.

Construction of stateless components is serialized per container level, so a
cycle is always observed on the path of a single thread.
"""

from __future__ import annotations

import inspect
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from enum import Enum
from typing import TYPE_CHECKING, Any

from digraft.context import ContextDefinition, Fingerprint
from digraft.deferred import DeferredReference
from digraft.dependencies import Dependency
from digraft.exceptions import (
    DigraftAmbiguousResolutionError,
    DigraftCircularDependencyError,
    DigraftError,
    DigraftResolutionError,
    DigraftUnresolvedDependencyError,
)
from digraft.types import ComponentDeclaration, Lifetime, ShutdownJob

if TYPE_CHECKING:
    from digraft.container import Container
    from digraft.interceptors import InterceptorRegistration

logger = logging.getLogger(__name__)

_MISSING = object()

_resolution_path: ContextVar[tuple[GraphNode, ...]] = ContextVar(
    "digraft_resolution_path",
    default=(),
)


class NodeState(Enum):
    """Lifecycle of one resolution request."""

    REQUESTED = "requested"
    CANDIDATE_SELECTED = "candidate_selected"
    ARGUMENTS_RESOLVING = "arguments_resolving"
    CONSTRUCTING = "constructing"
    CACHED = "cached"
    TRANSIENT = "transient"
    DONE = "done"
    ERROR = "error"


_TRANSITIONS: dict[NodeState, frozenset[NodeState]] = {
    NodeState.REQUESTED: frozenset({NodeState.CANDIDATE_SELECTED, NodeState.ERROR}),
    NodeState.CANDIDATE_SELECTED: frozenset(
        {NodeState.ARGUMENTS_RESOLVING, NodeState.CACHED, NodeState.TRANSIENT, NodeState.ERROR},
    ),
    NodeState.ARGUMENTS_RESOLVING: frozenset(
        {NodeState.CONSTRUCTING, NodeState.TRANSIENT, NodeState.ERROR},
    ),
    NodeState.CONSTRUCTING: frozenset({NodeState.CACHED, NodeState.TRANSIENT, NodeState.ERROR}),
    NodeState.CACHED: frozenset({NodeState.DONE, NodeState.ERROR}),
    NodeState.TRANSIENT: frozenset({NodeState.DONE, NodeState.ERROR}),
    NodeState.DONE: frozenset(),
    NodeState.ERROR: frozenset(),
}


class GraphNode:
    """One in-flight resolution request."""

    __slots__ = (
        "api",
        "context",
        "declaration",
        "deferred",
        "fingerprint",
        "instance",
        "pending",
        "published",
        "state",
    )

    def __init__(self, api: Any, context: ContextDefinition) -> None:
        self.api = api
        self.context = context
        self.declaration: ComponentDeclaration | None = None
        self.fingerprint: Fingerprint = frozenset()
        self.state = NodeState.REQUESTED
        # references bound to this node's instance
        self.deferred: list[DeferredReference] = []
        # interface edges resolved once this node's instance exists
        self.pending: list[tuple[DeferredReference, DependencyGraph, GraphNode]] = []
        self.instance: Any = None
        self.published = False

    def advance(self, state: NodeState) -> None:
        if state not in _TRANSITIONS[self.state]:
            msg = f"Invalid node transition {self.state.name} -> {state.name} for {self.api!r}."
            raise DigraftError(msg)
        logger.debug("%r: %s -> %s", self.api, self.state.name, state.name)
        self.state = state

    def fail(self) -> None:
        if _TRANSITIONS[self.state]:
            self.state = NodeState.ERROR

    def matches(self, declaration: ComponentDeclaration, fingerprint: Fingerprint) -> bool:
        return self.declaration is declaration and self.fingerprint == fingerprint

    def __repr__(self) -> str:
        return f"GraphNode({self.api!r}, {self.state.name})"


def current_path() -> tuple[Any, ...]:
    """Return the APIs on the current thread's resolution path, outermost first."""
    return tuple(node.api for node in _resolution_path.get())


def is_interface(api: Any) -> bool:
    """Return whether ``api`` is an abstract class or a ``typing.Protocol``."""
    if not inspect.isclass(api):
        return False
    return inspect.isabstract(api) or bool(getattr(api, "_is_protocol", False))


def _is_seam(node: GraphNode) -> bool:
    declaration = node.declaration
    return (
        declaration is not None
        and is_interface(node.api)
        and node.api is not declaration.implementation
    )


class _UnwindToInterface(DigraftCircularDependencyError):
    """Carry a cycle from its point of recurrence up to an interface edge."""

    def __init__(self, edge: GraphNode, ancestor: GraphNode, path: tuple[Any, ...]) -> None:
        self.edge = edge
        self.ancestor = ancestor
        super().__init__(edge.api, path)


class DependencyGraph:
    """Resolve components of one container level.

    The graph selects candidates through its container, delegates to parent
    levels for APIs the container does not declare, computes context
    fingerprints, and hands construction to the container's injector and
    cache. It implements the ``DependencyResolver`` callbacks the injector
    uses for nested dependencies.
    """

    def __init__(self, container: Container) -> None:
        self._container = container
        self._consumed: dict[ComponentDeclaration, frozenset[Any]] = {}
        self._consumed_version = -1
        self._lock = threading.Lock()

    @property
    def container(self) -> Container:
        return self._container

    def resolve(self, api: Any, context: ContextDefinition) -> Any:
        """Resolve ``api`` in ``context``, delegating to parents when needed."""
        node = GraphNode(api, context)
        try:
            owner, declaration = self.select(api)
            node.declaration = declaration
            node.advance(NodeState.CANDIDATE_SELECTED)
        except BaseException:
            node.fail()
            raise

        instance = owner.resolve_node(node)
        self._container._notify(api, declaration.implementation)
        return instance

    def resolve_group(self, tag: Any, context: ContextDefinition) -> tuple[Any, ...]:
        """Resolve every member of ``tag``, parent levels first."""
        instances: list[Any] = []
        for owner, declaration in self.group_members(tag):
            node = GraphNode(tag, context)
            node.declaration = declaration
            node.advance(NodeState.CANDIDATE_SELECTED)
            instances.append(owner.resolve_node(node))
            self._container._notify(tag, declaration.implementation)
        return tuple(instances)

    def select(self, api: Any) -> tuple[DependencyGraph, ComponentDeclaration]:
        """Find the level and declaration that satisfy ``api``.

        Raises:
            DigraftAmbiguousResolutionError: If a level offers several candidates.
            DigraftUnresolvedDependencyError: If no level offers a candidate.

        """
        found = self.find(api)
        if found is None:
            raise DigraftUnresolvedDependencyError(api, path=(*current_path(), api))
        return found

    def find(
        self,
        api: Any,
        *,
        autoregister: bool = True,
    ) -> tuple[DependencyGraph, ComponentDeclaration] | None:
        level: Container | None = self._container
        while level is not None:
            declarations = level._candidates(api)
            if len(declarations) > 1:
                raise DigraftAmbiguousResolutionError(
                    api,
                    [declaration.implementation for declaration in declarations],
                    path=(*current_path(), api),
                )
            if declarations:
                return level._graph, declarations[0]
            level = level.parent

        if autoregister:
            declaration = self._container._autoregister(api)
            if declaration is not None:
                return self, declaration
        return None

    def group_members(self, tag: Any) -> list[tuple[DependencyGraph, ComponentDeclaration]]:
        levels: list[Container] = []
        level: Container | None = self._container
        while level is not None:
            levels.append(level)
            level = level.parent

        members: list[tuple[DependencyGraph, ComponentDeclaration]] = []
        for level in reversed(levels):
            members.extend((level._graph, declaration) for declaration in level._group(tag))
        return members

    def resolve_node(self, node: GraphNode) -> Any:
        """Resolve a node whose declaration belongs to this level."""
        declaration = node.declaration
        assert declaration is not None
        path = _resolution_path.get()

        try:
            node.fingerprint = self.fingerprint(declaration, node.context)
            for ancestor in path:
                if ancestor.matches(declaration, node.fingerprint):
                    return self._recur(node, ancestor, path)

            token = _resolution_path.set((*path, node))
            try:
                instance = self._obtain(node)
            except _UnwindToInterface as unwind:
                if unwind.edge is not node:
                    raise
                instance = self._defer_edge(node, unwind)
            finally:
                _resolution_path.reset(token)
            node.advance(NodeState.DONE)
        except BaseException:
            node.fail()
            raise
        return instance

    def _recur(self, node: GraphNode, ancestor: GraphNode, path: tuple[GraphNode, ...]) -> Any:
        if ancestor.published:
            node.advance(NodeState.CACHED)
            node.advance(NodeState.DONE)
            return ancestor.instance

        apis = (*(entry.api for entry in path), node.api)
        if _is_seam(node):
            logger.debug("Deferring %r to break cycle %s", node.api, apis)
            deferred = DeferredReference(node.api, apis)
            ancestor.deferred.append(deferred)
            node.advance(NodeState.TRANSIENT)
            node.advance(NodeState.DONE)
            return deferred

        segment = path[path.index(ancestor) + 1 :]
        for entry in reversed(segment):
            if _is_seam(entry):
                raise _UnwindToInterface(entry, ancestor, apis)
        raise DigraftCircularDependencyError(node.api, apis)

    def _defer_edge(self, node: GraphNode, unwind: _UnwindToInterface) -> DeferredReference:
        logger.debug("Deferring %r to break cycle %s", node.api, unwind.path)
        deferred = DeferredReference(node.api, unwind.path)
        unwind.ancestor.pending.append((deferred, self, node))
        node.advance(NodeState.TRANSIENT)
        return deferred

    def _obtain(self, node: GraphNode) -> Any:
        declaration = node.declaration
        assert declaration is not None

        if declaration.is_binding:
            node.advance(NodeState.CACHED)
            return declaration.instance

        cache = self._container._cache
        if declaration.lifetime is Lifetime.STATEFUL:
            return cache.get_or_create(
                declaration,
                node.fingerprint,
                lambda: self._construct(node),
                lifetime=Lifetime.STATEFUL,
            )

        instance = cache.lookup(declaration, node.fingerprint, _MISSING)
        if instance is _MISSING:
            constructed = False

            def factory() -> Any:
                nonlocal constructed
                constructed = True
                return self._construct(node)

            with self._container._construction_lock:
                instance = cache.get_or_create(declaration, node.fingerprint, factory)
            if not constructed:
                node.advance(NodeState.CACHED)
        else:
            node.advance(NodeState.CACHED)
        self._container._mark_resolved(node.api, declaration)
        return instance

    def _construct(self, node: GraphNode) -> Any:
        declaration = node.declaration
        assert declaration is not None
        injector = self._container._injector

        node.advance(NodeState.ARGUMENTS_RESOLVING)
        prepared = injector.prepare(declaration, node.context, self)
        node.advance(NodeState.CONSTRUCTING)
        instance = injector.construct(declaration, prepared, self)
        if declaration.constructs_class:
            injector.inject_fields(instance, declaration, node.context, self)

        for deferred in node.deferred:
            deferred._bind(instance)
        if node.pending:
            node.instance = instance
            node.published = True
            for deferred, owner, edge in node.pending:
                deferred._bind(owner.resolve_node(_reissue(edge)))
        node.advance(
            NodeState.CACHED if declaration.lifetime is Lifetime.STATELESS else NodeState.TRANSIENT,
        )
        return instance

    def instantiate(self, declaration: ComponentDeclaration, context: ContextDefinition) -> Any:
        """Construct ``declaration`` without caching it."""
        node = GraphNode(declaration.api, context)
        node.declaration = declaration
        node.advance(NodeState.CANDIDATE_SELECTED)
        return self.resolve_node(node)

    def initialize(self, instance: Any, context: ContextDefinition) -> Any:
        """Inject ``Injected[...]`` fields of an existing object."""
        declaration = ComponentDeclaration(
            api=type(instance),
            implementation=type(instance),
            lifetime=Lifetime.STATEFUL,
        )
        return self._container._injector.inject_fields(instance, declaration, context, self)

    # DependencyResolver callbacks

    def resolve_dependency(self, dependency: Dependency, context: ContextDefinition) -> Any:
        edge_context = dependency.edge_context(context)
        if dependency.group:
            return self.resolve_group(dependency.key, edge_context)
        return self.resolve(dependency.key, edge_context)

    def is_resolvable(self, dependency: Dependency) -> bool:
        try:
            return self.find(dependency.key) is not None
        except DigraftResolutionError:
            return False

    def register_shutdown(self, job: ShutdownJob) -> None:
        self._container.termination.add(job)

    def interceptors(self) -> tuple[InterceptorRegistration, ...]:
        """Return interceptors of this level and its parents, parents first."""
        registrations: list[InterceptorRegistration] = []
        level: Container | None = self._container
        while level is not None:
            registrations[:0] = level._interceptors
            level = level.parent
        return tuple(registrations)

    def resolution_path(self) -> tuple[Any, ...]:
        return current_path()

    # Context fingerprints

    def fingerprint(self, declaration: ComponentDeclaration, context: ContextDefinition) -> Fingerprint:
        """Return the cache fingerprint of ``declaration`` in ``context``.

        The fingerprint covers the keys the component consumes: its own
        recognized keys plus the keys consumed by its dependencies that are
        not fixed by ``Context`` markers on the dependency edge.
        """
        if declaration.is_binding:
            return frozenset()
        keys = self.consumed_keys(declaration)
        if not keys:
            return frozenset()
        return context.narrow(*keys).fingerprint()

    def consumed_keys(self, declaration: ComponentDeclaration) -> frozenset[Any]:
        """Return the context keys ``declaration`` and its dependency subgraph consume.

        Results for stateless declarations are memoized until the next
        registration on this level or a parent level.
        """
        if declaration.lifetime is Lifetime.STATEFUL:
            return self._collect_keys(declaration, frozenset())

        version = self._container._registry_version()
        with self._lock:
            if version != self._consumed_version:
                self._consumed.clear()
                self._consumed_version = version
            cached = self._consumed.get(declaration)
        if cached is not None:
            return cached

        keys = self._collect_keys(declaration, frozenset())
        with self._lock:
            if version == self._consumed_version == self._container._registry_version():
                self._consumed[declaration] = keys
        return keys

    def _collect_keys(
        self,
        declaration: ComponentDeclaration,
        visiting: frozenset[tuple[Any, Any]],
    ) -> frozenset[Any]:
        keys = set(declaration.context)
        # provisional declarations are rebuilt per lookup, so identity is not enough
        identity = (declaration.api, declaration.implementation)
        if declaration.is_binding or identity in visiting:
            return frozenset(keys)
        visiting = visiting | {identity}

        for dependency in self._dependencies_of(declaration):
            if dependency.key is ContextDefinition:
                continue
            fixed = dependency.context_keys
            for owner, target in self._targets(dependency):
                keys |= owner._collect_keys(target, visiting) - fixed
        return frozenset(keys)

    def _dependencies_of(self, declaration: ComponentDeclaration) -> Iterator[Dependency]:
        extractor = self._container._injector.extractor
        for point in extractor.constructors(declaration.implementation):
            yield from point.dependencies
        if declaration.constructs_class:
            yield from extractor.fields(declaration.implementation)

    def _targets(self, dependency: Dependency) -> list[tuple[DependencyGraph, ComponentDeclaration]]:
        if dependency.group:
            return self.group_members(dependency.key)
        with _suppress_resolution_errors():
            found = self.find(dependency.key, autoregister=False)
            if found is not None:
                return [found]
            # not registered yet: use the declaration autoregistration would add
            provisional = self._container._autoregistration_declaration(dependency.key)
            if provisional is not None:
                return [(self, provisional)]
        return []


@contextmanager
def _suppress_resolution_errors() -> Iterator[None]:
    try:
        yield
    except DigraftResolutionError:
        return


def _reissue(edge: GraphNode) -> GraphNode:
    node = GraphNode(edge.api, edge.context)
    node.declaration = edge.declaration
    node.advance(NodeState.CANDIDATE_SELECTED)
    return node

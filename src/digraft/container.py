from __future__ import annotations

import atexit
import inspect
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any, TypeVar, overload

from digraft.cache import ComponentCache
from digraft.context import ContextDefinition
from digraft.defaults import DEFAULT_AUTOREGISTRATION_POLICY, DEFAULT_LIFETIME
from digraft.dependencies import factory_return_type
from digraft.discovery import ClassDiscovery, ComponentRegistry
from digraft.exceptions import (
    DigraftBindingFrozenError,
    DigraftInvalidRegistrationError,
    DigraftResolutionError,
)
from digraft.graph import DependencyGraph
from digraft.injector import DependencyInjector
from digraft.interceptors import DependencyInterceptor, InterceptorRegistration
from digraft.integrations.pydantic_settings import settings_factory
from digraft.markers import component_spec
from digraft.observers import CompositeObserver, ResolutionObserver
from digraft.termination import ContainerTermination
from digraft.types import ComponentDeclaration, Lifetime, ShutdownJob

if TYPE_CHECKING:
    from types import TracebackType

    from typing_extensions import Self

T = TypeVar("T")
C = TypeVar("C", bound=type[Any])

logger = logging.getLogger(__name__)

ContextArg = Mapping[Any, Any] | ContextDefinition | None


class Container:
    """Resolve, cache and tear down a graph of components.

    A container knows components through explicit registration
    (``register``, ``add_factory``, ``bind_instance``), through an optional
    ``ClassDiscovery`` strategy and, unless disabled, through autoregistration
    of concrete classes requested by type. Containers form a tree: a child
    delegates lookups it cannot satisfy to its parent, never the reverse, and
    components owned by the parent resolve their own dependencies in the
    parent.

    Stateless components are cached per context fingerprint and constructed at
    most once per fingerprint, also under concurrent resolution. Stateful
    components are constructed on every request.

    Examples:
        .. code-block:: python

            with Container() as container:
                container.register(PostgresRepository, provides=Repository)
                service = container.resolve(UserService)

    """

    def __init__(
        self,
        *,
        parent: Container | None = None,
        discovery: ClassDiscovery | None = None,
        default_lifetime: Lifetime = DEFAULT_LIFETIME,
        autoregister_concrete_types: bool = True,
        observers: Iterable[ResolutionObserver] = (),
    ) -> None:
        """Initialize a container.

        Args:
            parent: Container that receives lookups this container cannot
                satisfy.
            discovery: Strategy supplying candidate classes beyond explicit
                registrations.
            default_lifetime: Lifetime of registrations that omit ``lifetime``.
            autoregister_concrete_types: Construct unregistered concrete classes
                on demand. Set to ``False`` for strict mode.
            observers: Observers notified of every successful resolution
                requested through this container.

        """
        self._parent = parent
        self._discovery = discovery
        self._default_lifetime = Lifetime(default_lifetime)
        self._autoregister_concrete_types = autoregister_concrete_types
        self._autoregistration_policy = DEFAULT_AUTOREGISTRATION_POLICY

        self._lock = threading.RLock()
        self._construction_lock = threading.RLock()
        self._registry = ComponentRegistry()
        self._cache = ComponentCache(evict_on=(DigraftResolutionError,))
        self._injector = parent._injector if parent is not None else DependencyInjector()
        self._termination = ContainerTermination()
        self._observers = CompositeObserver.combine()
        self._interceptors: tuple[InterceptorRegistration, ...] = ()
        self._graph = DependencyGraph(self)

        self._discovered: dict[type, ComponentDeclaration] = {}
        self._resolved_apis: set[Any] = set()
        self._parent_job: ShutdownJob | None = None
        self._exit_hook_registered = False

        for observer in observers:
            self.add_observer(observer)
        self._bind_builtin(Container, self)
        if type(self) is not Container:
            self._bind_builtin(type(self), self)
        self._bind_builtin(ContainerTermination, self._termination)

    @property
    def parent(self) -> Container | None:
        return self._parent

    @property
    def discovery(self) -> ClassDiscovery | None:
        return self._discovery

    @property
    def default_lifetime(self) -> Lifetime:
        return self._default_lifetime

    @property
    def termination(self) -> ContainerTermination:
        """Shutdown jobs of this container level."""
        return self._termination

    # region Registration Methods
    @overload
    def register(
        self,
        implementation: C,
        /,
        *,
        provides: Any = None,
        lifetime: Lifetime | None = None,
        groups: Iterable[Any] = (),
        context: Iterable[Any] = (),
        overrides: Iterable[Any] = (),
    ) -> C: ...

    @overload
    def register(
        self,
        implementation: None = None,
        /,
        *,
        provides: Any = None,
        lifetime: Lifetime | None = None,
        groups: Iterable[Any] = (),
        context: Iterable[Any] = (),
        overrides: Iterable[Any] = (),
    ) -> Callable[[C], C]: ...

    def register(
        self,
        implementation: type[Any] | None = None,
        /,
        *,
        provides: Any = None,
        lifetime: Lifetime | None = None,
        groups: Iterable[Any] = (),
        context: Iterable[Any] = (),
        overrides: Iterable[Any] = (),
    ) -> Any:
        """Register a class as a component.

        Metadata recorded by ``@component`` on the class is used for every
        argument left at its default. Supports direct calls and decorator
        form.

        Args:
            implementation: Concrete class to construct. Omit to get a
                decorator.
            provides: API the class is registered for. Defaults to the
                ``@component`` API or the class itself.
            lifetime: ``Lifetime.STATELESS`` or ``Lifetime.STATEFUL``. Defaults
                to the container default.
            groups: Group tags the component belongs to.
            context: Context keys the component recognizes.
            overrides: Implementations this component replaces when both are
                candidates for the same API.

        Returns:
            ``implementation`` in direct mode or a class decorator.

        Raises:
            DigraftInvalidRegistrationError: If ``implementation`` is not a
                class or an argument is invalid.

        Examples:
            .. code-block:: python

                container.register(SqlRepository, provides=Repository)

                @container.register(lifetime=Lifetime.STATEFUL)
                class RequestHandler: ...

        """
        if implementation is None:

            def decorator(cls: C) -> C:
                return self.register(
                    cls,
                    provides=provides,
                    lifetime=lifetime,
                    groups=groups,
                    context=context,
                    overrides=overrides,
                )

            return decorator

        if not inspect.isclass(implementation):
            msg = (
                f"register() expects a class, got {implementation!r}. "
                "Use add_factory() for callables or bind_instance() for values."
            )
            raise DigraftInvalidRegistrationError(msg)

        spec = component_spec(implementation)
        declaration = ComponentDeclaration(
            api=_first_set(provides, spec and spec.api, implementation),
            implementation=implementation,
            lifetime=self._lifetime(_first_set(lifetime, spec and spec.lifetime)),
            groups=tuple(groups) or (spec.groups if spec else ()),
            context=_context_keys(context) or (spec.context if spec else frozenset()),
            overrides=tuple(overrides) or (spec.overrides if spec else ()),
        )
        self._add(declaration)
        return implementation

    def add_factory(
        self,
        factory: Callable[..., Any],
        /,
        *,
        provides: Any = None,
        lifetime: Lifetime | None = None,
        groups: Iterable[Any] = (),
        context: Iterable[Any] = (),
    ) -> None:
        """Register a factory callable as a component.

        Factory parameters are injected like constructor parameters. A
        generator factory yields the instance once; the generator is closed
        when the container terminates, so code after ``yield`` runs as cleanup.

        Args:
            factory: Function or callable producing the component.
            provides: API the factory produces. Defaults to the return
                annotation (the yielded type for generator factories).
            lifetime: ``Lifetime.STATELESS`` or ``Lifetime.STATEFUL``. Defaults
                to the container default.
            groups: Group tags the component belongs to.
            context: Context keys the factory recognizes.

        Raises:
            DigraftInvalidRegistrationError: If ``factory`` is not callable or
                ``provides`` cannot be inferred.

        Examples:
            .. code-block:: python

                def open_session(engine: Engine) -> Generator[Session, None, None]:
                    session = Session(engine)
                    try:
                        yield session
                    finally:
                        session.close()

                container.add_factory(open_session)

        """
        if not callable(factory):
            msg = f"add_factory() expects a callable, got {factory!r}."
            raise DigraftInvalidRegistrationError(msg)

        api = provides if provides is not None else factory_return_type(factory)
        self._add(
            ComponentDeclaration(
                api=api,
                implementation=factory,
                lifetime=self._lifetime(lifetime),
                groups=tuple(groups),
                context=_context_keys(context),
                is_factory=True,
            ),
        )

    def bind_instance(self, api: Any, value: Any) -> None:
        """Bind ``api`` to an existing object.

        An explicit binding takes precedence over every registered or
        discovered candidate for ``api`` at this container level. Re-binding
        replaces the previous binding.

        Raises:
            DigraftBindingFrozenError: If ``api`` has already been resolved and
                cached by this container.

        """
        with self._lock:
            if api in self._resolved_apis:
                raise DigraftBindingFrozenError(api)
            self._registry.bind(_binding(api, value))
        logger.debug("Bound %r to instance %r", api, value)

    def _bind_builtin(self, api: Any, value: Any) -> None:
        self._registry.bind(_binding(api, value))

    def _add(self, declaration: ComponentDeclaration) -> None:
        with self._lock:
            self._registry.add(declaration)
        logger.debug(
            "Registered %r for %r (%s)",
            declaration.implementation,
            declaration.api,
            declaration.lifetime.value,
        )

    def _lifetime(self, lifetime: Lifetime | None) -> Lifetime:
        if lifetime is None:
            return self._default_lifetime
        try:
            return Lifetime(lifetime)
        except ValueError as error:
            msg = f"Invalid lifetime {lifetime!r}."
            raise DigraftInvalidRegistrationError(msg) from error

    # endregion Registration Methods

    # region Resolution Methods
    @overload
    def resolve(self, api: type[T], context: ContextArg = None) -> T: ...

    @overload
    def resolve(self, api: Any, context: ContextArg = None) -> Any: ...

    def resolve(self, api: Any, context: ContextArg = None) -> Any:
        """Resolve ``api``, constructing it and its dependencies as needed.

        Args:
            api: Type or key to resolve.
            context: Initial context values, as a mapping or a
                ``ContextDefinition``. Empty by default.

        Returns:
            The component instance. Stateless components are shared between
            requests with the same context fingerprint.

        Raises:
            DigraftUnresolvedDependencyError: If ``api`` or one of its required
                dependencies has no implementation.
            DigraftAmbiguousResolutionError: If several candidates match.
            DigraftCircularDependencyError: If the graph contains a cycle that
                no interface boundary breaks.
            DigraftConstructionError: If a constructor or factory raised.

        """
        return self._graph.resolve(api, ContextDefinition.of(context))

    def resolve_group(self, api: Any, context: ContextArg = None) -> tuple[Any, ...]:
        """Resolve every implementation and group member of ``api``.

        Members of parent containers come first, then members of this
        container, each in declaration order.
        """
        return self._graph.resolve_group(api, ContextDefinition.of(context))

    def instantiate(self, implementation: Callable[..., T], context: ContextArg = None) -> T:
        """Construct ``implementation`` with injected dependencies, without caching it.

        ``implementation`` need not be registered. Classes also receive field
        injection.
        """
        declaration = ComponentDeclaration(
            api=implementation,
            implementation=implementation,
            lifetime=Lifetime.STATEFUL,
            is_factory=not inspect.isclass(implementation),
        )
        return self._graph.instantiate(declaration, ContextDefinition.of(context))

    def initialize(self, instance: T, context: ContextArg = None) -> T:
        """Inject ``Injected[...]`` class attributes of an existing object."""
        return self._graph.initialize(instance, ContextDefinition.of(context))

    # endregion Resolution Methods

    def create_child(self, **kwargs: Any) -> Container:
        """Create a container that delegates unresolved lookups to this one.

        Keyword arguments are passed to the child constructor; the default
        lifetime and autoregistration flag are inherited unless given. The
        child is terminated when this container terminates, before this
        container's own jobs run.
        """
        kwargs.setdefault("default_lifetime", self._default_lifetime)
        kwargs.setdefault("autoregister_concrete_types", self._autoregister_concrete_types)
        child = type(self)(parent=self, **kwargs)
        child._parent_job = self._termination.add(
            ShutdownJob(name=f"terminate child container {id(child):#x}", action=child.terminate),
        )
        return child

    def add_observer(self, observer: ResolutionObserver) -> None:
        """Notify ``observer`` of resolutions requested through this container or its children."""
        if not isinstance(observer, ResolutionObserver):
            msg = f"Observer {observer!r} must define on_resolved(requested, resolved)."
            raise DigraftInvalidRegistrationError(msg)
        with self._lock:
            self._observers = CompositeObserver.combine(self._observers, observer)

    def add_interceptor(self, interceptor: DependencyInterceptor, *, context: Iterable[Any] = ()) -> None:
        """Route dependency values injected by this container and its children through ``interceptor``.

        Interceptors of parent containers run before those of this container,
        each level in registration order. Instances already cached keep the
        values they were constructed with.

        Args:
            interceptor: Object with an ``intercept(dependency, context, proceed)``
                method.
            context: Context keys a dependency edge must carry for the
                interceptor to apply. Empty applies it to every edge.

        Raises:
            DigraftInvalidRegistrationError: If ``interceptor`` has no
                ``intercept`` method or ``context`` holds unhashable keys.

        """
        if not isinstance(interceptor, DependencyInterceptor):
            msg = f"Interceptor {interceptor!r} must define intercept(dependency, context, proceed)."
            raise DigraftInvalidRegistrationError(msg)
        registration = InterceptorRegistration(interceptor, _context_keys(context))
        with self._lock:
            self._interceptors = (*self._interceptors, registration)
        logger.debug("Added interceptor %r", interceptor)

    def clear_cache(self) -> None:
        """Drop every cached instance and cached failure of this container level.

        Bindings of APIs that were resolved before become replaceable again.
        Shutdown jobs of dropped instances stay registered.
        """
        with self._lock:
            self._cache.clear()
            self._resolved_apis.clear()
        logger.debug("Cleared cache of %r", self)

    def terminate(self) -> None:
        """Run this container's shutdown jobs in reverse registration order.

        Calling it again is a no-op.

        Raises:
            DigraftTerminationError: If one or more jobs raised. Every job is
                attempted first.

        """
        try:
            self._termination.run_all()
        finally:
            self._detach()

    def register_exit_hook(self) -> None:
        """Terminate this container when the interpreter exits."""
        with self._lock:
            if self._exit_hook_registered:
                return
            atexit.register(self.terminate)
            self._exit_hook_registered = True

    def _detach(self) -> None:
        with self._lock:
            parent_job, self._parent_job = self._parent_job, None
            if self._exit_hook_registered:
                atexit.unregister(self.terminate)
                self._exit_hook_registered = False
        if parent_job is not None and self._parent is not None:
            self._parent.termination.remove(parent_job)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.terminate()

    def __repr__(self) -> str:
        depth = 0
        level = self._parent
        while level is not None:
            depth += 1
            level = level._parent
        return f"<{type(self).__name__} depth={depth} components={len(self._registry)}>"

    # region Graph Callbacks
    def _candidates(self, api: Any) -> list[ComponentDeclaration]:
        """Return this level's candidates for ``api``, overridden ones dropped."""
        binding = self._registry.binding(api)
        if binding is not None:
            return [binding]

        declarations = self._registry.for_api(api)
        if self._discovery is not None:
            declarations = self._merge_discovered(
                declarations,
                self._discovery.find_candidates(api),
            )
        return _without_overridden(declarations)

    def _group(self, tag: Any) -> list[ComponentDeclaration]:
        members = self._registry.for_group(tag)
        if self._discovery is not None:
            members = self._merge_discovered(
                members,
                [*self._discovery.find_candidates(tag), *self._discovery.find_group(tag)],
            )
        return _without_overridden(members)

    def _merge_discovered(
        self,
        declarations: list[ComponentDeclaration],
        classes: Iterable[type],
    ) -> list[ComponentDeclaration]:
        merged = list(declarations)
        for cls in classes:
            if any(declaration.implementation is cls for declaration in merged):
                continue
            merged.append(self._discovered_declaration(cls))
        return merged

    def _discovered_declaration(self, cls: type) -> ComponentDeclaration:
        with self._lock:
            declaration = self._discovered.get(cls)
            if declaration is None:
                spec = component_spec(cls)
                declaration = ComponentDeclaration(
                    api=_first_set(spec and spec.api, cls),
                    implementation=cls,
                    lifetime=self._lifetime(spec.lifetime if spec else None),
                    groups=spec.groups if spec else (),
                    context=spec.context if spec else frozenset(),
                    overrides=spec.overrides if spec else (),
                )
                self._discovered[cls] = declaration
            return declaration

    def _autoregister(self, api: Any) -> ComponentDeclaration | None:
        """Register ``api`` on demand when it is a concrete class."""
        declaration = self._autoregistration_declaration(api)
        if declaration is None:
            return None

        with self._lock:
            existing = self._registry.for_api(api)
            if existing:
                return existing[0]
            self._registry.add(declaration)
        logger.debug("Autoregistered %r (%s)", api, declaration.lifetime.value)
        return declaration

    def _autoregistration_declaration(self, api: Any) -> ComponentDeclaration | None:
        """Return the declaration autoregistration would add for ``api``, without adding it."""
        if not self._autoregister_concrete_types:
            return None
        policy = self._autoregistration_policy
        if policy.is_settings(api):
            return ComponentDeclaration(
                api=api,
                implementation=settings_factory(api),
                lifetime=Lifetime.STATELESS,
                is_factory=True,
            )
        if not policy.is_eligible_concrete(api):
            return None
        spec = component_spec(api)
        return ComponentDeclaration(
            api=api,
            implementation=api,
            lifetime=self._lifetime(spec.lifetime if spec else None),
            groups=spec.groups if spec else (),
            context=spec.context if spec else frozenset(),
        )

    def _mark_resolved(self, api: Any, declaration: ComponentDeclaration) -> None:
        with self._lock:
            self._resolved_apis.add(api)
            self._resolved_apis.add(declaration.api)

    def _notify(self, requested: Any, resolved: Any) -> None:
        if self._observers:
            self._observers.on_resolved(requested, resolved)
        if self._parent is not None:
            self._parent._notify(requested, resolved)

    def _registry_version(self) -> int:
        version = 0
        level: Container | None = self
        while level is not None:
            version += level._registry.version
            level = level._parent
        return version

    # endregion Graph Callbacks


def _binding(api: Any, value: Any) -> ComponentDeclaration:
    return ComponentDeclaration(
        api=api,
        implementation=api,
        lifetime=Lifetime.STATELESS,
        instance=value,
        is_binding=True,
    )


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _context_keys(keys: Iterable[Any]) -> frozenset[Any]:
    try:
        return frozenset(keys)
    except TypeError as error:
        msg = f"Context keys must be hashable: {error}"
        raise DigraftInvalidRegistrationError(msg) from error


def _without_overridden(declarations: list[ComponentDeclaration]) -> list[ComponentDeclaration]:
    if len(declarations) < 2:  # noqa: PLR2004
        return declarations
    overridden = {
        id(target)
        for declaration in declarations
        for target in declaration.overrides
    }
    return [
        declaration
        for declaration in declarations
        if id(declaration.implementation) not in overridden
    ]

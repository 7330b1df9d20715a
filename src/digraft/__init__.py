from digraft.container import Container
from digraft.context import ContextDefinition
from digraft.deferred import DeferredReference
from digraft.discovery import ClassDiscovery, ComponentRegistry, ModuleScanDiscovery
from digraft.exceptions import (
    DigraftAmbiguousResolutionError,
    DigraftBindingFrozenError,
    DigraftCircularDependencyError,
    DigraftConstructionError,
    DigraftError,
    DigraftInvalidContextError,
    DigraftInvalidRegistrationError,
    DigraftResolutionError,
    DigraftTerminationError,
    DigraftUnresolvedDependencyError,
)
from digraft.graph import NodeState
from digraft.interceptors import DependencyInterceptor
from digraft.markers import All, Context, Injected, Maybe, component, constructor
from digraft.observers import CompositeObserver, LoggingObserver, ResolutionObserver
from digraft.termination import ContainerTermination
from digraft.types import Lifetime, ShutdownJob

__all__ = [
    "All",
    "ClassDiscovery",
    "ComponentRegistry",
    "CompositeObserver",
    "Container",
    "ContainerTermination",
    "Context",
    "ContextDefinition",
    "DeferredReference",
    "DependencyInterceptor",
    "DigraftAmbiguousResolutionError",
    "DigraftBindingFrozenError",
    "DigraftCircularDependencyError",
    "DigraftConstructionError",
    "DigraftError",
    "DigraftInvalidContextError",
    "DigraftInvalidRegistrationError",
    "DigraftResolutionError",
    "DigraftTerminationError",
    "DigraftUnresolvedDependencyError",
    "Injected",
    "Lifetime",
    "LoggingObserver",
    "Maybe",
    "ModuleScanDiscovery",
    "NodeState",
    "ResolutionObserver",
    "ShutdownJob",
    "component",
    "constructor",
]

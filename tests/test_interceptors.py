"""Tests for dependency interceptors."""

from collections.abc import Callable
from typing import Annotated, Any

import pytest

from digraft.container import Container
from digraft.context import ContextDefinition
from digraft.dependencies import Dependency
from digraft.exceptions import DigraftInvalidRegistrationError
from digraft.interceptors import DependencyInterceptor
from digraft.markers import Context, Maybe


class Database:
    pass


class Cache:
    pass


class Repository:
    def __init__(self, database: Database) -> None:
        self.database = database


class Wrapped:
    def __init__(self, inner: Any, label: str) -> None:
        self.inner = inner
        self.label = label


class WrappingInterceptor:
    def __init__(self, label: str, calls: list[str] | None = None) -> None:
        self.label = label
        self.calls = calls if calls is not None else []

    def intercept(
        self,
        dependency: Dependency,
        context: ContextDefinition,
        proceed: Callable[[], Any],
    ) -> Any:
        self.calls.append(self.label)
        return Wrapped(proceed(), self.label)


class RecordingInterceptor:
    def __init__(self) -> None:
        self.seen: list[tuple[Any, dict[Any, Any]]] = []

    def intercept(
        self,
        dependency: Dependency,
        context: ContextDefinition,
        proceed: Callable[[], Any],
    ) -> Any:
        self.seen.append((dependency.key, dict(context.values())))
        return proceed()


class TestInterception:
    def test_interceptor_wraps_injected_value(self, container: Container) -> None:
        interceptor = WrappingInterceptor("traced")
        assert isinstance(interceptor, DependencyInterceptor)
        container.add_interceptor(interceptor)

        repository = container.resolve(Repository)

        assert isinstance(repository.database, Wrapped)
        assert repository.database.inner is container.resolve(Database)
        assert repository.database.label == "traced"

    def test_top_level_resolution_is_not_intercepted(self, container: Container) -> None:
        container.add_interceptor(WrappingInterceptor("traced"))

        assert isinstance(container.resolve(Database), Database)

    def test_interceptor_can_replace_value(self, container: Container) -> None:
        replacement = Database()

        class Replacing:
            def intercept(
                self,
                dependency: Dependency,
                context: ContextDefinition,
                proceed: Callable[[], Any],
            ) -> Any:
                return replacement

        container.add_interceptor(Replacing())

        assert container.resolve(Repository).database is replacement
        assert container.resolve(Database) is not replacement

    def test_interceptors_run_in_registration_order_parents_first(
        self,
        container: Container,
    ) -> None:
        calls: list[str] = []
        container.add_interceptor(WrappingInterceptor("parent", calls))
        child = container.create_child()
        child.add_interceptor(WrappingInterceptor("child-1", calls))
        child.add_interceptor(WrappingInterceptor("child-2", calls))

        class Consumer:
            def __init__(self, database: Database) -> None:
                self.database = database

        child.register(Consumer)
        consumer = child.resolve(Consumer)

        assert calls == ["parent", "child-1", "child-2"]
        assert consumer.database.label == "parent"
        assert consumer.database.inner.label == "child-1"
        assert consumer.database.inner.inner.label == "child-2"
        assert isinstance(consumer.database.inner.inner.inner, Database)

    def test_child_interceptors_do_not_apply_to_parent(self, container: Container) -> None:
        child = container.create_child()
        child.add_interceptor(WrappingInterceptor("child"))

        assert isinstance(container.resolve(Repository).database, Database)

    def test_context_filter_selects_edges(self, container: Container) -> None:
        recorder = RecordingInterceptor()
        container.add_interceptor(recorder, context=["tenant"])

        class Service:
            def __init__(
                self,
                database: Annotated[Database, Context(tenant="acme")],
                cache: Cache,
            ) -> None:
                self.database = database
                self.cache = cache

        container.resolve(Service)

        assert recorder.seen == [(Database, {"tenant": "acme"})]

    def test_optional_dependency_still_falls_back(self, strict_container: Container) -> None:
        recorder = RecordingInterceptor()
        strict_container.add_interceptor(recorder)

        class Service:
            def __init__(self, cache: Maybe[Cache]) -> None:
                self.cache = cache

        strict_container.register(Service)

        assert strict_container.resolve(Service).cache is None
        assert recorder.seen == [(Cache, {})]

    def test_invalid_interceptor_is_rejected(self, container: Container) -> None:
        with pytest.raises(DigraftInvalidRegistrationError):
            container.add_interceptor(object())  # type: ignore[arg-type]

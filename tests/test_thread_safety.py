"""Tests for thread safety of Container."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Protocol

from digraft.container import Container
from digraft.types import Lifetime


class SlowService:
    instances = 0
    lock = threading.Lock()

    def __init__(self) -> None:
        time.sleep(0.02)
        with SlowService.lock:
            SlowService.instances += 1


class Dependent:
    def __init__(self, service: SlowService) -> None:
        self.service = service


class TestConcurrentResolution:
    def test_concurrent_stateless_resolution_same_instance(self) -> None:
        """Concurrent stateless resolution constructs exactly once."""
        SlowService.instances = 0
        container = Container()
        results: list[SlowService] = []
        errors: list[Exception] = []

        def resolve_service() -> None:
            try:
                results.append(container.resolve(SlowService))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=resolve_service) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        assert len(results) == 10
        assert all(r is results[0] for r in results)
        assert SlowService.instances == 1

    def test_concurrent_stateful_resolution_different_instances(self) -> None:
        """Concurrent stateful resolution creates different instances."""
        container = Container()
        container.register(Dependent, lifetime=Lifetime.STATEFUL)

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(lambda _: container.resolve(Dependent), range(16)))

        assert len({id(r) for r in results}) == 16
        assert all(r.service is results[0].service for r in results)

    def test_concurrent_context_resolution_one_instance_per_fingerprint(self) -> None:
        container = Container()

        class Regional:
            def __init__(self) -> None:
                time.sleep(0.01)

        container.register(Regional, context=["region"])
        regions = ["eu", "us"] * 10

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(
                executor.map(lambda region: (region, container.resolve(Regional, {"region": region})), regions),
            )

        by_region: dict[str, set[int]] = {}
        for region, instance in results:
            by_region.setdefault(region, set()).add(id(instance))
        assert {region: len(ids) for region, ids in by_region.items()} == {"eu": 1, "us": 1}

    def test_threads_have_independent_resolution_paths(self) -> None:
        """A component built in one thread is not a cycle for another thread."""
        container = Container()
        started = threading.Event()
        release = threading.Event()

        class Gate:
            def __init__(self) -> None:
                started.set()
                release.wait(timeout=5)

        class UsesGate:
            def __init__(self, gate: Gate) -> None:
                self.gate = gate

        errors: list[Exception] = []
        results: list[UsesGate] = []

        def resolve() -> None:
            try:
                results.append(container.resolve(UsesGate))
            except Exception as e:
                errors.append(e)

        first = threading.Thread(target=resolve)
        first.start()
        started.wait(timeout=5)
        second = threading.Thread(target=resolve)
        second.start()
        release.set()
        first.join()
        second.join()

        assert not errors
        assert results[0] is results[1]

    def test_interface_cycle_resolved_from_two_threads(self) -> None:
        container = Container()
        entered = threading.Event()

        class Notifier(Protocol):
            def notify(self) -> str: ...

        class SlowPart:
            def __init__(self) -> None:
                entered.set()
                time.sleep(0.2)

        class Registry:
            def __init__(self, slow: SlowPart, notifier: Notifier) -> None:
                self.notifier = notifier

        class EmailNotifier:
            def __init__(self, registry: Registry) -> None:
                self.registry = registry

            def notify(self) -> str:
                return "email"

        container.register(EmailNotifier, provides=Notifier)
        results: dict[str, object] = {}
        errors: list[Exception] = []

        def resolve(name: str, api: object) -> None:
            try:
                results[name] = container.resolve(api)
            except Exception as e:
                errors.append(e)

        first = threading.Thread(target=resolve, args=("registry", Registry))
        second = threading.Thread(target=resolve, args=("notifier", Notifier))
        first.start()
        entered.wait(timeout=5)
        second.start()
        first.join(timeout=5)
        second.join(timeout=5)

        assert not first.is_alive()
        assert not second.is_alive()
        assert not errors
        registry = results["registry"]
        notifier = results["notifier"]
        assert isinstance(notifier, EmailNotifier)
        assert notifier.registry is registry
        assert registry.notifier.notify() == "email"


class TestConcurrentRegistration:
    def test_concurrent_registration_no_corruption(self) -> None:
        """Concurrent registration doesn't corrupt the registry."""
        container = Container(autoregister_concrete_types=False)
        errors: list[Exception] = []
        classes = [type(f"Service{i}", (), {}) for i in range(20)]

        def register(cls: type) -> None:
            try:
                container.register(cls)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=register, args=(cls,)) for cls in classes]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert not errors
        for cls in classes:
            assert isinstance(container.resolve(cls), cls)

    def test_concurrent_autoregistration_registers_once(self) -> None:
        container = Container()

        class Lazy:
            pass

        with ThreadPoolExecutor(max_workers=8) as executor:
            results = list(executor.map(lambda _: container.resolve(Lazy), range(16)))

        assert all(r is results[0] for r in results)

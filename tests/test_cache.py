"""Tests for ComponentCache."""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from digraft.cache import ComponentCache
from digraft.exceptions import DigraftResolutionError
from digraft.types import Lifetime


class Component:
    pass


class TestGetOrCreate:
    def test_factory_called_once_per_key(self) -> None:
        cache = ComponentCache()
        calls: list[int] = []

        def factory() -> Component:
            calls.append(1)
            return Component()

        first = cache.get_or_create(Component, frozenset(), factory)
        second = cache.get_or_create(Component, frozenset(), factory)

        assert first is second
        assert len(calls) == 1

    def test_different_fingerprints_get_different_instances(self) -> None:
        cache = ComponentCache()

        eu = cache.get_or_create(Component, frozenset({("region", "eu")}), Component)
        us = cache.get_or_create(Component, frozenset({("region", "us")}), Component)

        assert eu is not us
        assert len(cache) == 2

    def test_stateful_bypasses_cache(self) -> None:
        cache = ComponentCache()

        first = cache.get_or_create(Component, frozenset(), Component, lifetime=Lifetime.STATEFUL)
        second = cache.get_or_create(Component, frozenset(), Component, lifetime=Lifetime.STATEFUL)

        assert first is not second
        assert len(cache) == 0

    def test_failure_is_cached(self) -> None:
        cache = ComponentCache()
        calls: list[int] = []

        def factory() -> Component:
            calls.append(1)
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            cache.get_or_create(Component, frozenset(), factory)
        with pytest.raises(ValueError, match="boom"):
            cache.get_or_create(Component, frozenset(), factory)

        assert len(calls) == 1

    def test_evicted_failure_is_recomputed(self) -> None:
        cache = ComponentCache(evict_on=(DigraftResolutionError,))
        attempts: list[int] = []

        def factory() -> Component:
            attempts.append(1)
            if len(attempts) == 1:
                raise DigraftResolutionError("not yet", api=Component)
            return Component()

        with pytest.raises(DigraftResolutionError):
            cache.get_or_create(Component, frozenset(), factory)
        instance = cache.get_or_create(Component, frozenset(), factory)

        assert isinstance(instance, Component)
        assert len(attempts) == 2


class TestInspection:
    def test_lookup_returns_completed_instance(self) -> None:
        cache = ComponentCache()
        instance = cache.get_or_create(Component, frozenset(), Component)

        assert cache.lookup(Component, frozenset()) is instance
        assert cache.lookup(Component, frozenset({("a", 1)})) is None

    def test_lookup_ignores_failures(self) -> None:
        cache = ComponentCache()
        missing = object()

        def factory() -> Component:
            raise RuntimeError

        with pytest.raises(RuntimeError):
            cache.get_or_create(Component, frozenset(), factory)

        assert cache.lookup(Component, frozenset(), missing) is missing

    def test_clear_drops_entries(self) -> None:
        cache = ComponentCache()
        first = cache.get_or_create(Component, frozenset(), Component)

        cache.clear()

        assert len(cache) == 0
        assert cache.get_or_create(Component, frozenset(), Component) is not first


class TestConcurrency:
    def test_concurrent_requests_share_single_construction(self) -> None:
        cache = ComponentCache()
        calls: list[int] = []
        lock = threading.Lock()

        def slow_factory() -> Component:
            with lock:
                calls.append(1)
            time.sleep(0.05)
            return Component()

        with ThreadPoolExecutor(max_workers=8) as executor:
            futures = [
                executor.submit(cache.get_or_create, Component, frozenset(), slow_factory)
                for _ in range(16)
            ]
            results = [future.result() for future in futures]

        assert len(calls) == 1
        assert all(result is results[0] for result in results)

    def test_waiters_observe_owner_failure(self) -> None:
        cache = ComponentCache()
        started = threading.Event()
        release = threading.Event()
        errors: list[BaseException] = []

        def failing_factory() -> Component:
            started.set()
            release.wait(timeout=5)
            raise ValueError("owner failed")

        def owner() -> None:
            try:
                cache.get_or_create(Component, frozenset(), failing_factory)
            except ValueError as error:
                errors.append(error)

        def waiter() -> None:
            try:
                cache.get_or_create(Component, frozenset(), Component)
            except ValueError as error:
                errors.append(error)

        owner_thread = threading.Thread(target=owner)
        owner_thread.start()
        started.wait(timeout=5)
        waiter_thread = threading.Thread(target=waiter)
        waiter_thread.start()
        release.set()
        owner_thread.join()
        waiter_thread.join()

        assert len(errors) == 2
        assert errors[0] is errors[1]

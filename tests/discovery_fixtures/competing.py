"""Competing clock implementations for ambiguity tests."""

from discovery_fixtures.components import Clock, SystemClock

from digraft.markers import component


@component()
class FrozenClock(Clock):
    def now(self) -> int:
        return 42


@component(overrides=[SystemClock])
class ManualClock(Clock):
    def now(self) -> int:
        return 7

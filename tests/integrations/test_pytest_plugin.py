"""Tests for the digraft pytest plugin fixtures."""

from collections.abc import Iterator

import pytest

from digraft.container import Container
from digraft.termination import ContainerTermination
from digraft.types import ShutdownJob


class Clock:
    pass


class FakeClock(Clock):
    pass


class Connection:
    def __init__(self, termination: ContainerTermination, log: list) -> None:
        termination.add(ShutdownJob(name="close connection", action=lambda: log.append("closed")))


@pytest.fixture()
def digraft_container(digraft_root_container: Container) -> Container:
    digraft_root_container.register(FakeClock, provides=Clock)
    return digraft_root_container


@pytest.fixture()
def closed_after_teardown() -> Iterator[list[str]]:
    """Set up before the container so its check runs after the container terminated."""
    log: list[str] = []
    yield log
    assert log == ["closed"]


def test_overridden_fixture_provides_registrations(digraft_container: Container) -> None:
    assert isinstance(digraft_container.resolve(Clock), FakeClock)


def test_fixture_container_is_live_during_test(digraft_container: Container) -> None:
    assert digraft_container.resolve(Clock) is digraft_container.resolve(Clock)
    assert not digraft_container.termination.terminated


def test_container_terminated_after_test(
    closed_after_teardown: list[str],
    digraft_container: Container,
) -> None:
    digraft_container.bind_instance(list, closed_after_teardown)

    digraft_container.resolve(Connection)

    assert closed_after_teardown == []

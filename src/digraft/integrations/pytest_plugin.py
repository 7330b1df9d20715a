"""pytest plugin providing a per-test container.

Enable it from a ``conftest.py``::

    pytest_plugins = ["digraft.integrations.pytest_plugin"]

Tests then request the ``digraft_container`` fixture. Override the fixture to
pre-register components; the override may request the base container through
``digraft_root_container`` to keep the automatic termination.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from digraft.container import Container


@pytest.fixture()
def digraft_root_container() -> Iterator[Container]:
    """Create a container and terminate it after the test.

    Shutdown jobs registered by components built during the test run at
    teardown; a failing job fails the test teardown.
    """
    container = Container()
    try:
        yield container
    finally:
        container.terminate()


@pytest.fixture()
def digraft_container(digraft_root_container: Container) -> Container:
    """Per-test container used by tests and overridable by test suites."""
    return digraft_root_container

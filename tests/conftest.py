"""Shared pytest fixtures for digraft tests."""

import pytest

from digraft.container import Container
from digraft.dependencies import DependenciesExtractor
from digraft.types import Lifetime

pytest_plugins = ["digraft.integrations.pytest_plugin"]


@pytest.fixture()
def container() -> Container:
    """Default container with autoregistration enabled."""
    return Container()


@pytest.fixture()
def strict_container() -> Container:
    """Container with autoregistration disabled."""
    return Container(autoregister_concrete_types=False)


@pytest.fixture()
def stateful_container() -> Container:
    """Container whose registrations default to stateful."""
    return Container(default_lifetime=Lifetime.STATEFUL)


@pytest.fixture()
def dependencies_extractor() -> DependenciesExtractor:
    """DependenciesExtractor instance."""
    return DependenciesExtractor()

# tests/conftest.py
import pytest

from tessera import ComponentRegistry, World, WorldSettings


def make_settings(**overrides) -> WorldSettings:
    return WorldSettings(_env_file=None, **overrides)


@pytest.fixture
def registry():
    """A registry not shared with any other test."""
    return ComponentRegistry()


@pytest.fixture
def world(registry):
    """A fresh world using the reject policy."""
    return World(make_settings(), registry=registry)


@pytest.fixture
def blocking_world(registry):
    """A fresh world whose structural changes wait for borrows to be released."""
    return World(
        make_settings(structural_policy="block", block_timeout=5.0), registry=registry
    )

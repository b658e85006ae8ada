"""
Shared pytest fixtures for pwtclient unit tests.
"""

import pytest

from pwtclient.testing import fake_daemon  # noqa: F401


@pytest.fixture
def sink():
    """Collect emitted events in a list."""
    return []


@pytest.fixture
def clean_config(monkeypatch):
    """Start from an empty environment and forget configure() overrides."""
    import pwtclient

    for name in ("PWTCLIENT_HOST", "PWTCLIENT_PORT", "PWTCLIENT_CONNECT_TIMEOUT", "PWTCLIENT_TRACE"):
        monkeypatch.delenv(name, raising=False)
    pwtclient.shutdown()
    pwtclient.reset_config()
    yield
    pwtclient.shutdown()
    monkeypatch.undo()
    pwtclient.reset_config()

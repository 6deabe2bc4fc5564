"""Pytest configuration for gateci tests."""

import pytest

from gateci.model import EventDescriptor, EventKind
from gateci.ui.console import set_console


@pytest.fixture(autouse=True)
def reset_console():
    """Reset the global console between tests."""
    set_console(None)
    yield
    set_console(None)


@pytest.fixture
def push_main():
    return EventDescriptor(kind=EventKind.PUSH, branch="main")


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws

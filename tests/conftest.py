# tests/conftest.py
from __future__ import annotations

import io

import pytest

from relayci.artifacts import ArtifactStore
from relayci.ui.console import Console, set_console


@pytest.fixture
def console():
    c = Console(stream=io.StringIO())
    set_console(c)
    return c


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def workspace(tmp_path):
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


def output(console: Console) -> str:
    return console._stream.getvalue()

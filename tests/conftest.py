"""Test configuration."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import playlistz.cli as cli_module  # noqa: E402
import playlistz.services.broadcast as broadcast_module  # noqa: E402
import playlistz.services.library as library_module  # noqa: E402
import playlistz.services.object_store as object_store_module  # noqa: E402
import playlistz.services.payload_fetch as payload_fetch_module  # noqa: E402
import playlistz.utils.hashing as hashing_module  # noqa: E402


@pytest.fixture(autouse=True)
def run_blocking_inline(monkeypatch: pytest.MonkeyPatch):
    """Run blocking adapters inline in tests to avoid thread hangs in CI/sandbox."""

    async def _inline(func, /, *args, **kwargs):
        return func(*args, **kwargs)

    monkeypatch.setattr(object_store_module, "run_blocking", _inline)
    monkeypatch.setattr(broadcast_module, "run_blocking", _inline)
    monkeypatch.setattr(hashing_module, "run_blocking", _inline)
    monkeypatch.setattr(payload_fetch_module, "run_blocking", _inline)
    monkeypatch.setattr(library_module, "run_blocking", _inline)
    monkeypatch.setattr(cli_module, "run_blocking", _inline)


@pytest.fixture(autouse=True)
def isolated_store_cache():
    """Each test starts without cached object stores from earlier tests."""
    object_store_module.reset_store_cache()
    yield
    object_store_module.reset_store_cache()


@pytest.fixture(autouse=True)
def ensure_current_event_loop():
    """Provide a current event loop for sync tests."""
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        yield
    finally:
        loop.close()
        asyncio.set_event_loop(None)

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import pytest

from no_wing import config
from no_wing.audit.log import AuditLog
from no_wing.permissions.store import InMemoryRequestStore


def pytest_sessionstart(session: pytest.Session) -> None:
    # Settings are cached per process; tests that touch env vars clear it.
    config._load_settings_cached.cache_clear()


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


@pytest.fixture
def audit_log(tmp_path: Path) -> AuditLog:
    return AuditLog(str(tmp_path / "audit.jsonl"), writer_id="test-writer")


@pytest.fixture
def store() -> InMemoryRequestStore:
    return InMemoryRequestStore()

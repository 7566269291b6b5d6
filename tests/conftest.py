"""Global pytest configuration and fixtures for orbit-devserver tests.

This module provides shared pytest fixtures used across all test modules,
including configuration reset for test isolation, a throwaway project tree,
build commands backed by the running Python interpreter and fake client sockets.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest

from orbit_devserver.config import BuildSettings, HmrSettings, ServerSettings, Settings


@pytest.fixture(autouse=True, scope="function")
def reset_config_fixture() -> Generator[None, None, None]:
    """Automatically reset configuration before and after each test."""
    from orbit_devserver.config import reset_config

    reset_config()
    yield
    reset_config()


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Project tree with an empty ``src`` directory and an index page."""
    (tmp_path / "src").mkdir()
    (tmp_path / "index.html").write_text(
        "<html><head><title>app</title></head><body><h1>app</h1></body></html>"
    )
    return tmp_path


def python_build(exit_code: int = 0, sleep: float = 0.0, output: str = "") -> BuildSettings:
    """Build settings running a tiny Python script instead of a real toolchain."""
    script = (
        "import sys, time\n"
        f"time.sleep({sleep!r})\n"
        f"print({output!r})\n"
        f"sys.exit({exit_code})\n"
    )
    return BuildSettings(program=sys.executable, args=["-c", script])


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Factory for settings with a fake build and a short debounce window."""

    def _make(
        exit_code: int = 0,
        sleep: float = 0.0,
        output: str = "",
        debounce_ms: int = 0,
        **server: Any,
    ) -> Settings:
        return Settings(
            server=ServerSettings(**server),
            hmr=HmrSettings(debounce_ms=debounce_ms, send_timeout_seconds=0.5),
            build=python_build(exit_code=exit_code, sleep=sleep, output=output),
        )

    return _make


class RecordingChannel:
    """Fake WebSocket recording decoded frames; may fail or stall on send."""

    def __init__(self, fail: bool = False, delay: float = 0.0) -> None:
        self.fail = fail
        self.delay = delay
        self.sent: list[dict[str, Any]] = []
        self.closed_with: int | None = None

    async def send_text(self, data: str) -> None:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.closed_with = code

    @property
    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


@pytest.fixture
def channel_factory() -> type[RecordingChannel]:
    """The fake channel class, for building any number of client sockets."""
    return RecordingChannel

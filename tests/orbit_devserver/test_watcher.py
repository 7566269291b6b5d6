"""Tests for the filesystem watcher."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from watchfiles import Change

from orbit_devserver.watcher import ChangeWatcher, ProjectFilter


class TestProjectFilter:
    """Test which paths reach the dev server."""

    @pytest.fixture
    def watch_filter(self, tmp_path: Path) -> ProjectFilter:
        return ProjectFilter(tmp_path, ignore_patterns=["*.log", "src/generated/*"])

    def test_source_files_pass(self, watch_filter: ProjectFilter, tmp_path: Path) -> None:
        assert watch_filter(Change.modified, str(tmp_path / "src" / "app.rs"))
        assert watch_filter(Change.added, str(tmp_path / "index.html"))

    @pytest.mark.parametrize("directory", ["target", "dist", ".git", "node_modules"])
    def test_build_and_tool_dirs_are_ignored(
        self, watch_filter: ProjectFilter, tmp_path: Path, directory: str
    ) -> None:
        assert not watch_filter(Change.modified, str(tmp_path / directory / "out.rs"))

    def test_ignore_patterns_match_project_relative_paths(
        self, watch_filter: ProjectFilter, tmp_path: Path
    ) -> None:
        assert not watch_filter(Change.modified, str(tmp_path / "build.log"))
        assert not watch_filter(Change.modified, str(tmp_path / "src" / "generated" / "a.rs"))
        assert watch_filter(Change.modified, str(tmp_path / "src" / "a.rs"))


class TestChangeWatcher:
    """Test the watch loop lifecycle."""

    @pytest.mark.asyncio
    async def test_reports_changes_until_stopped(self, tmp_path: Path) -> None:
        batches: list[list[Path]] = []

        async def on_changes(paths: list[Path]) -> None:
            batches.append(paths)

        watcher = ChangeWatcher(tmp_path, on_changes, debounce_ms=10)
        await watcher.start()
        assert watcher.is_running

        target = tmp_path / "app.rs"
        try:
            for attempt in range(50):
                target.write_text(f"fn main() {{ {attempt} }}")
                await asyncio.sleep(0.1)
                if batches:
                    break
        finally:
            await watcher.stop()

        assert not watcher.is_running
        assert any(path.name == "app.rs" for batch in batches for path in batch)

    @pytest.mark.asyncio
    async def test_stop_without_start_is_noop(self, tmp_path: Path) -> None:
        async def on_changes(paths: list[Path]) -> None:
            pass

        watcher = ChangeWatcher(tmp_path, on_changes)
        await watcher.stop()

        assert not watcher.is_running

"""Filesystem watch loop feeding source changes into the dev server."""

from __future__ import annotations

import asyncio
import contextlib
import fnmatch
import logging
from collections.abc import Awaitable, Callable, Sequence
from pathlib import Path

from watchfiles import Change, DefaultFilter, awatch

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[list[Path]], Awaitable[object]]


class ProjectFilter(DefaultFilter):
    """Default watchfiles filter plus build output dirs and project ignore globs."""

    ignore_dirs: Sequence[str] = (*DefaultFilter.ignore_dirs, "target", "dist")

    def __init__(self, project_dir: Path, ignore_patterns: Sequence[str] = ()) -> None:
        super().__init__()
        self.project_dir = project_dir.resolve()
        self.ignore_patterns = tuple(ignore_patterns)

    def __call__(self, change: Change, path: str) -> bool:
        if not super().__call__(change, path):
            return False
        if not self.ignore_patterns:
            return True

        try:
            relative = Path(path).resolve().relative_to(self.project_dir).as_posix()
        except ValueError:
            relative = path
        return not any(fnmatch.fnmatch(relative, pattern) for pattern in self.ignore_patterns)


class ChangeWatcher:
    """Background task watching the project tree and handing batches to a handler."""

    def __init__(
        self,
        project_dir: Path,
        on_changes: ChangeHandler,
        ignore_patterns: Sequence[str] = (),
        debounce_ms: int = 50,
    ) -> None:
        self.project_dir = project_dir
        self.on_changes = on_changes
        self.watch_filter = ProjectFilter(project_dir, ignore_patterns)
        self.debounce_ms = debounce_ms
        self.is_running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the watch loop task."""
        if self.is_running:
            logger.warning("ChangeWatcher is already running")
            return

        self.is_running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._watch_loop())
        logger.info(f"File watching set up for {self.project_dir}")

    async def stop(self) -> None:
        """Stop the watch loop and wait for it to exit."""
        if not self.is_running:
            return

        self.is_running = False
        self._stop_event.set()

        if self._task:
            try:
                await asyncio.wait_for(self._task, timeout=5.0)
            except asyncio.TimeoutError:
                logger.warning("Watch loop did not stop gracefully, cancelling")
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
            self._task = None

        logger.info("File watching stopped")

    async def _watch_loop(self) -> None:
        try:
            async for changes in awatch(
                self.project_dir,
                watch_filter=self.watch_filter,
                debounce=self.debounce_ms,
                stop_event=self._stop_event,
            ):
                paths = sorted({Path(path) for _, path in changes})
                logger.debug(f"File change event: {[str(p) for p in paths]}")

                try:
                    await self.on_changes(paths)
                except Exception as e:
                    logger.error(f"Error handling file changes: {e}")

        except asyncio.CancelledError:
            logger.info("Watch loop cancelled")
            raise

        except Exception as e:
            logger.error(f"Watch loop failed: {e}")

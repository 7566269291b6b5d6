"""Dev server coordinator wiring watch, rebuild and broadcast together.

This module provides the DevServer class which owns the shared HMR state and
runs the rebuild loop as a background task next to the filesystem watcher.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path

from orbit_devserver.broadcaster import Broadcaster
from orbit_devserver.config import Settings
from orbit_devserver.hmr_state import HmrState, ModuleIdResolver
from orbit_devserver.messages import FileChangeMessage, HmrMessage, RebuildMessage
from orbit_devserver.rebuild import BuildCommand, RebuildOrchestrator, RebuildOutcome
from orbit_devserver.watcher import ChangeWatcher

logger = logging.getLogger(__name__)


class DevServer:
    """One dev server instance: HMR state, watcher, rebuild loop and broadcaster.

    Filesystem changes are recorded as they arrive. Rebuilds run one at a time
    from the rebuild loop, which waits out the debounce window after each
    request and then announces the result to every connected client.
    """

    def __init__(self, settings: Settings, project_dir: Path) -> None:
        """Initialize dev server.

        Args:
            settings: Dev server configuration
            project_dir: Root of the project being served and watched
        """
        self.settings = settings
        self.project_dir = project_dir.resolve()
        self.debounce_window = settings.hmr.debounce_seconds

        self.state = HmrState(
            ModuleIdResolver(self.project_dir, settings.hmr.src_dir, settings.hmr.extensions)
        )
        self.broadcaster = Broadcaster(
            max_connections=settings.hmr.max_connections,
            send_timeout=settings.hmr.send_timeout_seconds,
        )
        self.orchestrator = RebuildOrchestrator(
            self.state,
            BuildCommand.from_settings(settings.build),
            cwd=self.project_dir,
            on_status=self._publish_rebuild_status,
            output_limit_chars=settings.build.output_limit_chars,
        )
        self.watcher = ChangeWatcher(
            self.project_dir,
            on_changes=self.handle_changes,
            ignore_patterns=settings.hmr.ignore_patterns,
            debounce_ms=settings.hmr.watch_debounce_ms,
        )

        self.is_running = False
        self._rebuild_requested = asyncio.Event()
        self._rebuild_task: asyncio.Task | None = None
        self._current_cycle: asyncio.Task | None = None

    @property
    def http_port(self) -> int:
        return self.settings.server.port

    @property
    def transport_port(self) -> int:
        return self.settings.server.transport_port

    @property
    def static_root(self) -> Path:
        return (self.project_dir / self.settings.server.static_root).resolve()

    async def start(self) -> None:
        """Start the rebuild loop and, when HMR is enabled, the file watcher."""
        if self.is_running:
            logger.warning("Dev server is already running")
            return

        self.is_running = True
        self._rebuild_task = asyncio.create_task(self._rebuild_loop())

        if self.settings.hmr.enabled:
            await self.watcher.start()
        else:
            logger.info("Hot module reload disabled, serving static files only")

        logger.info(
            f"Dev server started for {self.project_dir} "
            f"(http port {self.http_port}, live-update port {self.transport_port})"
        )

    async def stop(self) -> None:
        """Stop watching, let an in-flight build finish unannounced, close clients."""
        if not self.is_running:
            return

        self.is_running = False
        await self.watcher.stop()
        self.orchestrator.discard_results()

        if self._current_cycle and not self._current_cycle.done():
            grace = self.settings.build.shutdown_grace_seconds
            logger.info(f"Waiting up to {grace:.0f}s for the running build to finish")
            done, _ = await asyncio.wait({self._current_cycle}, timeout=grace)
            if not done:
                logger.warning("Build still running at shutdown, leaving it to finish")

        if self._rebuild_task:
            self._rebuild_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._rebuild_task
            self._rebuild_task = None

        await self.broadcaster.close_all()
        logger.info("Dev server stopped")

    async def handle_changes(self, paths: list[Path]) -> list[str]:
        """Announce changed paths, record module changes and request a rebuild.

        Args:
            paths: Absolute or project-relative changed paths

        Returns:
            Module ids recorded from this batch
        """
        relative_paths = [self.state.resolver.relative_path(path) for path in paths]
        await self.broadcaster.broadcast(FileChangeMessage(paths=relative_paths))

        modules = []
        for path in paths:
            module_id = self.state.record_change(path)
            if module_id is not None:
                modules.append(module_id)
                logger.info(f"File changed: {module_id}")

        if modules:
            self.request_rebuild()
        return modules

    def request_rebuild(self) -> None:
        """Ask the rebuild loop to consider a rebuild once the debounce window allows."""
        self._rebuild_requested.set()

    async def run_rebuild_cycle(self) -> RebuildOutcome | None:
        """Run one debounce-gated rebuild and announce applied modules.

        Returns:
            The outcome, or None when the gate was closed or a build is running
        """
        if self.orchestrator.in_progress:
            return None

        snapshot = self.state.try_begin_rebuild(self.debounce_window)
        if snapshot is None:
            return None

        outcome = await self.orchestrator.attempt_rebuild(snapshot)

        if outcome.succeeded and outcome.modules and not outcome.discarded:
            logger.info(f"Sending HMR update for modules: {', '.join(outcome.modules)}")
            await self.broadcaster.broadcast(HmrMessage(modules=list(outcome.modules)))

        return outcome

    async def _rebuild_loop(self) -> None:
        logger.debug("Rebuild loop started")

        try:
            while self.is_running:
                await self._rebuild_requested.wait()

                delay = self.state.seconds_until_rebuild_allowed(self.debounce_window)
                if delay > 0:
                    await asyncio.sleep(delay)
                    continue

                self._rebuild_requested.clear()
                try:
                    self._current_cycle = asyncio.create_task(self.run_rebuild_cycle())
                    await asyncio.shield(self._current_cycle)
                except Exception as e:
                    logger.error(f"Error in rebuild cycle: {e}")
                    await asyncio.sleep(self.debounce_window)

        except asyncio.CancelledError:
            logger.debug("Rebuild loop cancelled")
            raise

    async def _publish_rebuild_status(self, outcome: RebuildOutcome) -> None:
        await self.broadcaster.broadcast(
            RebuildMessage(
                status=outcome.status,
                error=outcome.error,
                modules=list(outcome.modules) if outcome.succeeded and outcome.modules else None,
            )
        )

"""Rebuild orchestration for the Orbit development server.

This module runs the external build command for pending module changes and
reports each attempt as a RebuildOutcome. Only one build runs at a time; the
shared HMR state is locked only while taking the snapshot and committing it.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path

from orbit_devserver.config import BuildSettings
from orbit_devserver.hmr_state import HmrState
from orbit_devserver.messages import RebuildStatus

logger = logging.getLogger(__name__)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")


class RebuildInProgressError(Exception):
    """Raised when a rebuild is requested while another one is running."""

    pass


@dataclass(frozen=True)
class BuildCommand:
    """External build command line.

    The toolchain selector only changes command construction: with
    ``use_secondary_toolchain`` set, ``+<toolchain>`` is inserted right after the
    program name and nothing else differs.
    """

    program: str
    args: tuple[str, ...] = ()
    use_secondary_toolchain: bool = False
    secondary_toolchain: str = "beta"
    release: bool = False
    features: tuple[str, ...] = ()

    @classmethod
    def from_settings(
        cls, settings: BuildSettings, use_secondary: bool | None = None
    ) -> BuildCommand:
        return cls(
            program=settings.program,
            args=tuple(settings.args),
            use_secondary_toolchain=(
                settings.use_secondary_toolchain if use_secondary is None else use_secondary
            ),
            secondary_toolchain=settings.secondary_toolchain,
            release=settings.release,
            features=tuple(settings.features),
        )

    def argv(self) -> list[str]:
        argv = [self.program]
        if self.use_secondary_toolchain:
            argv.append(f"+{self.secondary_toolchain}")
        argv.extend(self.args)
        if self.release:
            argv.append("--release")
        if self.features:
            argv.extend(["--features", ",".join(self.features)])
        return argv


@dataclass(frozen=True)
class RebuildOutcome:
    """Result of one rebuild attempt."""

    status: RebuildStatus
    modules: tuple[str, ...] | None = None
    error: str | None = None
    unavailable: bool = False
    duration_seconds: float = 0.0
    discarded: bool = field(default=False, compare=False)

    @classmethod
    def started(cls, modules: list[str]) -> RebuildOutcome:
        return cls(status=RebuildStatus.STARTED, modules=tuple(modules))

    @property
    def succeeded(self) -> bool:
        return self.status is RebuildStatus.COMPLETED


StatusCallback = Callable[[RebuildOutcome], Awaitable[None]]


class RebuildOrchestrator:
    """Runs the build command and commits pending module changes on success."""

    def __init__(
        self,
        state: HmrState,
        command: BuildCommand,
        cwd: Path,
        on_status: StatusCallback | None = None,
        output_limit_chars: int = 8000,
    ) -> None:
        """Initialize rebuild orchestrator.

        Args:
            state: Shared HMR state
            command: Build command to run for each attempt
            cwd: Working directory for the build
            on_status: Awaited with the started outcome and with the terminal outcome
            output_limit_chars: Tail of the build output kept as failure diagnostic
        """
        self.state = state
        self.command = command
        self.cwd = cwd
        self.on_status = on_status
        self.output_limit_chars = output_limit_chars
        self._in_progress = False
        self._discard = False
        self.stats = {"attempts": 0, "completed": 0, "failed": 0}

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    def discard_results(self) -> None:
        """Drop the result of any in-flight or future build (server shutting down)."""
        self._discard = True

    async def attempt_rebuild(self, snapshot: dict[str, int] | None = None) -> RebuildOutcome:
        """Run one rebuild cycle.

        Args:
            snapshot: Pending snapshot from ``HmrState.try_begin_rebuild``. When None
                the orchestrator takes the snapshot itself.

        Returns:
            Completed outcome carrying the snapshotted modules, or failed outcome
            with a diagnostic. A failed rebuild never touches pending state.

        Raises:
            RebuildInProgressError: If another rebuild is still running
        """
        if self._in_progress:
            raise RebuildInProgressError("A rebuild is already in progress")

        self._in_progress = True
        try:
            if snapshot is None:
                snapshot = self.state.begin_rebuild()
            modules = sorted(snapshot)
            self.stats["attempts"] += 1

            logger.info(f"Rebuilding project ({len(modules)} changed modules)")
            await self._notify(RebuildOutcome.started(modules))

            outcome = await self._run_build(snapshot)

            if self._discard:
                logger.info("Server shutting down, discarding rebuild result")
                return RebuildOutcome(
                    status=RebuildStatus.FAILED,
                    error="Rebuild result discarded: server shutting down",
                    duration_seconds=outcome.duration_seconds,
                    discarded=True,
                )

            if outcome.succeeded:
                self.stats["completed"] += 1
                logger.info(f"Rebuild completed in {outcome.duration_seconds:.2f}s")
            else:
                self.stats["failed"] += 1
                logger.error(f"Rebuild failed: {outcome.error}")

            await self._notify(outcome)
            return outcome

        finally:
            self._in_progress = False

    async def _run_build(self, snapshot: dict[str, int]) -> RebuildOutcome:
        argv = self.command.argv()
        logger.debug(f"Running build command: {argv}")
        start_time = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(self.cwd),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return RebuildOutcome(
                status=RebuildStatus.FAILED,
                error=f"Build command unavailable: {argv[0]}: {e}",
                unavailable=True,
                duration_seconds=time.monotonic() - start_time,
            )

        output, _ = await process.communicate()
        duration = time.monotonic() - start_time

        if process.returncode != 0:
            return RebuildOutcome(
                status=RebuildStatus.FAILED,
                error=self._diagnostic(output, process.returncode),
                duration_seconds=duration,
            )

        if self._discard:
            return RebuildOutcome(status=RebuildStatus.COMPLETED, duration_seconds=duration)

        applied = self.state.commit_rebuild(snapshot)
        return RebuildOutcome(
            status=RebuildStatus.COMPLETED, modules=tuple(applied), duration_seconds=duration
        )

    def _diagnostic(self, output: bytes | None, returncode: int | None) -> str:
        text = _ANSI_ESCAPE.sub("", (output or b"").decode("utf-8", errors="replace")).strip()
        if len(text) > self.output_limit_chars:
            text = "..." + text[-self.output_limit_chars :]
        header = f"Build exited with status {returncode}"
        return f"{header}\n{text}" if text else header

    async def _notify(self, outcome: RebuildOutcome) -> None:
        if self.on_status is None:
            return
        try:
            await self.on_status(outcome)
        except Exception as e:
            logger.error(f"Error publishing rebuild status {outcome.status.value}: {e}")

"""Tests for the rebuild orchestrator and build command construction.

Builds run a small script under the current Python interpreter so the real
subprocess path is exercised without a toolchain.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from orbit_devserver.config import BuildSettings
from orbit_devserver.hmr_state import HmrState, ModuleIdResolver
from orbit_devserver.messages import RebuildStatus
from orbit_devserver.rebuild import (
    BuildCommand,
    RebuildInProgressError,
    RebuildOrchestrator,
    RebuildOutcome,
)


def python_command(exit_code: int = 0, sleep: float = 0.0, output: str = "") -> BuildCommand:
    """Build command running a tiny script under the current interpreter."""
    script = f"import sys, time; time.sleep({sleep!r}); print({output!r}); sys.exit({exit_code})"
    return BuildCommand(program=sys.executable, args=("-c", script))


class TestBuildCommand:
    """Test build command construction."""

    def test_default_command(self) -> None:
        command = BuildCommand.from_settings(BuildSettings())

        assert command.argv() == ["cargo", "build", "--color=always"]

    def test_secondary_toolchain_only_adds_selector(self) -> None:
        primary = BuildCommand.from_settings(BuildSettings())
        secondary = BuildCommand.from_settings(BuildSettings(), use_secondary=True)

        assert secondary.argv() == ["cargo", "+beta", "build", "--color=always"]
        assert [arg for arg in secondary.argv() if arg != "+beta"] == primary.argv()

    def test_toolchain_name_is_configurable(self) -> None:
        settings = BuildSettings(use_secondary_toolchain=True, secondary_toolchain="nightly")

        assert BuildCommand.from_settings(settings).argv()[1] == "+nightly"

    def test_release_and_features(self) -> None:
        settings = BuildSettings(release=True, features=["ssr", "hydrate"])

        assert BuildCommand.from_settings(settings).argv() == [
            "cargo",
            "build",
            "--color=always",
            "--release",
            "--features",
            "ssr,hydrate",
        ]


@pytest.fixture
def state(project_dir: Path) -> HmrState:
    return HmrState(ModuleIdResolver(project_dir))


def record(state: HmrState, project_dir: Path, *names: str) -> None:
    for name in names:
        state.record_change(project_dir / "src" / f"{name}.rs")


class TestAttemptRebuild:
    """Test rebuild attempts against real subprocesses."""

    @pytest.mark.asyncio
    async def test_successful_rebuild_clears_pending(
        self, state: HmrState, project_dir: Path
    ) -> None:
        record(state, project_dir, "a", "b")
        orchestrator = RebuildOrchestrator(state, python_command(), cwd=project_dir)

        outcome = await orchestrator.attempt_rebuild()

        assert outcome.status is RebuildStatus.COMPLETED
        assert outcome.modules == ("a", "b")
        assert outcome.error is None
        assert state.pending == {}
        assert state.last_rebuild_at is not None

    @pytest.mark.asyncio
    async def test_failed_rebuild_keeps_pending(self, state: HmrState, project_dir: Path) -> None:
        record(state, project_dir, "a")
        update = state.pending["a"]
        orchestrator = RebuildOrchestrator(
            state, python_command(exit_code=3, output="error[E0425]: oops"), cwd=project_dir
        )

        outcome = await orchestrator.attempt_rebuild()

        assert outcome.status is RebuildStatus.FAILED
        assert outcome.modules is None
        assert "status 3" in (outcome.error or "")
        assert "error[E0425]: oops" in (outcome.error or "")
        assert outcome.unavailable is False
        assert state.pending_modules() == ["a"]
        assert update.is_applied is False

    @pytest.mark.asyncio
    async def test_missing_build_command_is_distinct_failure(
        self, state: HmrState, project_dir: Path
    ) -> None:
        record(state, project_dir, "a")
        command = BuildCommand(program="definitely-not-a-real-build-tool-xyz")
        orchestrator = RebuildOrchestrator(state, command, cwd=project_dir)

        outcome = await orchestrator.attempt_rebuild()

        assert outcome.status is RebuildStatus.FAILED
        assert outcome.unavailable is True
        assert "Build command unavailable" in (outcome.error or "")
        assert state.pending_modules() == ["a"]

    @pytest.mark.asyncio
    async def test_changes_during_build_are_left_for_next_cycle(
        self, state: HmrState, project_dir: Path
    ) -> None:
        record(state, project_dir, "a", "b")
        orchestrator = RebuildOrchestrator(state, python_command(sleep=0.3), cwd=project_dir)

        task = asyncio.create_task(orchestrator.attempt_rebuild())
        await asyncio.sleep(0.1)
        record(state, project_dir, "c")
        outcome = await task

        assert outcome.modules == ("a", "b")
        assert state.pending_modules() == ["c"]

    @pytest.mark.asyncio
    async def test_second_concurrent_attempt_is_rejected(
        self, state: HmrState, project_dir: Path
    ) -> None:
        record(state, project_dir, "a")
        orchestrator = RebuildOrchestrator(state, python_command(sleep=0.3), cwd=project_dir)

        task = asyncio.create_task(orchestrator.attempt_rebuild())
        await asyncio.sleep(0.05)
        assert orchestrator.in_progress is True

        with pytest.raises(RebuildInProgressError):
            await orchestrator.attempt_rebuild()

        await task
        assert orchestrator.in_progress is False

    @pytest.mark.asyncio
    async def test_status_callback_sees_started_then_terminal(
        self, state: HmrState, project_dir: Path
    ) -> None:
        record(state, project_dir, "a")
        seen: list[RebuildOutcome] = []

        async def on_status(outcome: RebuildOutcome) -> None:
            seen.append(outcome)

        orchestrator = RebuildOrchestrator(
            state, python_command(), cwd=project_dir, on_status=on_status
        )
        await orchestrator.attempt_rebuild()

        assert [outcome.status for outcome in seen] == [
            RebuildStatus.STARTED,
            RebuildStatus.COMPLETED,
        ]
        assert seen[0].modules == ("a",)

    @pytest.mark.asyncio
    async def test_status_callback_errors_do_not_fail_rebuild(
        self, state: HmrState, project_dir: Path
    ) -> None:
        record(state, project_dir, "a")

        async def on_status(outcome: RebuildOutcome) -> None:
            raise RuntimeError("broadcast down")

        orchestrator = RebuildOrchestrator(
            state, python_command(), cwd=project_dir, on_status=on_status
        )
        outcome = await orchestrator.attempt_rebuild()

        assert outcome.succeeded is True

    @pytest.mark.asyncio
    async def test_discarded_result_is_not_committed(
        self, state: HmrState, project_dir: Path
    ) -> None:
        record(state, project_dir, "a")
        seen: list[RebuildOutcome] = []

        async def on_status(outcome: RebuildOutcome) -> None:
            seen.append(outcome)

        orchestrator = RebuildOrchestrator(
            state, python_command(sleep=0.2), cwd=project_dir, on_status=on_status
        )
        task = asyncio.create_task(orchestrator.attempt_rebuild())
        await asyncio.sleep(0.05)
        orchestrator.discard_results()
        outcome = await task

        assert outcome.discarded is True
        assert state.pending_modules() == ["a"]
        assert [o.status for o in seen] == [RebuildStatus.STARTED]

    @pytest.mark.asyncio
    async def test_long_output_is_truncated_to_tail(
        self, state: HmrState, project_dir: Path
    ) -> None:
        orchestrator = RebuildOrchestrator(
            state,
            python_command(exit_code=1, output="x" * 5000 + "TAIL"),
            cwd=project_dir,
            output_limit_chars=256,
        )

        outcome = await orchestrator.attempt_rebuild()

        assert outcome.error is not None
        assert outcome.error.endswith("TAIL")
        assert len(outcome.error) < 400

    @pytest.mark.asyncio
    async def test_ansi_colour_codes_are_stripped(
        self, state: HmrState, project_dir: Path
    ) -> None:
        orchestrator = RebuildOrchestrator(
            state,
            python_command(exit_code=101, output="\x1b[1;31merror\x1b[0m: bad"),
            cwd=project_dir,
        )

        outcome = await orchestrator.attempt_rebuild()

        assert "error: bad" in (outcome.error or "")
        assert "\x1b" not in (outcome.error or "")

"""Shared hot module reload state for one dev server instance.

This module tracks which source modules changed since the last successful
rebuild. It is written from the watch loop and read by the rebuild path, so
every operation runs under a single lock held only for that operation.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from orbit_devserver.debounce import gate_open, remaining_window

logger = logging.getLogger(__name__)


@dataclass
class ModuleUpdate:
    """One pending logical change to a source module."""

    module_id: str
    path: str
    changed_at: float
    is_applied: bool = False
    revision: int = 1


class ModuleIdResolver:
    """Maps changed file paths to stable module identifiers.

    A module id is the POSIX path relative to the source directory. The primary
    (first) tracked extension is stripped and any other tracked extension is
    kept (as is any name that would otherwise look like another tracked
    file), so ``src/components/button.rs`` becomes ``components/button`` while
    ``src/components/button.orbit`` stays ``components/button.orbit``. Two
    distinct paths never share an id. Files outside the source directory, or
    without one of the tracked extensions, are not modules.
    """

    def __init__(
        self,
        project_root: Path,
        src_dir: str = "src",
        extensions: Iterable[str] = (".rs", ".orbit"),
    ) -> None:
        self.project_root = project_root.resolve()
        self.src_root = PurePosixPath(Path(src_dir).as_posix())
        self.extensions = tuple(dict.fromkeys(ext.lower() for ext in extensions))
        self.primary_extension = self.extensions[0] if self.extensions else None

    def module_id_for(self, path: Path | str) -> str | None:
        """Return the module id for ``path`` or None when it is not a module."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.project_root / candidate

        try:
            relative = candidate.resolve().relative_to(self.project_root)
        except ValueError:
            return None

        rel_posix = PurePosixPath(relative.as_posix())
        if rel_posix.suffix.lower() not in self.extensions:
            return None

        try:
            inside_src = rel_posix.relative_to(self.src_root)
        except ValueError:
            return None

        stripped = inside_src.with_suffix("")
        # Stripped ids never end in a tracked extension, kept ids always do
        if (
            rel_posix.suffix == self.primary_extension
            and stripped.suffix.lower() not in self.extensions
        ):
            inside_src = stripped
        module_id = str(inside_src)
        return module_id if module_id not in ("", ".") else None

    def relative_path(self, path: Path | str) -> str:
        """Project-relative POSIX path, or the path unchanged when outside the project."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.project_root / candidate
        try:
            return candidate.resolve().relative_to(self.project_root).as_posix()
        except ValueError:
            return candidate.as_posix()


@dataclass
class HmrState:
    """Pending module changes and rebuild timing, guarded by one lock."""

    resolver: ModuleIdResolver
    clock: Callable[[], float] = time.monotonic
    _pending: dict[str, ModuleUpdate] = field(default_factory=dict, init=False)
    _last_rebuild_at: float | None = field(default=None, init=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def last_rebuild_at(self) -> float | None:
        with self._lock:
            return self._last_rebuild_at

    @property
    def pending(self) -> dict[str, ModuleUpdate]:
        """Copy of the pending map."""
        with self._lock:
            return dict(self._pending)

    def pending_modules(self) -> list[str]:
        with self._lock:
            return sorted(self._pending)

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    def record_change(self, path: Path | str) -> str | None:
        """Record a change to ``path`` and return its module id.

        Repeated changes to one file refresh the existing entry instead of adding
        another. Paths that are not modules are ignored and return None.
        """
        module_id = self.resolver.module_id_for(path)
        if module_id is None:
            return None

        now = self.clock()
        with self._lock:
            update = self._pending.get(module_id)
            if update is None:
                self._pending[module_id] = ModuleUpdate(
                    module_id=module_id, path=self.resolver.relative_path(path), changed_at=now
                )
            else:
                update.changed_at = now
                update.is_applied = False
                update.revision += 1

        logger.debug(f"Recorded change to module {module_id}")
        return module_id

    def should_rebuild(self, window: float) -> bool:
        """Debounce gate: may a rebuild start now?"""
        with self._lock:
            return gate_open(self.clock(), self._last_rebuild_at, bool(self._pending), window)

    def seconds_until_rebuild_allowed(self, window: float) -> float:
        with self._lock:
            return remaining_window(self.clock(), self._last_rebuild_at, window)

    def begin_rebuild(self) -> dict[str, int]:
        """Snapshot pending modules and stamp the rebuild start time.

        Returns:
            Mapping of module id to the revision seen at snapshot time
        """
        with self._lock:
            return self._begin_locked()

    def try_begin_rebuild(self, window: float) -> dict[str, int] | None:
        """Check the debounce gate and begin a rebuild as one atomic step.

        Returns:
            The snapshot when the gate was open, otherwise None
        """
        with self._lock:
            if not gate_open(self.clock(), self._last_rebuild_at, bool(self._pending), window):
                return None
            return self._begin_locked()

    def commit_rebuild(self, snapshot: dict[str, int]) -> list[str]:
        """Mark snapshotted modules applied and drop them from pending.

        Entries changed again after the snapshot keep their newer, unapplied
        revision and stay pending for the next cycle.

        Returns:
            Sorted module ids that were present in the snapshot
        """
        with self._lock:
            for module_id, revision in snapshot.items():
                update = self._pending.get(module_id)
                if update is None or update.revision != revision:
                    continue
                update.is_applied = True
                del self._pending[module_id]
        return sorted(snapshot)

    def _begin_locked(self) -> dict[str, int]:
        now = self.clock()
        if self._last_rebuild_at is None or now > self._last_rebuild_at:
            self._last_rebuild_at = now
        return {module_id: update.revision for module_id, update in self._pending.items()}

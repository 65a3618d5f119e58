"""
File watcher for incremental graph updates.

Uses watchdog to monitor a project directory.  Events arrive on the
observer thread and are handed to the event loop with
``loop.call_soon_threadsafe``; on the loop they are debounced per file
(the latest event for a path wins) and delivered as
:class:`~ckg.models.FileChange` records.
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Callable, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from ..models import ChangeType, FileChange
from .extractor import SUPPORTED_EXTENSIONS

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Directory exclusion rules (shared with the full-index walker)
# ---------------------------------------------------------------------------

SKIP_DIRS: frozenset[str] = frozenset({
    "node_modules", "dist", "build", "__pycache__",
    ".git", "vendor", ".ckg",
    ".venv", "venv", "env", ".env",
    ".tox", ".mypy_cache", ".pytest_cache",
    "target",           # Rust/Java build output
    "bin", "obj",
    "coverage",
    ".next", ".nuxt",   # JS frameworks
    "out", ".output",
    "eggs", ".eggs",
    ".cache",
})


def should_ignore(rel_path: str) -> bool:
    """Return True if *rel_path* (relative to the project root) is not indexable.

    Only segments below the root are checked, so a project that itself
    lives under a directory such as ``build/`` is still watched.
    """
    if os.path.splitext(rel_path)[1].lower() not in SUPPORTED_EXTENSIONS:
        return True
    parts = rel_path.replace("\\", "/").split("/")[:-1]
    return any(part in SKIP_DIRS for part in parts)


class _ChangeHandler(FileSystemEventHandler):
    """Watchdog handler; runs on the observer thread."""

    def __init__(self, watcher: "ProjectWatcher") -> None:
        self._watcher = watcher

    def on_modified(self, event) -> None:
        if not event.is_directory:
            self._watcher.push(event.src_path, ChangeType.MODIFIED)

    def on_created(self, event) -> None:
        if not event.is_directory:
            self._watcher.push(event.src_path, ChangeType.CREATED)

    def on_deleted(self, event) -> None:
        if not event.is_directory:
            self._watcher.push(event.src_path, ChangeType.DELETED)

    def on_moved(self, event) -> None:
        if not event.is_directory:
            self._watcher.push(event.src_path, ChangeType.DELETED)
            self._watcher.push(event.dest_path, ChangeType.CREATED)


class ProjectWatcher:
    """
    Watches one project root and emits debounced :class:`FileChange` events.

    Parameters
    ----------
    project_id:
        Project the emitted changes belong to.
    root_path:
        Directory to watch (recursively).
    on_change:
        Called on the event loop with each debounced change.
    loop:
        Loop that receives the events; defaults to the running loop.
    debounce_seconds:
        Quiet period per file before its latest event is delivered.
    """

    def __init__(
        self,
        project_id: str,
        root_path: str,
        on_change: Callable[[FileChange], None],
        loop: Optional[asyncio.AbstractEventLoop] = None,
        debounce_seconds: float = 0.5,
    ) -> None:
        self.project_id = project_id
        self.root_path = os.path.abspath(root_path)
        self._on_change = on_change
        self._loop = loop or asyncio.get_running_loop()
        self._debounce = debounce_seconds
        self._pending: dict[str, tuple[str, asyncio.TimerHandle]] = {}
        self._observer: Optional[Observer] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def start(self) -> None:
        """Start the watchdog observer in its own daemon thread."""
        if self._observer is not None:
            return
        observer = Observer()
        observer.schedule(_ChangeHandler(self), self.root_path, recursive=True)
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.info("[CKG watcher] Watching %s for project %s", self.root_path, self.project_id)

    def stop(self) -> None:
        """Stop the observer and drop pending (not yet delivered) events."""
        for _change_type, handle in self._pending.values():
            handle.cancel()
        self._pending.clear()
        if self._observer is None:
            return
        self._observer.stop()
        self._observer.join(timeout=5)
        self._observer = None
        logger.info("[CKG watcher] Stopped watching %s", self.root_path)

    # ------------------------------------------------------------------
    # Event flow
    # ------------------------------------------------------------------

    def _rel_path(self, abs_path: str) -> Optional[str]:
        """Convert *abs_path* to a project-relative POSIX path, or None if outside."""
        try:
            rel = os.path.relpath(os.path.abspath(abs_path), self.root_path)
        except ValueError:
            return None
        if rel.startswith(".."):
            return None
        return rel.replace(os.sep, "/")

    def push(self, abs_path: str, change_type: str) -> None:
        """Thread-safe entry point for raw file-system events."""
        rel_path = self._rel_path(abs_path)
        if rel_path is None or should_ignore(rel_path):
            return
        try:
            self._loop.call_soon_threadsafe(self._schedule, rel_path, change_type)
        except RuntimeError:
            # Loop already closed
            logger.debug("[CKG watcher] Dropped %s event for %s", change_type, rel_path)

    def _schedule(self, rel_path: str, change_type: str) -> None:
        """Restart the debounce timer of *rel_path*; runs on the loop."""
        previous = self._pending.pop(rel_path, None)
        if previous is not None:
            previous[1].cancel()
            # A create followed by modifications is still a create
            if previous[0] == ChangeType.CREATED and change_type == ChangeType.MODIFIED:
                change_type = ChangeType.CREATED
        handle = self._loop.call_later(self._debounce, self._fire, rel_path)
        self._pending[rel_path] = (change_type, handle)

    def _fire(self, rel_path: str) -> None:
        entry = self._pending.pop(rel_path, None)
        if entry is None:
            return
        change = FileChange(path=rel_path, project_id=self.project_id, change_type=entry[0])
        logger.info("[CKG watcher] %s: %s", change.change_type.capitalize(), rel_path)
        try:
            self._on_change(change)
        except Exception as exc:
            logger.warning("[CKG watcher] Error handling %s: %s", rel_path, exc)

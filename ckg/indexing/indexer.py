"""
Incremental indexer: keeps a project's graph in step with its files.

Full index:
  1. Walk the project directory (skipping build / VCS / virtualenv dirs
     and .gitignore matches)
  2. Extract each supported source file
  3. Replace the project's graph with the combined result in one batch

Incremental index:
  File changes (from the watcher or :meth:`IncrementalIndexer.enqueue_change`)
  go through one queue with one worker, so they are applied in arrival
  order.  Each change replaces the file's nodes atomically, then the
  dependent caches are invalidated and the file's chunks and embeddings
  are regenerated.

Per-project states: ``idle`` -> ``full_indexing`` -> ``watching`` -> ``idle``.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from ..errors import ExtractionError, InvalidStateError
from ..events import EventBus
from ..health import ComponentHealth
from ..models import (
    ChangeType,
    ExtractionResult,
    FileChange,
    IndexProgress,
    NodeType,
    utc_now,
)
from .chunker import Chunker, SymbolChunker
from .extractor import SUPPORTED_EXTENSIONS, Extractor, TreeSitterExtractor
from .watcher import SKIP_DIRS, ProjectWatcher

if TYPE_CHECKING:
    from ..context_builder import ContextBuilder
    from ..retrieval.embedding import EmbeddingService
    from ..retrieval.symbolic_index import SymbolicIndex
    from ..store.graph_store import GraphStore

logger = logging.getLogger(__name__)


class IndexState:
    IDLE = "idle"
    FULL_INDEXING = "full_indexing"
    WATCHING = "watching"


# ---------------------------------------------------------------------------
# File walker
# ---------------------------------------------------------------------------

def _load_gitignore_patterns(project_root: str) -> list[str]:
    """Read .gitignore from *project_root* and return glob patterns."""
    gi_path = os.path.join(project_root, ".gitignore")
    patterns: list[str] = []
    if not os.path.exists(gi_path):
        return patterns
    with open(gi_path, encoding="utf-8", errors="replace") as fh:
        for line in fh:
            line = line.strip()
            if line and not line.startswith(("#", "!")):
                patterns.append(line.rstrip("/"))
    return patterns


def _is_ignored(rel_path: str, patterns: list[str]) -> bool:
    name = os.path.basename(rel_path)
    return any(fnmatch.fnmatch(name, p) or fnmatch.fnmatch(rel_path, p) for p in patterns)


def walk_source_files(project_root: str) -> list[str]:
    """
    Return every indexable source file under *project_root*.

    Paths are project-relative with ``/`` separators, sorted.
    """
    patterns = _load_gitignore_patterns(project_root)
    results: list[str] = []
    for dirpath, dirnames, filenames in os.walk(project_root, topdown=True):
        rel_dir = os.path.relpath(dirpath, project_root).replace(os.sep, "/")
        rel_dir = "" if rel_dir == "." else rel_dir
        # Prune in place so os.walk does not descend
        dirnames[:] = [
            d for d in dirnames
            if d not in SKIP_DIRS
            and not d.startswith(".")
            and not _is_ignored(f"{rel_dir}/{d}" if rel_dir else d, patterns)
        ]
        for fname in filenames:
            if os.path.splitext(fname)[1].lower() not in SUPPORTED_EXTENSIONS:
                continue
            rel_path = f"{rel_dir}/{fname}" if rel_dir else fname
            if not _is_ignored(rel_path, patterns):
                results.append(rel_path)
    return sorted(results)


def _read_text(path: str) -> str:
    with open(path, encoding="utf-8", errors="replace") as fh:
        return fh.read()


# ---------------------------------------------------------------------------
# Indexer
# ---------------------------------------------------------------------------

@dataclass
class _Project:
    project_id: str
    root_path: str
    state: str = IndexState.IDLE
    commit_hash: Optional[str] = None
    watcher: Optional[ProjectWatcher] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    last_full_index: Optional[str] = None
    last_update: Optional[str] = None


class IncrementalIndexer:
    """
    Full and incremental indexing of projects into a :class:`GraphStore`.

    Parameters
    ----------
    store:
        Destination graph store.
    extractor:
        Extraction capability; defaults to :class:`TreeSitterExtractor`.
    chunker:
        Chunking capability; defaults to :class:`SymbolChunker`.
    embeddings:
        When given, chunks written after a change are embedded.
    symbolic_index, context_builder:
        Caches invalidated after every write.
    events:
        Channels for ``index_progress`` and ``file_changes``.
    debounce_seconds:
        Watcher debounce per file.
    """

    def __init__(
        self,
        store: "GraphStore",
        extractor: Optional[Extractor] = None,
        chunker: Optional[Chunker] = None,
        embeddings: Optional["EmbeddingService"] = None,
        symbolic_index: Optional["SymbolicIndex"] = None,
        context_builder: Optional["ContextBuilder"] = None,
        events: Optional[EventBus] = None,
        debounce_seconds: float = 0.5,
    ) -> None:
        self._store = store
        self._extractor = extractor or TreeSitterExtractor()
        self._chunker = chunker or SymbolChunker()
        self._embeddings = embeddings
        self._symbolic = symbolic_index
        self._context = context_builder
        self.events = events or EventBus()
        self._debounce = debounce_seconds

        self._projects: dict[str, _Project] = {}
        self._queue: Optional[asyncio.Queue] = None
        self._worker_task: Optional[asyncio.Task] = None
        self._changes_processed = 0
        self._changes_failed = 0
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def get_state(self, project_id: str) -> str:
        project = self._projects.get(project_id)
        return project.state if project else IndexState.IDLE

    def _register(self, project_id: str, root_path: str) -> _Project:
        root = os.path.abspath(root_path)
        project = self._projects.get(project_id)
        if project is None:
            project = _Project(project_id=project_id, root_path=root)
            self._projects[project_id] = project
        else:
            project.root_path = root
        return project

    async def start_indexing(
        self,
        project_id: str,
        root_path: str,
        commit_hash: Optional[str] = None,
        watch: bool = True,
    ) -> dict:
        """
        Run a full index, then keep the project up to date.

        Parameters
        ----------
        project_id:
            Project to index.
        root_path:
            Project root directory.
        commit_hash:
            Stored on every node.
        watch:
            Start a file watcher after the full index.

        Returns
        -------
        dict
            Statistics of the full index (see :meth:`perform_full_index`).

        Raises
        ------
        InvalidStateError
            If the project is already indexing or watching.
        """
        if self.get_state(project_id) != IndexState.IDLE:
            raise InvalidStateError(
                f"Project {project_id} is already {self.get_state(project_id)}"
            )
        project = self._register(project_id, root_path)
        project.state = IndexState.FULL_INDEXING
        project.commit_hash = commit_hash
        project.cancel_event = asyncio.Event()
        logger.info("[CKG indexer] Starting indexing for project %s at %s",
                    project_id, project.root_path)
        try:
            stats = await self.perform_full_index(
                project_id, project.root_path, commit_hash, project.cancel_event
            )
        except BaseException:
            project.state = IndexState.IDLE
            raise
        if stats.get("cancelled"):
            project.state = IndexState.IDLE
            return stats

        self._ensure_worker()
        if watch:
            project.watcher = ProjectWatcher(
                project_id, project.root_path, self._on_watcher_change,
                debounce_seconds=self._debounce,
            )
            project.watcher.start()
        project.state = IndexState.WATCHING
        logger.info("[CKG indexer] Project %s is now watching", project_id)
        return stats

    async def stop_indexing(self, project_id: str) -> None:
        """
        Stop keeping *project_id* up to date.

        A running full index is cancelled between files.  Queued changes
        are drained before the worker stops.

        Raises
        ------
        InvalidStateError
            If the project is idle.
        """
        project = self._projects.get(project_id)
        if project is None or project.state == IndexState.IDLE:
            raise InvalidStateError(f"Project {project_id} is not being indexed")
        if project.state == IndexState.FULL_INDEXING:
            project.cancel_event.set()
            logger.info("[CKG indexer] Cancelling full index of %s", project_id)
            return
        if project.watcher is not None:
            project.watcher.stop()
            project.watcher = None
        project.state = IndexState.IDLE
        if self._queue is not None:
            await self._queue.join()
        if not any(p.state == IndexState.WATCHING for p in self._projects.values()):
            await self._stop_worker()
        logger.info("[CKG indexer] Stopped indexing for project %s", project_id)

    async def close(self) -> None:
        """Stop every watcher and the worker."""
        for project in self._projects.values():
            project.cancel_event.set()
            if project.watcher is not None:
                project.watcher.stop()
                project.watcher = None
            project.state = IndexState.IDLE
        await self._stop_worker()

    # ------------------------------------------------------------------
    # Full index
    # ------------------------------------------------------------------

    async def perform_full_index(
        self,
        project_id: str,
        root_path: str,
        commit_hash: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict:
        """
        Replace the project's graph with a fresh extraction of *root_path*.

        Files that fail to extract are logged and skipped.  Nothing is
        written until every file has been extracted, and the old graph is
        swapped for the new one in a single transaction, so a cancelled or
        failed run leaves the previous graph untouched.

        Returns
        -------
        dict
            Keys: files, processed, failed, nodes, edges, skipped_edges,
            references, diagnostics, cancelled, duration.
        """
        project = self._register(project_id, root_path)
        project.commit_hash = commit_hash
        start = time.monotonic()
        files = await asyncio.to_thread(walk_source_files, project.root_path)
        total = len(files)
        logger.info("[CKG indexer] Full index of %s: %d files", project_id, total)

        combined = ExtractionResult()
        processed = failed = 0
        for i, rel_path in enumerate(files, start=1):
            if cancel_event is not None and cancel_event.is_set():
                logger.info("[CKG indexer] Full index of %s cancelled after %d files",
                            project_id, i - 1)
                return {"files": total, "processed": processed, "failed": failed,
                        "cancelled": True, "duration": time.monotonic() - start}
            try:
                content = await asyncio.to_thread(
                    _read_text, os.path.join(project.root_path, rel_path)
                )
                combined.extend(self._extractor.extract(rel_path, project_id, commit_hash, content))
                processed += 1
            except ExtractionError as exc:
                failed += 1
                logger.warning("[CKG indexer] Skipping %s: %s", rel_path, exc)
            except OSError as exc:
                failed += 1
                logger.warning("[CKG indexer] Cannot read %s: %s", rel_path, exc)
            await self.events.index_progress.publish(IndexProgress(
                project_id=project_id,
                progress=int(i * 100 / total),
                current_file=rel_path,
                processed=i,
                total=total,
            ))

        written = await self._store.batch_create(combined, project_id=project_id,
                                                 replace_project=True)
        self._invalidate(project_id)
        project.last_full_index = utc_now()

        duration = time.monotonic() - start
        logger.info(
            "[CKG indexer] Indexed %s: %d files, %d nodes, %d edges in %.2fs",
            project_id, processed, written["nodes"], written["edges"], duration,
        )
        return {
            "files": total,
            "processed": processed,
            "failed": failed,
            "nodes": written["nodes"],
            "edges": written["edges"],
            "skipped_edges": written["skipped_edges"],
            "references": written["references"],
            "diagnostics": written["diagnostics"],
            "cancelled": False,
            "duration": duration,
        }

    # ------------------------------------------------------------------
    # Change queue
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker(), name="ckg-index-worker")

    async def _stop_worker(self) -> None:
        task, self._worker_task = self._worker_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    def enqueue_change(self, change: FileChange) -> "asyncio.Future[dict]":
        """
        Queue *change* and return a future resolved once it is applied.

        ``change.path`` may be absolute or relative to the project root.

        Raises
        ------
        InvalidStateError
            If the project has never been indexed (its root is unknown).
        """
        project = self._projects.get(change.project_id)
        if project is None:
            raise InvalidStateError(f"Project {change.project_id} has not been indexed")
        path = change.path
        if os.path.isabs(path):
            path = os.path.relpath(path, project.root_path)
        change = FileChange(path=path.replace(os.sep, "/"), project_id=change.project_id,
                            change_type=change.change_type)
        self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((change, future))
        return future

    def _on_watcher_change(self, change: FileChange) -> None:
        """Watcher callback (on the loop): publish, then queue the change."""
        task = asyncio.ensure_future(self.events.file_changes.publish(change))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        future = self.enqueue_change(change)
        # Nobody awaits watcher changes; failures are already logged by the worker
        future.add_done_callback(lambda f: f.cancelled() or f.exception())

    async def _worker(self) -> None:
        """Apply queued changes one at a time, in arrival order."""
        assert self._queue is not None
        while True:
            change, future = await self._queue.get()
            try:
                result = await self._apply_change(change)
                self._changes_processed += 1
                if not future.done():
                    future.set_result(result)
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as exc:
                self._changes_failed += 1
                logger.warning("[CKG indexer] Failed to apply %s of %s in %s: %s",
                               change.change_type, change.path, change.project_id, exc)
                if not future.done():
                    future.set_exception(exc)
            finally:
                self._queue.task_done()

    async def _apply_change(self, change: FileChange) -> dict:
        project = self._projects[change.project_id]
        rel_path = change.path
        content: Optional[str] = None

        if change.change_type == ChangeType.DELETED:
            deleted = await self._store.delete_nodes_for_path(rel_path, change.project_id)
            stats = {"deleted": deleted, "nodes": 0, "edges": 0}
        else:
            try:
                content = await asyncio.to_thread(
                    _read_text, os.path.join(project.root_path, rel_path)
                )
            except FileNotFoundError:
                # Deleted before the event was processed
                deleted = await self._store.delete_nodes_for_path(rel_path, change.project_id)
                stats = {"deleted": deleted, "nodes": 0, "edges": 0}
            else:
                try:
                    result = self._extractor.extract(
                        rel_path, change.project_id, project.commit_hash, content
                    )
                except ExtractionError as exc:
                    logger.warning("[CKG indexer] Skipping %s: %s", rel_path, exc)
                    return {"skipped": True, "error": str(exc)}
                stats = await self._store.batch_create(
                    result, replace_paths=[rel_path], project_id=change.project_id
                )

        self._invalidate(change.project_id)
        stats["chunks"] = await self.refresh_file_chunks(change.project_id, rel_path, content)
        project.last_update = utc_now()
        logger.info("[CKG indexer] Applied %s of %s (%d nodes)",
                    change.change_type, rel_path, stats.get("nodes", 0))
        return stats

    # ------------------------------------------------------------------
    # Post-write hooks
    # ------------------------------------------------------------------

    def _invalidate(self, project_id: str) -> None:
        if self._symbolic is not None:
            self._symbolic.invalidate_project(project_id)
        if self._context is not None:
            self._context.invalidate_project(project_id)

    async def refresh_file_chunks(
        self,
        project_id: str,
        rel_path: str,
        content: Optional[str] = None,
    ) -> int:
        """
        Regenerate chunks (and, when configured, embeddings) for one file.

        Returns
        -------
        int
            Number of chunks that were new or changed.
        """
        nodes = await self._store.find_nodes_by_path(rel_path, project_id)
        chunks = [
            chunk
            for node in nodes if node.type != NodeType.FILE
            for chunk in self._chunker.create_chunks(node, content)
        ]
        changed = await self._store.replace_chunks(chunks)
        if changed and self._embeddings is not None:
            await self._embeddings.embed_missing(
                project_id, chunk_ids=changed, show_progress=False
            )
        return len(changed)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_project_id_from_path(self, path: str) -> Optional[str]:
        """Return the project whose root contains *path* (deepest root wins)."""
        abs_path = os.path.abspath(path)
        best: Optional[_Project] = None
        for project in self._projects.values():
            root = project.root_path
            if abs_path == root or abs_path.startswith(root.rstrip(os.sep) + os.sep):
                if best is None or len(root) > len(best.root_path):
                    best = project
        return best.project_id if best else None

    def get_root_path(self, project_id: str) -> Optional[str]:
        project = self._projects.get(project_id)
        return project.root_path if project else None

    def get_stats(self) -> dict:
        return {
            "projects": {
                pid: {
                    "state": p.state,
                    "root_path": p.root_path,
                    "last_full_index": p.last_full_index,
                    "last_update": p.last_update,
                }
                for pid, p in self._projects.items()
            },
            "queue_size": self._queue.qsize() if self._queue is not None else 0,
            "worker_running": self._worker_task is not None and not self._worker_task.done(),
            "changes_processed": self._changes_processed,
            "changes_failed": self._changes_failed,
        }

    async def health(self) -> ComponentHealth:
        stats = self.get_stats()
        task = self._worker_task
        if task is not None and task.done() and not task.cancelled() and task.exception():
            return ComponentHealth("indexer", "error",
                                   f"Index worker crashed: {task.exception()}", stats)
        watching = [pid for pid, p in self._projects.items() if p.state == IndexState.WATCHING]
        if watching and not stats["worker_running"]:
            return ComponentHealth("indexer", "error", "Index worker is not running", stats)
        return ComponentHealth("indexer", "ok", "Indexer is healthy", stats)

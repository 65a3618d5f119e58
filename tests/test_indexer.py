"""Tests for the incremental indexer."""

from __future__ import annotations

import asyncio
import os

import pytest

from ckg.context_builder import ContextBuilder
from ckg.errors import ExtractionError, InvalidStateError, StoreError
from ckg.indexing.indexer import IncrementalIndexer, IndexState, walk_source_files
from ckg.models import ChangeType, ExtractionResult, FileChange, GraphEdge, GraphNode, NodeType
from ckg.retrieval.embedding import EmbeddingService
from ckg.retrieval.symbolic_index import SymbolicIndex


class _LineExtractor:
    """Treats every ``def name(`` line as a function; no parser needed."""

    def extract(self, file_path, project_id, commit_hash=None, content=None):
        if "syntax error" in content:
            raise ExtractionError(file_path, "cannot parse")
        f = GraphNode(project_id=project_id, type=NodeType.FILE, name=os.path.basename(file_path),
                      path=file_path, language="python", commit_hash=commit_hash)
        result = ExtractionResult(nodes=[f])
        for i, line in enumerate(content.splitlines(), start=1):
            if line.startswith("def "):
                fn = GraphNode(
                    project_id=project_id, type=NodeType.FUNCTION, name=line[4:].split("(")[0],
                    path=file_path, language="python", commit_hash=commit_hash,
                    metadata={"line_start": i, "line_end": i, "signature": line},
                )
                result.nodes.append(fn)
                result.edges.append(GraphEdge(from_node_id=f.id, to_node_id=fn.id,
                                              relationship="contains"))
        return result


class _UnstorableExtractor(_LineExtractor):
    """Adds a nameless node, which the store rejects."""

    def extract(self, file_path, project_id, commit_hash=None, content=None):
        result = super().extract(file_path, project_id, commit_hash, content)
        result.nodes.append(GraphNode(project_id=project_id, type=NodeType.FUNCTION, name=None,
                                      path=file_path, id=f"bad:{file_path}"))
        return result


def _write(root, rel, text):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


@pytest.fixture()
def project(tmp_path):
    _write(tmp_path, "a.py", "def alpha():\n    pass\n")
    _write(tmp_path, "pkg/b.py", "def beta():\n    pass\n")
    return tmp_path


async def _names(store, project_id="p1"):
    nodes = await store.find_nodes_by_type(NodeType.FUNCTION, project_id)
    return sorted(n.name for n in nodes)


class TestWalker:
    def test_skips_vendor_hidden_and_ignored(self, tmp_path):
        for rel in ("a.py", "pkg/b.ts", "node_modules/x.js", ".hidden/c.py", "notes.txt",
                    "build/gen.py", "generated_1.py", "out_dir/keep.go"):
            _write(tmp_path, rel, "")
        _write(tmp_path, ".gitignore", "# comment\ngenerated_*.py\n")
        assert walk_source_files(str(tmp_path)) == ["a.py", "out_dir/keep.go", "pkg/b.ts"]


class TestFullIndex:
    @pytest.mark.asyncio
    async def test_indexes_every_file(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        progress = []
        indexer.events.index_progress.subscribe(progress.append)

        stats = await indexer.perform_full_index("p1", str(project), commit_hash="c1")
        assert stats["files"] == 2
        assert stats["processed"] == 2
        assert stats["failed"] == 0
        assert stats["nodes"] == 4
        assert stats["cancelled"] is False
        assert await _names(store) == ["alpha", "beta"]
        assert [p.progress for p in progress] == [50, 100]
        node = await store.find_node("alpha", project_id="p1")
        assert node.commit_hash == "c1"

    @pytest.mark.asyncio
    async def test_failed_file_is_skipped(self, store, project):
        _write(project, "broken.py", "syntax error here")
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        stats = await indexer.perform_full_index("p1", str(project))
        assert stats["failed"] == 1
        assert stats["processed"] == 2
        assert await _names(store) == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_reindex_replaces_previous_graph(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.perform_full_index("p1", str(project))
        (project / "pkg" / "b.py").unlink()
        await indexer.perform_full_index("p1", str(project))
        assert await _names(store) == ["alpha"]

    @pytest.mark.asyncio
    async def test_cancelled_index_keeps_previous_graph(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.perform_full_index("p1", str(project))
        _write(project, "c.py", "def gamma():\n")
        cancel = asyncio.Event()
        cancel.set()
        stats = await indexer.perform_full_index("p1", str(project), cancel_event=cancel)
        assert stats["cancelled"] is True
        assert await _names(store) == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_graph(self, store, project):
        await IncrementalIndexer(store, extractor=_LineExtractor()).perform_full_index(
            "p1", str(project)
        )
        indexer = IncrementalIndexer(store, extractor=_UnstorableExtractor())
        with pytest.raises(StoreError):
            await indexer.perform_full_index("p1", str(project))
        assert await _names(store) == ["alpha", "beta"]


class TestStateMachine:
    @pytest.mark.asyncio
    async def test_start_and_stop(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        assert indexer.get_state("p1") == IndexState.IDLE
        await indexer.start_indexing("p1", str(project), watch=False)
        assert indexer.get_state("p1") == IndexState.WATCHING
        assert indexer.get_stats()["worker_running"]

        with pytest.raises(InvalidStateError):
            await indexer.start_indexing("p1", str(project), watch=False)

        await indexer.stop_indexing("p1")
        assert indexer.get_state("p1") == IndexState.IDLE
        assert not indexer.get_stats()["worker_running"]
        with pytest.raises(InvalidStateError):
            await indexer.stop_indexing("p1")
        await indexer.close()

    @pytest.mark.asyncio
    async def test_stop_unknown_project(self, store):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        with pytest.raises(InvalidStateError):
            await indexer.stop_indexing("nope")

    @pytest.mark.asyncio
    async def test_health(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.start_indexing("p1", str(project), watch=False)
        assert (await indexer.health()).ok
        await indexer.close()
        assert indexer.get_state("p1") == IndexState.IDLE


class TestIncrementalChanges:
    @pytest.mark.asyncio
    async def test_modify_create_and_delete(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.perform_full_index("p1", str(project))

        _write(project, "a.py", "def alpha():\n    pass\ndef alpha2():\n    pass\n")
        stats = await indexer.enqueue_change(FileChange("a.py", "p1", ChangeType.MODIFIED))
        assert stats["nodes"] == 3
        assert stats["chunks"] == 2
        assert await _names(store) == ["alpha", "alpha2", "beta"]

        _write(project, "c.py", "def gamma():\n")
        await indexer.enqueue_change(FileChange("c.py", "p1", ChangeType.CREATED))
        assert "gamma" in await _names(store)

        (project / "pkg" / "b.py").unlink()
        stats = await indexer.enqueue_change(FileChange("pkg/b.py", "p1", ChangeType.DELETED))
        assert stats["deleted"] == 2
        assert await _names(store) == ["alpha", "alpha2", "gamma"]
        assert indexer.get_stats()["changes_processed"] == 3
        await indexer.close()

    @pytest.mark.asyncio
    async def test_reindex_unchanged_file_is_idempotent(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.perform_full_index("p1", str(project))

        async def snapshot():
            nodes = await store.find_nodes_by_type(None, "p1")
            edges = await store.query("SELECT id, from_node_id, to_node_id FROM graph_edges "
                                      "ORDER BY id")
            return sorted(n.id for n in nodes), edges

        before = await snapshot()
        for _ in range(2):
            await indexer.enqueue_change(FileChange("a.py", "p1", ChangeType.MODIFIED))
            assert await snapshot() == before
        await indexer.close()

    @pytest.mark.asyncio
    async def test_changes_apply_in_arrival_order(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.perform_full_index("p1", str(project))
        first = indexer.enqueue_change(FileChange("a.py", "p1", ChangeType.MODIFIED))
        second = indexer.enqueue_change(FileChange("a.py", "p1", ChangeType.DELETED))
        await asyncio.gather(first, second)
        assert await _names(store) == ["beta"]
        await indexer.close()

    @pytest.mark.asyncio
    async def test_absolute_path_and_vanished_file(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.perform_full_index("p1", str(project))
        (project / "a.py").unlink()
        stats = await indexer.enqueue_change(
            FileChange(str(project / "a.py"), "p1", ChangeType.MODIFIED)
        )
        assert stats["deleted"] == 2
        assert await _names(store) == ["beta"]
        await indexer.close()

    @pytest.mark.asyncio
    async def test_unparsable_change_is_skipped(self, store, project):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.perform_full_index("p1", str(project))
        _write(project, "a.py", "syntax error")
        stats = await indexer.enqueue_change(FileChange("a.py", "p1", ChangeType.MODIFIED))
        assert stats["skipped"] is True
        # The previous version stays in the graph
        assert await _names(store) == ["alpha", "beta"]
        await indexer.close()

    @pytest.mark.asyncio
    async def test_unknown_project_is_rejected(self, store):
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        with pytest.raises(InvalidStateError):
            indexer.enqueue_change(FileChange("a.py", "ghost", ChangeType.MODIFIED))

    @pytest.mark.asyncio
    async def test_change_refreshes_caches_and_embeddings(self, store, project):
        symbolic = SymbolicIndex(store)
        embeddings = EmbeddingService(store, batch_delay=0)
        builder = ContextBuilder(store, symbolic, embeddings)
        indexer = IncrementalIndexer(store, extractor=_LineExtractor(), embeddings=embeddings,
                                     symbolic_index=symbolic, context_builder=builder)
        await indexer.perform_full_index("p1", str(project))
        assert await symbolic.find_definition("delta", project_id="p1") == []

        _write(project, "a.py", "def delta():\n")
        await indexer.enqueue_change(FileChange("a.py", "p1", ChangeType.MODIFIED))
        defs = await symbolic.find_definition("delta", project_id="p1")
        assert [d.path for d in defs] == ["a.py"]
        stats = await embeddings.get_embedding_stats("p1")
        assert stats["total_embeddings"] == 1
        await indexer.close()


class TestProjectLookup:
    @pytest.mark.asyncio
    async def test_deepest_root_wins(self, store, tmp_path):
        inner = tmp_path / "inner"
        inner.mkdir()
        indexer = IncrementalIndexer(store, extractor=_LineExtractor())
        await indexer.perform_full_index("outer", str(tmp_path))
        await indexer.perform_full_index("inner", str(inner))
        assert indexer.get_project_id_from_path(str(inner / "x.py")) == "inner"
        assert indexer.get_project_id_from_path(str(tmp_path / "y.py")) == "outer"
        assert indexer.get_project_id_from_path("/somewhere/else.py") is None
        assert indexer.get_root_path("inner") == os.path.abspath(str(inner))


class TestTreeSitterIndex:
    @pytest.mark.asyncio
    async def test_cross_file_call_is_resolved(self, store, tmp_path):
        pytest.importorskip("tree_sitter")
        pytest.importorskip("tree_sitter_python")
        _write(tmp_path, "app.py", "from util import helper\n\n\ndef main():\n    helper()\n")
        _write(tmp_path, "util.py", "def helper():\n    return 1\n")
        indexer = IncrementalIndexer(store)
        stats = await indexer.perform_full_index("p1", str(tmp_path))
        assert stats["processed"] == 2

        main = await store.find_node("main", NodeType.FUNCTION, "p1")
        calls = await store.get_neighbors(main.id, relationship="calls", direction="outgoing")
        assert [(n.node.name, n.node.path) for n in calls] == [("helper", "util.py")]

        app = (await store.find_nodes_by_path("app.py", "p1", [NodeType.FILE]))[0]
        imports = await store.get_neighbors(app.id, relationship="imports", direction="outgoing")
        assert [n.node.path for n in imports] == ["util.py"]

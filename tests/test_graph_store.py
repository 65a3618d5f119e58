"""Tests for the async SQLite graph store."""

import json

import pytest

from ckg.errors import StoreError
from ckg.models import (
    CodeChunk,
    Diagnostic,
    EdgeType,
    ExtractionResult,
    GraphEdge,
    GraphNode,
    NodeType,
    ReferenceType,
    SymbolReference,
    edge_id,
)
from factories import file_node, symbol_node


async def _edge_ids(store, project_id="p1"):
    rows = await store.query(
        "SELECT e.id FROM graph_edges e JOIN graph_nodes n ON e.from_node_id = n.id "
        "WHERE n.project_id = ? ORDER BY e.id",
        (project_id,),
    )
    return [r["id"] for r in rows]


class TestBatchCreate:
    @pytest.mark.asyncio
    async def test_resolves_named_and_path_targets(self, store, two_file_graph):
        stats = await store.batch_create(two_file_graph)
        assert stats["nodes"] == 4
        assert stats["edges"] == 4
        assert stats["skipped_edges"] == 0

        foo = await store.find_node("foo", NodeType.FUNCTION, "p1")
        calls = await store.get_neighbors(foo.id, relationship="calls", direction="outgoing")
        assert [n.node.name for n in calls] == ["bar"]

        fb = (await store.find_nodes_by_path("b.py", "p1", [NodeType.FILE]))[0]
        imports = await store.get_neighbors(fb.id, relationship="imports", direction="outgoing")
        assert [n.node.path for n in imports] == ["a.py"]

    @pytest.mark.asyncio
    async def test_unresolved_target_is_skipped(self, store):
        fa = file_node("p1", "a.py")
        foo = symbol_node("p1", "a.py", "foo")
        result = ExtractionResult(
            nodes=[fa, foo],
            edges=[GraphEdge(from_node_id=foo.id, relationship="calls", target_name="missing")],
        )
        stats = await store.batch_create(result)
        assert stats["edges"] == 0
        assert stats["skipped_edges"] == 1

    @pytest.mark.asyncio
    async def test_prefers_target_in_same_file(self, store):
        fa, fb = file_node("p1", "a.py"), file_node("p1", "b.py")
        helper_b = symbol_node("p1", "b.py", "helper")
        await store.batch_create(ExtractionResult(nodes=[fb, helper_b]))

        helper_a = symbol_node("p1", "a.py", "helper", line=10)
        caller = symbol_node("p1", "a.py", "caller", line=1)
        await store.batch_create(ExtractionResult(
            nodes=[fa, helper_a, caller],
            edges=[GraphEdge(from_node_id=caller.id, relationship="calls", target_name="helper")],
        ))
        calls = await store.get_neighbors(caller.id, relationship="calls", direction="outgoing")
        assert [n.node.path for n in calls] == ["a.py"]

    @pytest.mark.asyncio
    async def test_failed_batch_is_rolled_back(self, store):
        good = file_node("p1", "good.py")
        bad = GraphNode(project_id="p1", type=NodeType.FUNCTION, name=None, path="good.py", id="bad")
        with pytest.raises(StoreError):
            await store.batch_create(ExtractionResult(nodes=[good, bad]))
        assert await store.get_node(good.id) is None
        # The store stays usable after a rollback
        await store.batch_create(ExtractionResult(nodes=[good]))
        assert await store.get_node(good.id) is not None

    @pytest.mark.asyncio
    async def test_replace_paths_requires_project(self, store):
        with pytest.raises(StoreError):
            await store.batch_create(ExtractionResult(), replace_paths=["a.py"])
        with pytest.raises(StoreError):
            await store.batch_create(ExtractionResult(), replace_project=True)

    @pytest.mark.asyncio
    async def test_replace_project_swaps_whole_graph(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        await store.create_node(file_node("p2", "a.py"))
        fc = file_node("p1", "c.py")
        stats = await store.batch_create(ExtractionResult(nodes=[fc]), project_id="p1",
                                         replace_project=True)
        assert stats["deleted"] == 4
        assert [n.id for n in await store.find_nodes_by_type(None, "p1")] == [fc.id]
        assert len(await store.find_nodes_by_type(None, "p2")) == 1

    @pytest.mark.asyncio
    async def test_unchanged_reindex_is_idempotent(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        before = await store.get_graph_stats("p1")
        edges_before = await _edge_ids(store)
        for _ in range(2):
            await store.batch_create(two_file_graph, replace_paths=["a.py", "b.py"],
                                     project_id="p1")
        assert await store.get_graph_stats("p1") == before
        assert await _edge_ids(store) == edges_before

    @pytest.mark.asyncio
    async def test_edge_ids_are_deterministic(self, store, two_file_graph):
        assert GraphEdge("a", "calls", "b").id == GraphEdge("a", "calls", "b").id
        assert GraphEdge("a", "calls", "b").id != GraphEdge("a", "imports", "b").id
        unresolved = GraphEdge("a", "calls", target_name="b")
        assert unresolved.id == ""

        await store.batch_create(two_file_graph)
        foo = await store.find_node("foo", NodeType.FUNCTION, "p1")
        bar = await store.find_node("bar", NodeType.FUNCTION, "p1")
        assert edge_id(foo.id, bar.id, "calls") in await _edge_ids(store)

    @pytest.mark.asyncio
    async def test_reindex_keeps_inbound_links(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        foo = await store.find_node("foo", NodeType.FUNCTION, "p1")

        # Re-extract b.py unchanged: foo -> bar must survive
        fb = file_node("p1", "b.py")
        bar = symbol_node("p1", "b.py", "bar", line=3)
        stats = await store.batch_create(
            ExtractionResult(
                nodes=[fb, bar],
                edges=[
                    GraphEdge(from_node_id=fb.id, to_node_id=bar.id, relationship="contains"),
                    GraphEdge(from_node_id=fb.id, relationship="imports",
                              target_type=NodeType.FILE, target_paths=("a.py",)),
                ],
            ),
            replace_paths=["b.py"],
            project_id="p1",
        )
        assert stats["deleted"] == 2
        calls = await store.get_neighbors(foo.id, relationship="calls", direction="outgoing")
        assert [n.node.name for n in calls] == ["bar"]
        assert (await store.get_graph_stats("p1"))["total_edges"] == 4


class TestDeletion:
    @pytest.mark.asyncio
    async def test_deleting_a_node_cascades(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        bar = await store.find_node("bar", NodeType.FUNCTION, "p1")
        await store.replace_chunks([CodeChunk(node_id=bar.id, content="def bar(): pass")])
        await store.add_diagnostics([Diagnostic(node_id=bar.id, severity="error", message="x")])

        assert await store.delete_node(bar.id)
        assert await store.get_chunks_for_node(bar.id) == []
        assert await store.get_diagnostics([bar.id]) == []
        foo = await store.find_node("foo", NodeType.FUNCTION, "p1")
        assert await store.get_neighbors(foo.id, relationship="calls") == []

    @pytest.mark.asyncio
    async def test_delete_nodes_for_path(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        assert await store.delete_nodes_for_path("a.py", "p1") == 2
        assert await store.find_nodes_by_path("a.py", "p1") == []
        assert (await store.get_graph_stats("p1"))["total_edges"] == 1

    @pytest.mark.asyncio
    async def test_clear_project_graph_leaves_other_projects(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        await store.create_node(file_node("p2", "x.py"))
        assert await store.clear_project_graph("p1") == 4
        assert (await store.get_graph_stats("p2"))["total_nodes"] == 1


class TestQueries:
    @pytest.mark.asyncio
    async def test_neighbors_ordered_by_weight(self, store):
        hub = symbol_node("p1", "a.py", "hub")
        light = symbol_node("p1", "a.py", "light", line=5)
        heavy = symbol_node("p1", "a.py", "heavy", line=9)
        await store.upsert_nodes_batch([hub, light, heavy])
        await store.upsert_edges_batch([
            GraphEdge(from_node_id=hub.id, to_node_id=light.id, relationship="calls", weight=0.2),
            GraphEdge(from_node_id=hub.id, to_node_id=heavy.id, relationship="calls", weight=0.9),
        ])
        names = [n.node.name for n in await store.get_neighbors(hub.id)]
        assert names == ["heavy", "light"]
        incoming = await store.get_neighbors(heavy.id, direction="incoming")
        assert incoming[0].direction == "incoming"
        with pytest.raises(ValueError):
            await store.get_neighbors(hub.id, direction="sideways")

    @pytest.mark.asyncio
    async def test_edge_with_missing_endpoint_is_skipped(self, store):
        a = symbol_node("p1", "a.py", "a")
        await store.create_node(a)
        assert await store.create_edge(
            GraphEdge(from_node_id=a.id, to_node_id="nope", relationship="calls")
        ) is None

    @pytest.mark.asyncio
    async def test_find_symbol_references(self, store, two_file_graph):
        foo_id = two_file_graph.nodes[2].id
        two_file_graph.references.append(SymbolReference(
            reference_node_id=foo_id, reference_type=ReferenceType.CALL,
            symbol_name="bar", line=2, context="bar()",
        ))
        stats = await store.batch_create(two_file_graph)
        assert stats["references"] == 1
        refs = await store.find_symbol_references("bar", "p1")
        assert len(refs) == 1
        assert refs[0]["file_path"] == "a.py"
        assert refs[0]["reference_name"] == "foo"
        assert refs[0]["context"] == "bar()"

    @pytest.mark.asyncio
    async def test_circular_imports(self, store):
        a, b = file_node("p1", "a.py"), file_node("p1", "b.py")
        await store.batch_create(ExtractionResult(
            nodes=[a, b],
            edges=[
                GraphEdge(from_node_id=a.id, to_node_id=b.id, relationship=EdgeType.IMPORTS),
                GraphEdge(from_node_id=b.id, to_node_id=a.id, relationship=EdgeType.IMPORTS),
            ],
        ))
        cycles = await store.find_circular_dependencies("p1")
        assert len(cycles) == 1
        assert sorted(cycles[0]) == sorted([a.id, b.id])

    @pytest.mark.asyncio
    async def test_dependency_graph_decays_weight(self, store):
        a = symbol_node("p1", "a.py", "a", line=1)
        b = symbol_node("p1", "a.py", "b", line=5)
        c = symbol_node("p1", "a.py", "c", line=9)
        await store.upsert_nodes_batch([a, b, c])
        await store.upsert_edges_batch([
            GraphEdge(from_node_id=a.id, to_node_id=b.id, relationship="calls"),
            GraphEdge(from_node_id=b.id, to_node_id=c.id, relationship="calls"),
        ])
        deps = await store.get_dependency_graph("p1", max_depth=3)
        transitive = [d for d in deps if d["from_name"] == "a" and d["to_name"] == "c"]
        assert transitive and transitive[0]["depth"] == 2
        assert transitive[0]["weight"] == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_graph_stats_and_connectivity(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        await store.create_node(symbol_node("p1", "c.py", "lonely"))
        stats = await store.get_graph_stats("p1")
        assert stats["total_nodes"] == 5
        assert stats["by_type"] == {"File": 2, "Function": 3}
        assert stats["by_relationship"]["contains"] == 2

        report = await store.analyze_connectivity("p1")
        assert len(report["orphaned_nodes"]) == 1
        assert report["connectivity"]["circular_count"] == 0
        assert report["hubs"][0]["connection_count"] >= 2


class TestTraversalAndExport:
    @pytest.mark.asyncio
    async def test_search_nodes(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        assert [n.name for n in await store.search_nodes("FO", "p1")] == ["foo"]
        files = await store.search_nodes(".py", "p1", types=[NodeType.FILE])
        assert [n.name for n in files] == ["a.py", "b.py"]

    @pytest.mark.asyncio
    async def test_update_node(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        foo = await store.find_node("foo", NodeType.FUNCTION, "p1")
        updated = await store.update_node(foo.id, metadata={"line_start": 10})
        assert updated.metadata == {"line_start": 10}
        with pytest.raises(ValueError):
            await store.update_node(foo.id, owner="me")

    @pytest.mark.asyncio
    async def test_node_hierarchy(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        foo = await store.find_node("foo", NodeType.FUNCTION, "p1")
        hierarchy = await store.get_node_hierarchy(foo.id)
        assert [n.name for n in hierarchy["ancestors"]] == ["a.py"]
        assert hierarchy["descendants"] == []

        fa = hierarchy["ancestors"][0]
        below = await store.get_node_hierarchy(fa.id)
        assert [n.name for n in below["descendants"]] == ["foo"]
        assert (await store.get_node_hierarchy("missing"))["node"] is None

    @pytest.mark.asyncio
    async def test_shortest_path(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        fb = (await store.find_nodes_by_path("b.py", "p1", [NodeType.FILE]))[0]
        foo = await store.find_node("foo", NodeType.FUNCTION, "p1")
        path = await store.get_shortest_path(fb.id, foo.id)
        assert [n.name for n in path] == ["b.py", "a.py", "foo"]
        assert await store.get_shortest_path(foo.id, fb.id) is None
        assert await store.get_shortest_path(fb.id, foo.id, max_depth=1) is None
        assert await store.get_shortest_path("missing", foo.id) is None

    @pytest.mark.asyncio
    async def test_orphaned_nodes(self, store, two_file_graph):
        lonely = symbol_node("p1", "c.py", "lonely")
        two_file_graph.nodes.append(lonely)
        await store.batch_create(two_file_graph)
        assert [n.id for n in await store.find_orphaned_nodes("p1")] == [lonely.id]

    @pytest.mark.asyncio
    async def test_export_formats(self, store, two_file_graph):
        await store.batch_create(two_file_graph)
        data = json.loads(await store.export_graph("p1"))
        assert len(data["nodes"]) == 4
        assert len(data["edges"]) == 4

        cypher = await store.export_graph("p1", "cypher")
        assert "CREATE (:Function {" in cypher
        assert "[:CALLS {weight:" in cypher

        assert "<gexf" in await store.export_graph("p1", "gexf")
        with pytest.raises(ValueError):
            await store.export_graph("p1", "dot")


class TestChunks:
    @pytest.mark.asyncio
    async def test_replace_chunks_reports_only_changes(self, store):
        node = symbol_node("p1", "a.py", "foo")
        await store.create_node(node)
        chunk = CodeChunk(node_id=node.id, content="v1", chunk_type="function")
        assert await store.replace_chunks([chunk]) == [chunk.id]
        assert await store.replace_chunks([chunk]) == []

        await store.upsert_embeddings([(chunk.id, [1.0, 0.0], "m", "local")])
        updated = CodeChunk(node_id=node.id, content="v2", chunk_type="function")
        assert await store.replace_chunks([updated]) == [chunk.id]
        # Changed content drops the stale embedding
        assert await store.list_chunks("p1", missing_model="m") != []

    @pytest.mark.asyncio
    async def test_embeddings_round_trip(self, store):
        node = symbol_node("p1", "a.py", "foo")
        await store.create_node(node)
        chunk = CodeChunk(node_id=node.id, content="text")
        await store.replace_chunks([chunk])
        await store.upsert_embeddings([(chunk.id, [0.5, 0.5, 0.0], "m", "local")])
        rows = await store.fetch_embeddings("p1", "m")
        assert len(rows) == 1
        assert list(rows[0]["vector"]) == pytest.approx([0.5, 0.5, 0.0])
        stats = await store.embedding_stats("p1")
        assert stats["total_embeddings"] == 1
        assert stats["dimensions"] == [3]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_health_reports_open_store(self, store):
        health = await store.health()
        assert health.ok
        assert health.name == "graph_store"

    @pytest.mark.asyncio
    async def test_closed_store_raises(self, store):
        await store.close()
        assert (await store.health()).status == "error"
        with pytest.raises(StoreError):
            await store.get_node("x")

    @pytest.mark.asyncio
    async def test_file_database_is_created(self, tmp_path):
        from ckg.store.graph_store import GraphStore

        path = tmp_path / "nested" / "graph.db"
        async with GraphStore(str(path)) as s:
            await s.create_node(file_node("p1", "a.py"))
        assert path.exists()

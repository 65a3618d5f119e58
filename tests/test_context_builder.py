"""Tests for the four-phase context builder."""

from datetime import datetime, timedelta, timezone

import pytest

from ckg.context_builder import (
    SECTIONS,
    ContextBuilder,
    ContextItem,
    ContextResult,
    RetrievalResult,
    RetrievalWeights,
    age_in_days,
    assemble_context,
    deduplicate,
    estimate_tokens,
    extract_symbol_names,
    format_context_for_ai,
    rerank,
)
from ckg.models import CodeChunk, Diagnostic, ExtractionResult, GraphEdge, NodeType, utc_now
from ckg.retrieval.symbolic_index import SymbolicIndex
from factories import file_node, symbol_node


def _result(name="foo", source="symbolic", relevance=1.0, **kwargs):
    return RetrievalResult(name=name, type=NodeType.FUNCTION, path="a.py", source=source,
                           kind="definition", relevance=relevance, **kwargs)


def _items(sizes):
    return [ContextItem(content="x" * (4 * size), name=f"i{n}") for n, size in enumerate(sizes)]


class TestHelpers:
    def test_estimate_tokens(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2

    def test_extract_symbol_names(self):
        names = extract_symbol_names("How does parseConfig handle the UserSession?")
        assert names == ["UserSession", "parseConfig", "handle"]

    def test_extract_skips_short_words_and_stopwords(self):
        assert extract_symbol_names("is it ok to do this") == []

    def test_age_in_days(self):
        now = datetime(2024, 1, 10, tzinfo=timezone.utc)
        assert age_in_days(None, now) == 365
        assert age_in_days("not a date", now) == 365
        assert age_in_days((now - timedelta(days=2, hours=5)).isoformat(), now) == 2
        assert age_in_days((now + timedelta(days=1)).isoformat(), now) == 0

    def test_deduplicate(self):
        seen = {"n1"}
        results = [_result(node_id="n1"), _result(node_id="n2"), _result(node_id="n2")]
        assert [r.node_id for r in deduplicate(results, seen)] == ["n2"]
        assert seen == {"n1", "n2"}

    def test_weight_overrides(self):
        weights = RetrievalWeights.from_overrides({"symbolic": 0.9, "bogus": 1.0})
        assert weights.symbolic == 0.9
        assert not hasattr(weights, "bogus")


class TestRerank:
    def test_scores_are_clamped(self):
        now = datetime.now(timezone.utc)
        high = _result("foo", relevance=1.0, updated_at=now.isoformat())
        low = _result("bar", source="semantic", relevance=0.0, has_errors=True)
        ranked = rerank([low, high], "foo", now=now)
        assert [r.name for r in ranked] == ["foo", "bar"]
        assert ranked[0].score == 1.0
        assert ranked[1].score == pytest.approx(0.2)

        harsh = RetrievalWeights(errors=5.0)
        assert rerank([low], "x", harsh)[0].score == 0.0

    def test_scores_stay_in_unit_interval(self):
        weights = RetrievalWeights(symbolic=3.0, semantic=-3.0, recency=2.0)
        results = [
            _result(source=src, relevance=rel, has_errors=err)
            for src in ("symbolic", "semantic")
            for rel in (0.0, 0.5, 1.0)
            for err in (False, True)
        ]
        for r in rerank(results, "foo bar", weights):
            assert 0.0 <= r.score <= 1.0

    def test_ties_keep_input_order(self):
        a, b = _result("a", node_id="1"), _result("b", node_id="2")
        assert [r.name for r in rerank([a, b], "")] == ["a", "b"]

    def test_input_is_not_mutated(self):
        r = _result()
        rerank([r], "foo")
        assert r.score == 0.0


class TestAssembly:
    @pytest.mark.parametrize("budget", [10, 50, 100, 500, 2000, 8000])
    def test_never_exceeds_budget(self, budget):
        material = {s.name: _items([3, 40, 7, 120, 1, 15, 60, 2, 9, 30, 5]) for s in SECTIONS}
        context = assemble_context(material, "q", max_tokens=budget)
        total = sum(
            estimate_tokens(item.content) for s in SECTIONS for item in context.section(s.name)
        )
        assert total == context.metadata["estimated_tokens"]
        assert total <= budget
        for s in SECTIONS:
            section_tokens = sum(estimate_tokens(i.content) for i in context.section(s.name))
            assert section_tokens <= budget * s.token_share
            assert len(context.section(s.name)) <= s.max_items

    def test_target_symbols_stop_at_first_overflow(self):
        material = {
            "file_headers": _items([5]),
            "target_symbols": _items([70, 1]),
            "nearest_callers": _items([20, 1]),
        }
        context = assemble_context(material, "q", max_tokens=100)
        assert len(context.file_headers) == 1
        assert context.target_symbols == []
        # Other sections skip the oversized item and keep going
        assert [i.name for i in context.nearest_callers] == ["i1"]
        assert context.metadata["budget_exhausted"] is True
        assert context.metadata["dropped"]["target_symbols"] == 2

    def test_tight_budget_drops_examples_before_symbols(self):
        material = {
            "file_headers": _items([10]),
            "target_symbols": _items([30, 29]),
            "nearest_callers": _items([15]),
            "related_imports": _items([10]),
            "diagnostics": _items([5]),
            "examples": _items([5]),
        }
        context = assemble_context(material, "q", max_tokens=100)
        assert [i.name for i in context.target_symbols] == ["i0", "i1"]
        assert context.examples == []
        assert context.metadata["dropped"]["examples"] == 1
        assert context.metadata["estimated_tokens"] == 99

    def test_zero_budget_admits_nothing(self):
        material = {s.name: _items([1, 2]) for s in SECTIONS}
        context = assemble_context(material, "q", max_tokens=0)
        assert context.is_empty
        assert context.metadata["estimated_tokens"] == 0

    def test_optional_sections_can_be_disabled(self):
        material = {"diagnostics": _items([1]), "examples": _items([1])}
        context = assemble_context(material, "q", include_errors=False, include_examples=False)
        assert context.diagnostics == []
        assert context.examples == []
        assert context.is_empty
        assert context.metadata["budget_exhausted"] is False

    def test_format_headings(self):
        context = ContextResult(
            file_headers=[ContextItem("File: a.py")],
            target_symbols=[ContextItem("def foo(): ...")],
            diagnostics=[ContextItem("bad syntax", path="a.py",
                                     details={"severity": "error", "line": 3})],
        )
        text = format_context_for_ai(context)
        assert text.startswith("## File Context")
        assert "## Relevant Symbols" in text
        assert "ERROR: bad syntax (a.py:3)" in text
        assert "## Usage Examples" not in text

    def test_format_empty_context(self):
        assert format_context_for_ai(ContextResult()) == ""


async def _populate(store):
    """A small project around ``parse_config``."""
    fa, fb = file_node("p1", "config.py", symbol_counts={"Function": 1}), file_node("p1", "app.py")
    parse = symbol_node("p1", "config.py", "parse_config", line=1)
    main = symbol_node("p1", "app.py", "main", line=1)
    await store.batch_create(ExtractionResult(
        nodes=[fa, fb, parse, main],
        edges=[
            GraphEdge(from_node_id=fa.id, to_node_id=parse.id, relationship="contains"),
            GraphEdge(from_node_id=main.id, to_node_id=parse.id, relationship="calls"),
            GraphEdge(from_node_id=fb.id, to_node_id=fa.id, relationship="imports"),
        ],
        diagnostics=[Diagnostic(node_id=parse.id, severity="error", message="unused variable x",
                                line=2)],
    ))
    await store.replace_chunks([
        CodeChunk(node_id=parse.id, content="Function: parse_config\nBody:\ndef parse_config(): ...",
                  chunk_type="function"),
    ])
    return parse


class TestContextBuilder:
    @pytest.mark.asyncio
    async def test_builds_sections_from_graph(self, store):
        await _populate(store)
        builder = ContextBuilder(store, SymbolicIndex(store))
        context = await builder.build_context("parse_config", "p1", max_tokens=2000)

        assert context.target_symbols[0].name == "parse_config"
        assert context.target_symbols[0].details["chunk_type"] == "function"
        assert any(i.path == "config.py" for i in context.file_headers)
        assert any(i.name == "main" for i in context.nearest_callers)
        assert [i.content for i in context.diagnostics] == ["unused variable x"]
        assert context.metadata["estimated_tokens"] <= 2000

        text = builder.format_context_for_ai(context)
        assert "## Relevant Symbols" in text
        assert "ERROR: unused variable x (config.py:2)" in text

    @pytest.mark.asyncio
    async def test_errors_can_be_excluded(self, store):
        await _populate(store)
        builder = ContextBuilder(store, SymbolicIndex(store))
        context = await builder.build_context("parse_config", "p1", include_errors=False)
        assert context.diagnostics == []

    @pytest.mark.asyncio
    async def test_empty_result_for_unknown_query(self, store):
        await store.upsert_nodes_batch([file_node("p1", "x.py"), symbol_node("p1", "x.py", "qq")])
        builder = ContextBuilder(store, SymbolicIndex(store))
        context = await builder.build_context("zzzz_no_match", "p1")
        assert context.is_empty
        assert context.metadata["estimated_tokens"] == 0
        assert context.metadata["result_count"] == 0

    @pytest.mark.asyncio
    async def test_zero_budget_is_respected(self, store):
        await _populate(store)
        builder = ContextBuilder(store, SymbolicIndex(store))
        context = await builder.build_context("parse_config", "p1", max_tokens=0)
        assert context.is_empty
        assert context.metadata["estimated_tokens"] == 0
        assert context.metadata["max_tokens"] == 0

    @pytest.mark.asyncio
    async def test_no_match_on_populated_project(self, store):
        await _populate(store)
        await store.upsert_nodes_batch([symbol_node("p1", "app.py", "process_match", line=20)])
        builder = ContextBuilder(store, SymbolicIndex(store))
        context = await builder.build_context("zzzz_no_match", "p1")
        assert context.is_empty
        assert context.metadata["estimated_tokens"] == 0

    @pytest.mark.asyncio
    async def test_contexts_are_cached_per_project(self, store):
        await _populate(store)
        builder = ContextBuilder(store, SymbolicIndex(store))
        first = await builder.build_context("parse_config", "p1")
        assert await builder.build_context("parse_config", "p1") is first
        assert builder.get_stats()["cache"]["hits"] == 1

        assert builder.invalidate_project("p2") == 0
        assert builder.invalidate_project("p1") == 1
        assert await builder.build_context("parse_config", "p1") is not first

    @pytest.mark.asyncio
    async def test_invalidation_with_separator_in_project_id(self, store):
        builder = ContextBuilder(store, SymbolicIndex(store))
        await builder.build_context("parse_config", "a|b")
        assert builder.invalidate_project("a") == 0
        assert builder.invalidate_project("a|b") == 1

    @pytest.mark.asyncio
    async def test_health(self, store):
        builder = ContextBuilder(store, SymbolicIndex(store))
        health = await builder.health()
        assert health.ok
        assert health.details["test_tokens"] <= 1000

"""
Context builder: assembles a ranked, token-bounded context for a query.

Four phases:

1. Symbolic pre-filter: pull identifier-looking words out of the query and
   look them up exactly (definitions, references) and fuzzily.
2. Semantic expansion: similar chunks from the embedding service plus the
   one-hop neighbourhood of the best symbolic hits.
3. Rerank: composite score from relevance, source, recency, errors and
   query-term overlap, clamped to [0, 1].
4. Bounded assembly: fill fixed sections in priority order, each under its
   own token cap, never exceeding the overall budget.

Phases 3 and 4 are pure; everything that touches the store happens in
phases 1-2 and in :meth:`ContextBuilder.collect_material`.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Sequence

from .cache import TTLCache
from .errors import CKGError
from .health import ComponentHealth
from .models import EdgeType, NodeType, utc_now

if TYPE_CHECKING:
    from .retrieval.embedding import EmbeddingService
    from .retrieval.symbolic_index import SymbolicIndex
    from .store.graph_store import GraphStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_MAX_TOKENS = 8000
CACHE_TTL_SECONDS = 300
MISSING_TIMESTAMP_AGE_DAYS = 365
RECENCY_HORIZON_DAYS = 365

SYMBOLIC = "symbolic"
SEMANTIC = "semantic"

_SYMBOL_PATTERNS = (
    re.compile(r"\b[A-Z][a-zA-Z0-9]*\b"),    # PascalCase
    re.compile(r"\b[a-z][a-zA-Z0-9]*\b"),    # camelCase
    re.compile(r"\b[a-z_][a-z0-9_]*\b"),     # snake_case
    re.compile(r"\b[A-Z_][A-Z0-9_]*\b"),     # CONSTANT_CASE
)

STOPWORDS = frozenset({
    "the", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with",
    "by", "from", "up", "about", "into", "through", "during", "before",
    "after", "above", "below", "between", "among", "is", "are", "was",
    "were", "be", "been", "being", "have", "has", "had", "do", "does",
    "did", "will", "would", "could", "should", "may", "might", "must",
    "can", "this", "that", "these", "those", "what", "which", "who",
    "when", "where", "why", "how", "all", "any", "both", "each", "few",
    "more", "most", "other", "some", "such", "only", "own", "same", "so",
    "than", "too", "very", "just", "now", "here", "there", "then",
})

_CHUNK_PRIORITY = {"symbol": 0, "function": 1}


# ---------------------------------------------------------------------------
# Policy / data classes
# ---------------------------------------------------------------------------

@dataclass
class RetrievalWeights:
    """Rerank weights; override per deployment through ``Config.WEIGHTS``."""

    symbolic: float = 0.6
    semantic: float = 0.4
    recency: float = 0.1
    relevance: float = 0.8
    errors: float = 0.2
    term_match: float = 0.2

    @classmethod
    def from_overrides(cls, overrides: Optional[dict[str, float]] = None) -> "RetrievalWeights":
        weights = cls()
        for key, value in (overrides or {}).items():
            if hasattr(weights, key):
                setattr(weights, key, float(value))
            else:
                logger.warning("[context] Ignoring unknown retrieval weight: %s", key)
        return weights

    def to_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class RetrievalResult:
    """One candidate produced by phase 1 or 2."""

    name: str
    type: str
    path: str
    source: str                     # "symbolic" | "semantic"
    kind: str                       # definition | reference | search | similar | related
    relevance: float
    node_id: Optional[str] = None
    updated_at: Optional[str] = None
    content: Optional[str] = None
    line: int = 0
    has_errors: bool = False
    score: float = 0.0

    @property
    def key(self) -> str:
        return self.node_id or f"{self.name}:{self.type}:{self.path}"


@dataclass
class ContextItem:
    """One entry of an assembled context section."""

    content: str
    name: str = ""
    type: str = ""
    path: str = ""
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SectionPolicy:
    name: str
    max_items: int
    token_share: float
    stop_on_overflow: bool = False


# Fixed fill order.  Each section is capped by item count and by its
# share of the token budget.
SECTIONS: tuple[SectionPolicy, ...] = (
    SectionPolicy("file_headers", 3, 0.10),
    SectionPolicy("target_symbols", 10, 0.60, stop_on_overflow=True),
    SectionPolicy("nearest_callers", 5, 0.15),
    SectionPolicy("related_imports", 10, 0.10),
    SectionPolicy("diagnostics", 5, 0.05),
    SectionPolicy("examples", 3, 0.10),
)


@dataclass
class ContextResult:
    """An assembled context: six sections plus metadata."""

    file_headers: list[ContextItem] = field(default_factory=list)
    target_symbols: list[ContextItem] = field(default_factory=list)
    nearest_callers: list[ContextItem] = field(default_factory=list)
    related_imports: list[ContextItem] = field(default_factory=list)
    diagnostics: list[ContextItem] = field(default_factory=list)
    examples: list[ContextItem] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    def section(self, name: str) -> list[ContextItem]:
        return getattr(self, name)

    @property
    def is_empty(self) -> bool:
        return not any(self.section(s.name) for s in SECTIONS)

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Rough token estimate: ``ceil(len(text) / 4)``."""
    return math.ceil(len(text) / 4)


def extract_symbol_names(query: str) -> list[str]:
    """
    Pull identifier-like words out of *query*.

    Words of three or more characters that are not stopwords, in first-seen
    order without duplicates.
    """
    names: dict[str, None] = {}
    for pattern in _SYMBOL_PATTERNS:
        for match in pattern.findall(query):
            if len(match) > 2 and match.lower() not in STOPWORDS:
                names.setdefault(match, None)
    return list(names)


def deduplicate(results: Sequence[RetrievalResult], seen: Optional[set[str]] = None) -> list[RetrievalResult]:
    """Drop results whose key was already seen; *seen* is updated in place."""
    seen = set() if seen is None else seen
    unique = []
    for r in results:
        if r.key not in seen:
            seen.add(r.key)
            unique.append(r)
    return unique


def age_in_days(timestamp: Optional[str], now: Optional[datetime] = None) -> float:
    """Days since *timestamp*; a missing or unparsable one counts as a year."""
    if not timestamp:
        return MISSING_TIMESTAMP_AGE_DAYS
    try:
        then = datetime.fromisoformat(timestamp)
    except ValueError:
        return MISSING_TIMESTAMP_AGE_DAYS
    if then.tzinfo is None:
        then = then.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, math.floor((now - then).total_seconds() / 86400))


def rerank(
    results: Sequence[RetrievalResult],
    query: str,
    weights: Optional[RetrievalWeights] = None,
    now: Optional[datetime] = None,
) -> list[RetrievalResult]:
    """
    Score and order candidates.

    Returns new results with ``score`` in [0, 1], sorted descending; ties
    keep their input order.
    """
    w = weights or RetrievalWeights()
    terms = query.lower().split()
    scored = []
    for r in results:
        score = r.relevance * w.relevance
        score += w.symbolic if r.source == SYMBOLIC else w.semantic
        recency = max(0.0, 1 - age_in_days(r.updated_at, now) / RECENCY_HORIZON_DAYS)
        score += recency * w.recency
        if r.has_errors:
            score -= w.errors
        if terms:
            name = r.name.lower()
            score += sum(1 for t in terms if t in name) / len(terms) * w.term_match
        scored.append(replace(r, score=round(max(0.0, min(1.0, score)), 6)))
    return sorted(scored, key=lambda r: r.score, reverse=True)


def assemble_context(
    material: dict[str, list[ContextItem]],
    query: str,
    project_id: Optional[str] = None,
    max_tokens: int = DEFAULT_MAX_TOKENS,
    include_errors: bool = True,
    include_examples: bool = True,
    result_count: int = 0,
    weights: Optional[RetrievalWeights] = None,
) -> ContextResult:
    """
    Fill the context sections from *material* under the token budget.

    An item is admitted only if both its section's total and the grand
    total stay within their caps.  Running out of budget is a normal
    outcome, reported as ``metadata["budget_exhausted"]``.
    """
    context = ContextResult()
    total = 0
    exhausted = False
    dropped: dict[str, int] = {}

    for policy in SECTIONS:
        candidates = material.get(policy.name, [])
        if policy.name == "diagnostics" and not include_errors:
            candidates = []
        if policy.name == "examples" and not include_examples:
            candidates = []

        section_cap = max_tokens * policy.token_share
        section_tokens = 0
        admitted = context.section(policy.name)
        for item in candidates[:policy.max_items]:
            tokens = estimate_tokens(item.content)
            if section_tokens + tokens <= section_cap and total + tokens <= max_tokens:
                admitted.append(item)
                section_tokens += tokens
                total += tokens
                continue
            exhausted = True
            if policy.stop_on_overflow:
                break
        dropped[policy.name] = len(candidates) - len(admitted)

    context.metadata = {
        "query": query,
        "project_id": project_id,
        "estimated_tokens": total,
        "max_tokens": max_tokens,
        "result_count": result_count,
        "assembled_at": utc_now(),
        "weights": (weights or RetrievalWeights()).to_dict(),
        "budget_exhausted": exhausted,
        "dropped": dropped,
    }
    return context


def format_context_for_ai(context: ContextResult) -> str:
    """Render an assembled context as markdown for an LLM prompt."""
    parts: list[str] = []

    if context.file_headers:
        parts.append("## File Context")
        for item in context.file_headers:
            parts.append(f"{item.content}\n")

    if context.target_symbols:
        parts.append("## Relevant Symbols")
        for item in context.target_symbols:
            parts.append(f"{item.content}\n\n---\n")

    if context.nearest_callers:
        parts.append("## Related Functions")
        for item in context.nearest_callers:
            parts.append(f"{item.content}\n")

    if context.related_imports:
        parts.append("## Imports & Exports")
        parts.extend(item.content for item in context.related_imports)
        parts.append("")

    if context.diagnostics:
        parts.append("## Issues & Diagnostics")
        for item in context.diagnostics:
            severity = str(item.details.get("severity", "info")).upper()
            parts.append(f"{severity}: {item.content} ({item.path}:{item.details.get('line', 0)})")
        parts.append("")

    if context.examples:
        parts.append("## Usage Examples")
        for item in context.examples:
            parts.append(f"{item.content}\n")

    return "\n".join(parts).strip()


# ---------------------------------------------------------------------------
# ContextBuilder
# ---------------------------------------------------------------------------

class ContextBuilder:
    """
    Runs the four-phase retrieval pipeline.

    Parameters
    ----------
    store:
        Open graph store.
    symbolic_index:
        Symbolic index over the same store.
    embeddings:
        Embedding service, or None to skip semantic expansion.
    weights:
        Rerank weights.
    max_tokens:
        Default token budget.
    cache_ttl:
        Lifetime of cached contexts.
    """

    def __init__(
        self,
        store: "GraphStore",
        symbolic_index: "SymbolicIndex",
        embeddings: Optional["EmbeddingService"] = None,
        weights: Optional[RetrievalWeights] = None,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        cache_ttl: float = CACHE_TTL_SECONDS,
        cache_max_size: int = 1000,
    ) -> None:
        self._store = store
        self._symbolic = symbolic_index
        self._embeddings = embeddings
        self.weights = weights or RetrievalWeights()
        self.max_tokens = max_tokens
        self._cache: TTLCache[ContextResult] = TTLCache(ttl_seconds=cache_ttl, max_size=cache_max_size)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def build_context(
        self,
        query: str,
        project_id: Optional[str] = None,
        max_tokens: Optional[int] = None,
        include_symbolic: bool = True,
        include_semantic: bool = True,
        include_errors: bool = True,
        include_examples: bool = True,
    ) -> ContextResult:
        """
        Build a bounded context for *query*.

        Parameters
        ----------
        query:
            Natural-language question.
        project_id:
            Restrict retrieval to one project.
        max_tokens:
            Token budget; defaults to the builder's ``max_tokens``.
        include_symbolic, include_semantic:
            Enable phase 1 / phase 2.
        include_errors, include_examples:
            Populate the diagnostics / usage-example sections.

        Returns
        -------
        ContextResult
            Sections plus metadata; ``metadata["estimated_tokens"]`` never
            exceeds the budget.
        """
        budget = self.max_tokens if max_tokens is None else max_tokens
        key = (
            "ctx", project_id or "*", " ".join(query.lower().split()), budget,
            include_symbolic, include_semantic, include_errors, include_examples,
        )
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        symbolic = await self.symbolic_prefilter(query, project_id) if include_symbolic else []
        semantic = (
            await self.semantic_expand(query, project_id, symbolic) if include_semantic else []
        )
        candidates = await self._flag_errors([*symbolic, *semantic])
        ranked = rerank(candidates, query, self.weights)
        material = await self.collect_material(ranked, project_id, include_errors, include_examples)
        context = assemble_context(
            material, query, project_id, budget, include_errors, include_examples,
            result_count=len(ranked), weights=self.weights,
        )
        logger.debug(
            "[context] Built context for %r: %d symbolic, %d semantic, %d tokens",
            query[:100], len(symbolic), len(semantic), context.metadata["estimated_tokens"],
        )
        self._cache.set(key, context)
        return context

    # ------------------------------------------------------------------
    # Phase 1
    # ------------------------------------------------------------------

    async def symbolic_prefilter(self, query: str, project_id: Optional[str] = None) -> list[RetrievalResult]:
        """Exact and fuzzy symbol matches for the identifiers in *query*."""
        names = extract_symbol_names(query)
        try:
            lookups = await asyncio.gather(*(
                asyncio.gather(
                    self._symbolic.find_definition(name, None, project_id),
                    self._symbolic.find_references(name, project_id),
                )
                for name in names
            ))
            matches = await self._symbolic.search_symbols(query, project_id, limit=10)
        except CKGError as exc:
            logger.warning("[context] Symbolic pre-filter failed for %r: %s", query[:100], exc)
            return []

        results: list[RetrievalResult] = []
        for definitions, references in lookups:
            results.extend(
                RetrievalResult(
                    name=d.name, type=d.type, path=d.path, source=SYMBOLIC, kind="definition",
                    relevance=1.0, node_id=d.id, updated_at=d.updated_at,
                    line=d.metadata.get("line_start", 0),
                )
                for d in definitions
            )
            results.extend(
                RetrievalResult(
                    name=r["reference_name"], type=r["reference_type_node"], path=r["file_path"],
                    source=SYMBOLIC, kind="reference", relevance=0.8,
                    node_id=r["reference_node_id"], line=r["line"], content=r["context"] or None,
                )
                for r in references[:5]
            )
        results.extend(
            RetrievalResult(
                name=m["node"].name, type=m["node"].type, path=m["node"].path,
                source=SYMBOLIC, kind="search", relevance=m["name_similarity"] or 0.5,
                node_id=m["node"].id, updated_at=m["node"].updated_at,
                line=m["node"].metadata.get("line_start", 0),
            )
            for m in matches
        )
        return deduplicate(results)

    # ------------------------------------------------------------------
    # Phase 2
    # ------------------------------------------------------------------

    async def semantic_expand(
        self,
        query: str,
        project_id: Optional[str] = None,
        symbolic_results: Sequence[RetrievalResult] = (),
    ) -> list[RetrievalResult]:
        """Similar chunks plus the neighbourhood of the top symbolic hits."""
        seen = {r.key for r in symbolic_results}
        results: list[RetrievalResult] = []
        try:
            if self._embeddings is not None:
                chunks = await self._embeddings.find_similar_chunks(query, project_id, limit=20)
                nodes = await self._store.get_nodes([c["node_id"] for c in chunks])
                by_id = {n.id: n for n in nodes}
                for chunk in chunks:
                    node = by_id.get(chunk["node_id"])
                    if node is None:
                        continue
                    results.append(RetrievalResult(
                        name=node.name, type=node.type, path=node.path, source=SEMANTIC,
                        kind="similar", relevance=chunk["similarity"], node_id=node.id,
                        updated_at=node.updated_at, content=chunk["content"],
                        line=node.metadata.get("line_start", 0),
                    ))

            anchors = [r.node_id for r in symbolic_results[:5] if r.node_id]
            neighbourhoods = await asyncio.gather(*(
                self._symbolic.get_symbol_neighborhood(nid, 1) for nid in anchors
            ))
        except CKGError as exc:
            logger.warning("[context] Semantic expansion failed for %r: %s", query[:100], exc)
            return deduplicate(results, seen)

        for neighbours in neighbourhoods:
            results.extend(
                RetrievalResult(
                    name=n.node.name, type=n.node.type, path=n.node.path, source=SEMANTIC,
                    kind="related", relevance=0.6, node_id=n.node.id,
                    updated_at=n.node.updated_at, line=n.node.metadata.get("line_start", 0),
                )
                for n in neighbours
            )
        return deduplicate(results, seen)

    async def _flag_errors(self, results: list[RetrievalResult]) -> list[RetrievalResult]:
        ids = [r.node_id for r in results if r.node_id]
        if not ids:
            return results
        flagged = await self._store.nodes_with_errors(ids)
        return [replace(r, has_errors=r.node_id in flagged) for r in results]

    # ------------------------------------------------------------------
    # Material for phase 4
    # ------------------------------------------------------------------

    async def collect_material(
        self,
        ranked: Sequence[RetrievalResult],
        project_id: Optional[str] = None,
        include_errors: bool = True,
        include_examples: bool = True,
    ) -> dict[str, list[ContextItem]]:
        """Fetch the candidate items of every section for the ranked results."""
        paths = list(dict.fromkeys(r.path for r in ranked if r.path))[:5]
        headers, symbols, callers, imports, diagnostics, examples = await asyncio.gather(
            self._file_headers(paths, project_id),
            self._target_symbols(ranked[:10]),
            self._nearest_callers(ranked[:5]),
            self._related_imports(paths, project_id),
            self._diagnostics(ranked) if include_errors else _empty(),
            self._usage_examples(ranked[:3], project_id) if include_examples else _empty(),
        )
        return {
            "file_headers": headers,
            "target_symbols": symbols,
            "nearest_callers": callers,
            "related_imports": imports,
            "diagnostics": diagnostics,
            "examples": examples,
        }

    async def _file_headers(self, paths: Sequence[str], project_id: Optional[str]) -> list[ContextItem]:
        items = []
        for path in paths:
            files = await self._store.find_nodes_by_path(path, project_id, types=[NodeType.FILE])
            if not files:
                continue
            node = files[0]
            counts = node.metadata.get("symbol_counts") or {}
            summary = ", ".join(f"{k}: {v}" for k, v in counts.items()) or "unknown"
            items.append(ContextItem(
                content=f"File: {path}\nLanguage: {node.language or 'unknown'}\nSymbols: {summary}",
                name=node.name, type=node.type, path=path,
            ))
        return items

    async def _target_symbols(self, ranked: Sequence[RetrievalResult]) -> list[ContextItem]:
        items = []
        for r in ranked:
            chunks = await self._store.get_chunks_for_node(r.node_id) if r.node_id else []
            chunks.sort(key=lambda c: _CHUNK_PRIORITY.get(c.chunk_type, 2))
            if chunks:
                content, chunk_type = chunks[0].content, chunks[0].chunk_type
            elif r.content:
                content, chunk_type = r.content, "basic"
            else:
                content, chunk_type = f"{r.type}: {r.name}\nFile: {r.path}", "basic"
            items.append(ContextItem(
                content=content, name=r.name, type=r.type, path=r.path,
                details={"chunk_type": chunk_type, "relevance": r.score, "source": r.source,
                         "kind": r.kind, "line": r.line},
            ))
        return items

    async def _nearest_callers(self, ranked: Sequence[RetrievalResult]) -> list[ContextItem]:
        items = []
        for r in ranked:
            if not r.node_id:
                continue
            callers = await self._store.get_neighbors(
                r.node_id, EdgeType.CALLS, direction="incoming", limit=3
            )
            items.extend(
                ContextItem(
                    content=f"{c.node.type}: {c.node.name} calls {r.name}\nFile: {c.node.path}",
                    name=c.node.name, type=c.node.type, path=c.node.path,
                    details={"relationship": c.relationship, "callee": r.name},
                )
                for c in callers
            )
        return items

    async def _related_imports(self, paths: Sequence[str], project_id: Optional[str]) -> list[ContextItem]:
        items = []
        for path in paths:
            importers = await self._symbolic.find_importers(path, project_id)
            items.extend(
                ContextItem(
                    content=f"Import: {imp['imported_name']} from {imp['imported_path']}\n"
                            f"Used in: {imp['importer_path']}",
                    name=imp["imported_name"], path=imp["importer_path"],
                    details={"kind": "import"},
                )
                for imp in importers[:3]
            )
            exports = await self._symbolic.find_exports(path, project_id)
            items.extend(
                ContextItem(
                    content=f"Export: {exp.type} {exp.name}\nFrom: {path}",
                    name=exp.name, type=exp.type, path=path, details={"kind": "export"},
                )
                for exp in exports[:3]
            )
        return items

    async def _diagnostics(self, ranked: Sequence[RetrievalResult]) -> list[ContextItem]:
        ids = list(dict.fromkeys(r.node_id for r in ranked if r.node_id))
        rows = await self._store.get_diagnostics(node_ids=ids, limit=10)
        return [
            ContextItem(
                content=d["message"], name=d["node_name"], path=d["path"],
                details={"severity": d["severity"], "line": d["line"], "column": d["column"],
                         "rule": d["rule"], "source": d["source"],
                         "fix_suggestion": d["fix_suggestion"]},
            )
            for d in rows
        ]

    async def _usage_examples(
        self,
        ranked: Sequence[RetrievalResult],
        project_id: Optional[str],
    ) -> list[ContextItem]:
        items = []
        for r in ranked:
            refs = await self._symbolic.find_references(r.name, project_id)
            items.extend(
                ContextItem(
                    content=ref["context"] or f"Usage of {r.name} in {ref['file_path']}:{ref['line']}",
                    name=r.name, path=ref["file_path"],
                    details={"usage_type": ref["reference_type"], "line": ref["line"]},
                )
                for ref in refs[:2]
            )
        return items

    # ------------------------------------------------------------------
    # Formatting / maintenance
    # ------------------------------------------------------------------

    @staticmethod
    def format_context_for_ai(context: ContextResult) -> str:
        return format_context_for_ai(context)

    def invalidate_project(self, project_id: str) -> int:
        return self._cache.invalidate(lambda k: k[1] in (project_id, "*"))

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("[context] Context cache cleared")

    def get_stats(self) -> dict:
        return {
            "cache": self._cache.stats(),
            "max_context_size": self.max_tokens,
            "retrieval_weights": self.weights.to_dict(),
        }

    async def health(self) -> ComponentHealth:
        try:
            context = await self.build_context("function test", max_tokens=1000)
        except CKGError as exc:
            return ComponentHealth("context_builder", "error",
                                   f"Context builder health check failed: {exc}")
        return ComponentHealth(
            "context_builder", "ok", "Context builder is healthy",
            {**self.get_stats(), "test_tokens": context.metadata["estimated_tokens"]},
        )


async def _empty() -> list[ContextItem]:
    return []

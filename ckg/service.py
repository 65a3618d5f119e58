"""
CKG service: the façade that wires the components together.

Build flow::

    full index -> semantic chunks -> embeddings -> symbolic rebuild -> statistics

Query flow::

    query -> ContextBuilder (symbolic + semantic) -> rerank -> bounded
    assembly -> context + graph insights
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from .config import Config
from .context_builder import (
    ContextBuilder,
    ContextResult,
    RetrievalWeights,
    extract_symbol_names,
    format_context_for_ai,
)
from .events import EventBus
from .health import ComponentHealth, SystemHealth, aggregate
from .indexing.chunker import Chunker, SymbolChunker
from .indexing.extractor import Extractor, TreeSitterExtractor
from .indexing.indexer import IncrementalIndexer
from .log import setup_logger
from .models import ChangeType, FileChange, IndexProgress, NodeType, utc_now
from .retrieval.embedding import EmbeddingService
from .retrieval.providers import create_provider
from .retrieval.symbolic_index import SymbolicIndex
from .store.graph_store import GraphStore

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# Combined search scoring: score = similarity * weight + bias
SYMBOLIC_SCORE = (0.8, 0.2)
SEMANTIC_SCORE = (0.7, 0.1)
TEXT_SCORE = (0.6, 0.1)

HOTSPOT_CONNECTION_LIMIT = 20
MAX_SYMBOLS_NODES = 100_000


@dataclass
class BuildResult:
    """Outcome of :meth:`CKGService.build_knowledge_graph`."""

    project_id: str
    root_path: str
    incremental: bool
    index: dict[str, Any] = field(default_factory=dict)
    chunks: dict[str, Any] = field(default_factory=dict)
    embeddings: dict[str, Any] = field(default_factory=dict)
    statistics: dict[str, Any] = field(default_factory=dict)
    duration: float = 0.0
    completed_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict:
        return asdict(self)


class CKGService:
    """
    Code Knowledge Graph service.

    All collaborators are passed in explicitly; :meth:`from_config` builds
    a complete default set.

    Parameters
    ----------
    store:
        Open graph store.
    symbolic_index, embeddings, context_builder, indexer:
        Components sharing *store*.
    chunker:
        Chunking capability used by :meth:`create_semantic_chunks`.
    events:
        Event channels (shared with the indexer).
    chunk_batch_size:
        Nodes per chunking batch.
    """

    def __init__(
        self,
        store: GraphStore,
        symbolic_index: SymbolicIndex,
        embeddings: EmbeddingService,
        context_builder: ContextBuilder,
        indexer: IncrementalIndexer,
        chunker: Optional[Chunker] = None,
        events: Optional[EventBus] = None,
        chunk_batch_size: int = 50,
    ) -> None:
        self.store = store
        self.symbolic_index = symbolic_index
        self.embeddings = embeddings
        self.context_builder = context_builder
        self.indexer = indexer
        self.chunker = chunker or SymbolChunker()
        self.events = events or indexer.events
        self.chunk_batch_size = max(1, chunk_batch_size)
        self._started = time.monotonic()
        self._closed = False

    @classmethod
    async def from_config(
        cls,
        config: Optional[Config] = None,
        extractor: Optional[Extractor] = None,
    ) -> "CKGService":
        """Open the store and build every component from *config*."""
        config = config or Config.load()
        if config.LOG_DIR:
            setup_logger(config.LOG_DIR)

        store = await GraphStore(config.DB_PATH).open()
        events = EventBus()
        symbolic = SymbolicIndex(store, ttl_seconds=config.CACHE_TTL_SECONDS,
                                 max_size=config.CACHE_MAX_SIZE)
        embeddings = EmbeddingService(
            store,
            provider=create_provider(config),
            batch_size=config.EMBEDDING_BATCH_SIZE,
            batch_delay=config.EMBEDDING_BATCH_DELAY,
            timeout=config.EMBEDDING_TIMEOUT,
            cache_size=config.EMBEDDING_CACHE_SIZE,
            similarity_threshold=config.SIMILARITY_THRESHOLD,
        )
        context_builder = ContextBuilder(
            store, symbolic, embeddings,
            weights=RetrievalWeights.from_overrides(config.WEIGHTS),
            max_tokens=config.MAX_CONTEXT_TOKENS,
            cache_ttl=config.CACHE_TTL_SECONDS,
        )
        chunker = SymbolChunker()
        indexer = IncrementalIndexer(
            store,
            extractor=extractor or TreeSitterExtractor(),
            chunker=chunker,
            embeddings=embeddings,
            symbolic_index=symbolic,
            context_builder=context_builder,
            events=events,
            debounce_seconds=config.WATCH_DEBOUNCE_SECONDS,
        )
        service = cls(store, symbolic, embeddings, context_builder, indexer,
                      chunker=chunker, events=events,
                      chunk_batch_size=config.CHUNK_BATCH_SIZE)
        logger.info("[CKG] Service ready (db=%s, embeddings=%s)",
                    config.DB_PATH, embeddings.provider_name)
        return service

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    async def build_knowledge_graph(
        self,
        project_id: str,
        root_path: str,
        incremental: bool = False,
        commit_hash: Optional[str] = None,
        enable_chunking: bool = True,
        enable_embeddings: bool = True,
    ) -> BuildResult:
        """
        Index *root_path* into the graph of *project_id*.

        With ``incremental=True`` the indexer also starts watching the
        project after the initial index.

        Returns
        -------
        BuildResult
            Per-phase results plus project statistics.
        """
        start = time.monotonic()
        logger.info("[CKG] Building knowledge graph for %s at %s (incremental=%s)",
                    project_id, root_path, incremental)
        result = BuildResult(project_id=project_id, root_path=root_path, incremental=incremental)

        # Phase 1: extract symbols and build the graph
        if incremental:
            result.index = await self.indexer.start_indexing(project_id, root_path, commit_hash)
        else:
            result.index = await self.indexer.perform_full_index(project_id, root_path, commit_hash)
        if result.index.get("cancelled"):
            result.duration = time.monotonic() - start
            return result

        # Phase 2: semantic chunks
        if enable_chunking:
            result.chunks = await self.create_semantic_chunks(project_id)

        # Phase 3: embeddings
        if enable_embeddings and result.chunks.get("chunks_created", 0) > 0:
            embedded = await self.embeddings.embed_missing(project_id)
            result.embeddings = {"embeddings_created": embedded}

        # Phase 4: symbolic index
        await self.symbolic_index.rebuild_index(project_id)
        self.context_builder.invalidate_project(project_id)

        # Phase 5: statistics
        result.statistics = await self.get_project_statistics(project_id)
        result.duration = time.monotonic() - start
        logger.info("[CKG] Knowledge graph for %s built in %.2fs", project_id, result.duration)
        return result

    async def create_semantic_chunks(self, project_id: str) -> dict:
        """
        Chunk every non-File node of *project_id*.

        Emits ``chunking_progress`` after each batch.

        Returns
        -------
        dict
            Keys: chunks_created (new or changed chunks), nodes.
        """
        nodes = [
            n for n in await self.store.find_nodes_by_type(None, project_id, MAX_SYMBOLS_NODES)
            if n.type != NodeType.FILE
        ]
        nodes.sort(key=lambda n: (n.path, n.metadata.get("line_start", 0)))
        root = self.indexer.get_root_path(project_id)
        sources: dict[str, Optional[str]] = {}
        total = len(nodes)
        created = 0

        for i in range(0, total, self.chunk_batch_size):
            batch = nodes[i:i + self.chunk_batch_size]
            chunks = []
            for node in batch:
                if node.path not in sources:
                    sources[node.path] = await self._read_source(root, node.path)
                try:
                    chunks.extend(self.chunker.create_chunks(node, sources[node.path]))
                except (KeyError, ValueError, TypeError) as exc:
                    logger.warning("[CKG] Failed to create chunks for node %s: %s", node.name, exc)
            created += len(await self.store.replace_chunks(chunks))
            processed = min(i + self.chunk_batch_size, total)
            await self.events.chunking_progress.publish(IndexProgress(
                project_id=project_id,
                progress=int(processed * 100 / total),
                current_file=batch[-1].path,
                processed=processed,
                total=total,
            ))

        logger.info("[CKG] Semantic chunking completed for %s: %d chunks", project_id, created)
        return {"chunks_created": created, "nodes": total}

    @staticmethod
    async def _read_source(root: Optional[str], rel_path: str) -> Optional[str]:
        if root is None:
            return None

        def _read() -> str:
            with open(os.path.join(root, rel_path), encoding="utf-8", errors="replace") as fh:
                return fh.read()

        try:
            return await asyncio.to_thread(_read)
        except OSError as exc:
            logger.warning("[CKG] Cannot read %s for chunking: %s", rel_path, exc)
            return None

    async def update_file_in_graph(
        self,
        file_path: str,
        project_id: str,
        change_type: str = ChangeType.MODIFIED,
    ) -> dict:
        """Apply one file change through the indexer queue and wait for it."""
        logger.info("[CKG] Updating %s in %s (%s)", file_path, project_id, change_type)
        change = FileChange(path=file_path, project_id=project_id, change_type=change_type)
        return await self.indexer.enqueue_change(change)

    # ------------------------------------------------------------------
    # Query
    # ------------------------------------------------------------------

    async def query_with_context(
        self,
        query: str,
        project_id: Optional[str] = None,
        **options: Any,
    ) -> dict:
        """
        Build an LLM context for *query* plus graph insights.

        ``options`` are passed to :meth:`ContextBuilder.build_context`
        (max_tokens, include_symbolic, include_semantic, include_errors,
        include_examples).

        Returns
        -------
        dict
            Keys: query, context (:class:`ContextResult`), insights,
            metadata {project_id, generated_at, token_count}.
        """
        context = await self.context_builder.build_context(query, project_id, **options)
        insights = await self.get_graph_insights(query, project_id)
        return {
            "query": query,
            "context": context,
            "insights": insights,
            "metadata": {
                "project_id": project_id,
                "generated_at": utc_now(),
                "token_count": context.metadata.get("estimated_tokens", 0),
            },
        }

    async def get_ai_analysis(self, query: str, project_id: Optional[str] = None) -> dict:
        """Like :meth:`query_with_context`, with the context rendered as text."""
        data = await self.query_with_context(query, project_id)
        return {
            "query": query,
            "context": format_context_for_ai(data["context"]),
            "insights": data["insights"],
            "suggestions": data["insights"]["suggestions"],
            "metadata": data["metadata"],
        }

    async def get_graph_insights(self, query: str, project_id: Optional[str] = None) -> dict:
        """
        Structural facts related to *query*.

        Returns
        -------
        dict
            Keys: symbol_matches (impact of up to 3 query symbols),
            dependencies (10), hotspots (5), suggestions.
        """
        insights: dict[str, list] = {
            "symbol_matches": [], "dependencies": [], "hotspots": [], "suggestions": [],
        }
        for name in extract_symbol_names(query)[:3]:
            impact = await self.symbolic_index.analyze_symbol_impact(name, project_id)
            if impact["symbol"] is not None:
                insights["symbol_matches"].append(impact)
        if project_id:
            deps = await self.store.get_dependency_graph(project_id, max_depth=2)
            insights["dependencies"] = deps[:10]
            insights["hotspots"] = await self.store.get_most_connected_nodes(project_id, 5)
        insights["suggestions"] = await self._suggestions(insights, project_id)
        return insights

    async def _suggestions(self, insights: dict, project_id: Optional[str]) -> list[dict]:
        suggestions: list[dict] = []
        if project_id:
            unused = await self.symbolic_index.find_unused_exports(project_id)
            if unused:
                suggestions.append({
                    "type": "cleanup",
                    "message": f"Found {len(unused)} unused exports that could be removed",
                    "action": "Review and remove unused exports",
                    "priority": "medium",
                })

        for match in insights["symbol_matches"]:
            if match["impact"]["reference_count"] == 0:
                suggestions.append({
                    "type": "usage",
                    "message": f"Symbol '{match['symbol'].name}' is defined but never used",
                    "action": "Consider removing if no longer needed",
                    "priority": "low",
                })

        if insights["hotspots"]:
            top = insights["hotspots"][0]
            if top["connection_count"] > HOTSPOT_CONNECTION_LIMIT:
                suggestions.append({
                    "type": "architecture",
                    "message": f"'{top['name']}' has many connections ({top['connection_count']})",
                    "action": "Check whether this indicates tight coupling worth refactoring",
                    "priority": "medium",
                })

        if project_id:
            cycles = await self.store.find_circular_dependencies(project_id)
            if cycles:
                suggestions.append({
                    "type": "architecture",
                    "message": f"Found {len(cycles)} circular dependency cycles",
                    "action": "Review and break circular dependencies",
                    "priority": "high",
                })
        return suggestions

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(
        self,
        query: str,
        project_id: Optional[str] = None,
        include_symbolic: bool = True,
        include_semantic: bool = True,
        include_text: bool = True,
        limit: int = 20,
    ) -> dict:
        """
        Search symbols, chunk vectors and chunk text.

        Returns
        -------
        dict
            Keys: symbolic, semantic, text_search, combined.  ``combined``
            holds ``{name, type, path, node_id, content, source, score}``
            entries, one per ``name:type:path`` (highest score kept),
            ordered by score descending.
        """
        symbolic = (
            await self.symbolic_index.search_symbols(query, project_id, limit)
            if include_symbolic else []
        )
        semantic = (
            await self.embeddings.find_similar_chunks(query, project_id, limit)
            if include_semantic else []
        )
        text = (
            await self.embeddings.semantic_search(query, project_id, limit,
                                                  use_vector=False, use_text=True)
            if include_text else []
        )
        return {
            "symbolic": symbolic,
            "semantic": semantic,
            "text_search": text,
            "combined": combine_search_results(symbolic, semantic, text)[:limit],
        }

    # ------------------------------------------------------------------
    # Statistics / health
    # ------------------------------------------------------------------

    async def get_project_statistics(self, project_id: str) -> dict:
        graph, embeddings, connectivity = await asyncio.gather(
            self.store.get_graph_stats(project_id),
            self.embeddings.get_embedding_stats(project_id),
            self.store.analyze_connectivity(project_id),
        )
        return {
            "graph": graph,
            "embeddings": embeddings,
            "connectivity": connectivity,
            "symbolic": self.symbolic_index.get_stats(),
            "generated_at": utc_now(),
        }

    @staticmethod
    def format_context_for_ai(context: ContextResult) -> str:
        return format_context_for_ai(context)

    async def health(self) -> SystemHealth:
        """
        Check every component.

        ``ok`` when all are ok, ``degraded`` when some are, ``error``
        (critical) when none are.
        """
        checks = await asyncio.gather(
            self.store.health(),
            self.symbolic_index.health(),
            self.embeddings.health(),
            self.context_builder.health(),
            self.indexer.health(),
            return_exceptions=True,
        )
        names = ("graph_store", "symbolic_index", "embedding_service",
                 "context_builder", "indexer")
        components = []
        for name, check in zip(names, checks):
            if isinstance(check, BaseException):
                logger.warning("[CKG] Health check of %s failed: %s", name, check)
                check = ComponentHealth(name, "error", f"Health check failed: {check}")
            components.append(check)
        return aggregate(components)

    def get_service_stats(self) -> dict:
        return {
            "graph_store": self.store.get_stats(),
            "symbolic_index": self.symbolic_index.get_stats(),
            "embedding_service": self.embeddings.get_stats(),
            "context_builder": self.context_builder.get_stats(),
            "indexer": self.indexer.get_stats(),
        }

    async def get_status(self) -> dict:
        health = await self.health()
        return {
            "version": VERSION,
            "health": health.to_dict(),
            "statistics": self.get_service_stats(),
            "uptime": time.monotonic() - self._started,
            "closed": self._closed,
        }

    async def close(self) -> None:
        """Stop indexing, clear caches and close the store."""
        if self._closed:
            return
        logger.info("[CKG] Shutting down")
        await self.indexer.close()
        self.symbolic_index.clear_cache()
        self.embeddings.clear_cache()
        self.context_builder.clear_cache()
        await self.store.close()
        self._closed = True

    async def __aenter__(self) -> "CKGService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()


# ---------------------------------------------------------------------------
# Result combination
# ---------------------------------------------------------------------------

def _scored(weight_bias: tuple[float, float], value: Optional[float], default: float) -> float:
    weight, bias = weight_bias
    return round((value if value is not None else default) * weight + bias, 6)


def combine_search_results(
    symbolic: list[dict],
    semantic: list[dict],
    text: list[dict],
) -> list[dict]:
    """
    Merge the three result lists into one ranking.

    Entries are keyed by ``name:type:path``; when a key appears more than
    once the highest score wins.
    """
    best: dict[str, dict] = {}

    def _offer(entry: dict) -> None:
        key = f"{entry['name']}:{entry['type']}:{entry['path']}"
        current = best.get(key)
        if current is None or entry["score"] > current["score"]:
            best[key] = entry

    for hit in symbolic:
        node = hit["node"]
        _offer({
            "name": node.name, "type": node.type, "path": node.path, "node_id": node.id,
            "content": node.metadata.get("signature", ""),
            "source": "symbolic",
            "score": _scored(SYMBOLIC_SCORE, hit.get("name_similarity"), 0.5),
        })
    for source, rows, scoring, field_name, default in (
        ("semantic", semantic, SEMANTIC_SCORE, "similarity", 0.5),
        ("text", text, TEXT_SCORE, "text_rank", 0.3),
    ):
        for row in rows:
            _offer({
                "name": row["node_name"], "type": row["node_type"], "path": row["path"],
                "node_id": row["node_id"], "content": row.get("content", ""),
                "source": source,
                "score": _scored(scoring, row.get(field_name), default),
            })
    return sorted(best.values(), key=lambda e: e["score"], reverse=True)

"""
Embedding service: semantic layer of the Code Knowledge Graph.

Turns chunk text into vectors through the configured provider, stores
them in the graph store and answers similarity and hybrid searches over
them.  The remote provider is optional: whenever it is missing or raises
:class:`~ckg.errors.ProviderUnavailable` the deterministic
:class:`~ckg.retrieval.providers.LocalFeatureProvider` is used instead.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Sequence, Union

import numpy as np
from tqdm import tqdm

from ..cache import TTLCache
from ..errors import ProviderUnavailable, StoreError
from ..health import ComponentHealth
from ..models import CodeChunk
from ..store.vectors import cosine_similarity_batch
from .providers import EmbeddingProvider, LocalFeatureProvider

if TYPE_CHECKING:
    from ..store.graph_store import GraphStore

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BATCH_SIZE = 100
BATCH_DELAY_SECONDS = 1.0
CACHE_SIZE = 10000

# Hybrid score weights
VECTOR_WEIGHT = 0.7
TEXT_WEIGHT = 0.3

_TERM_RE = re.compile(r"[A-Za-z0-9]+")

ChunkLike = Union[CodeChunk, dict]


@dataclass
class EmbeddingResult:
    """A vector plus the model and provider that produced it."""

    vector: list[float]
    model: str
    dimensions: int
    provider: str


def _text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def _terms(text: str) -> set[str]:
    """Lower-cased alphanumeric terms; snake_case and camelCase are split."""
    spaced = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", text)
    return {t.lower() for t in _TERM_RE.findall(spaced) if len(t) > 1}


def lexical_rank(query: str, content: str) -> float:
    """Fraction of the query's terms that occur in *content* (0.0-1.0)."""
    q_terms = _terms(query)
    if not q_terms:
        return 0.0
    return len(q_terms & _terms(content)) / len(q_terms)


def _chunk_fields(chunk: ChunkLike) -> tuple[str, str]:
    if isinstance(chunk, CodeChunk):
        return chunk.id, chunk.content
    return chunk.get("chunk_id") or chunk.get("id", ""), chunk.get("content", "")


class EmbeddingService:
    """
    Generates, stores and searches chunk embeddings.

    Parameters
    ----------
    store:
        Open :class:`~ckg.store.graph_store.GraphStore`.
    provider:
        Remote provider, or None to always use local features.
    batch_size:
        Chunks per embedding batch.
    batch_delay:
        Seconds to sleep between batches (rate limiting).
    timeout:
        Per-item timeout inside a batch.
    cache_size:
        Maximum number of cached vectors.
    similarity_threshold:
        Default minimum cosine similarity for searches.
    """

    def __init__(
        self,
        store: "GraphStore",
        provider: Optional[EmbeddingProvider] = None,
        batch_size: int = BATCH_SIZE,
        batch_delay: float = BATCH_DELAY_SECONDS,
        timeout: float = 30.0,
        cache_size: int = CACHE_SIZE,
        similarity_threshold: float = 0.7,
    ) -> None:
        self._store = store
        self._provider = provider
        self._local = LocalFeatureProvider()
        self._batch_size = max(1, batch_size)
        self._batch_delay = batch_delay
        self._timeout = timeout
        self._threshold = similarity_threshold
        self._cache: TTLCache[EmbeddingResult] = TTLCache(ttl_seconds=None, max_size=cache_size)
        self._fallbacks = 0

    @property
    def model(self) -> str:
        """Model name of the active provider."""
        return self._provider.model if self._provider else self._local.model

    @property
    def provider_name(self) -> str:
        return self._provider.name if self._provider else self._local.name

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_embedding(self, text: str) -> EmbeddingResult:
        """
        Embed one text, using the cache when possible.

        Falls back to local features when the remote provider is missing
        or unavailable; this method never fails for provider reasons.
        Results are cached under the model that produced them, so a
        fallback vector is never served once the provider is back.
        """
        digest = _text_hash(text)
        key = f"{self.model}:{digest}"
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        if self._provider is not None:
            try:
                vector = (await self._provider.embed([text]))[0]
            except ProviderUnavailable as exc:
                self._fallbacks += 1
                logger.warning("[embedding] Provider %s unavailable, using local features: %s",
                               self._provider.name, exc)
            else:
                result = EmbeddingResult(vector, self._provider.model, len(vector), self._provider.name)
                self._cache.set(key, result)
                return result

            key = f"{self._local.model}:{digest}"
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        vector = (await self._local.embed([text]))[0]
        result = EmbeddingResult(vector, self._local.model, len(vector), self._local.name)
        self._cache.set(key, result)
        return result

    async def _generate_for_chunk(self, chunk: ChunkLike) -> Optional[tuple[str, EmbeddingResult]]:
        chunk_id, content = _chunk_fields(chunk)
        try:
            result = await asyncio.wait_for(self.generate_embedding(content), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning("[embedding] Timed out embedding chunk %s", chunk_id)
            return None
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("[embedding] Failed to embed chunk %s: %s", chunk_id, exc)
            return None
        return chunk_id, result

    async def batch_generate_embeddings(
        self,
        chunks: Sequence[ChunkLike],
        cancel_event: Optional[asyncio.Event] = None,
        show_progress: bool = True,
    ) -> list[tuple[str, EmbeddingResult]]:
        """
        Embed many chunks in throttled batches.

        Parameters
        ----------
        chunks:
            :class:`CodeChunk` objects or dicts with ``chunk_id``/``content``.
        cancel_event:
            When set, processing stops before the next batch.
        show_progress:
            Show a tqdm progress bar.

        Returns
        -------
        list[tuple[str, EmbeddingResult]]
            ``(chunk_id, result)`` for every chunk that succeeded; failures
            are logged and skipped.
        """
        results: list[tuple[str, EmbeddingResult]] = []
        total_batches = (len(chunks) + self._batch_size - 1) // self._batch_size
        progress = tqdm(
            total=total_batches,
            desc="Embedding chunks",
            unit="batch",
            disable=not show_progress or total_batches == 0,
        )
        try:
            for batch_start in range(0, len(chunks), self._batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    logger.info("[embedding] Batch embedding cancelled after %d chunks", len(results))
                    break
                batch = chunks[batch_start: batch_start + self._batch_size]
                outcomes = await asyncio.gather(*(self._generate_for_chunk(c) for c in batch))
                results.extend(o for o in outcomes if o is not None)
                progress.update(1)
                progress.set_postfix(embedded=len(results))

                if batch_start + self._batch_size < len(chunks) and self._batch_delay > 0:
                    await asyncio.sleep(self._batch_delay)
        finally:
            progress.close()
        return results

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def store_embeddings(self, results: Sequence[tuple[str, EmbeddingResult]]) -> int:
        return await self._store.upsert_embeddings(
            [(cid, r.vector, r.model, r.provider) for cid, r in results]
        )

    async def generate_chunk_embeddings(
        self,
        chunks: Sequence[ChunkLike],
        cancel_event: Optional[asyncio.Event] = None,
        show_progress: bool = True,
    ) -> int:
        """Embed *chunks* and store the results; returns the number stored."""
        results = await self.batch_generate_embeddings(chunks, cancel_event, show_progress)
        if results:
            await self.store_embeddings(results)
        return len(results)

    async def embed_missing(
        self,
        project_id: str,
        chunk_ids: Optional[Sequence[str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        show_progress: bool = True,
    ) -> int:
        """Embed the project's chunks that have no vector for the active model."""
        chunks = await self._store.list_chunks(
            project_id=project_id, chunk_ids=chunk_ids, missing_model=self.model
        )
        if not chunks:
            return 0
        return await self.generate_chunk_embeddings(chunks, cancel_event, show_progress)

    async def update_embedding(self, chunk_id: str, content: str) -> EmbeddingResult:
        result = await self.generate_embedding(content)
        await self.store_embeddings([(chunk_id, result)])
        return result

    async def delete_embedding(self, chunk_id: str) -> bool:
        return await self._store.delete_embeddings(chunk_id=chunk_id) > 0

    async def reindex_project(self, project_id: str, show_progress: bool = True) -> dict:
        """
        Delete and regenerate every embedding of a project.

        Returns
        -------
        dict
            Keys: processed.
        """
        logger.info("[embedding] Reindexing embeddings for project %s", project_id)
        chunks = await self._store.list_chunks(project_id=project_id)
        if not chunks:
            logger.info("[embedding] No chunks found for project %s", project_id)
            return {"processed": 0}
        await self._store.delete_embeddings(project_id=project_id)
        processed = await self.generate_chunk_embeddings(chunks, show_progress=show_progress)
        logger.info("[embedding] Reindexed %d chunks for project %s", processed, project_id)
        return {"processed": processed}

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    @staticmethod
    def _score_rows(query_vector: Sequence[float], rows: list[dict]) -> np.ndarray:
        query = np.asarray(query_vector, dtype=np.float32)
        if not rows:
            return np.zeros(0)
        matrix = np.vstack([r["vector"] for r in rows])
        return cosine_similarity_batch(query, matrix)

    @staticmethod
    def _public(row: dict, **extra: Any) -> dict:
        out = {k: v for k, v in row.items() if k != "vector"}
        out.update(extra)
        return out

    async def search_similar(
        self,
        vector: Sequence[float],
        project_id: Optional[str] = None,
        limit: int = 10,
        threshold: Optional[float] = None,
        model: Optional[str] = None,
    ) -> list[dict]:
        """
        Return chunks whose stored vector is close to *vector*.

        Only vectors of the same dimensionality are compared.  Results
        carry a ``similarity`` key and are ordered by it, descending.
        """
        threshold = self._threshold if threshold is None else threshold
        rows = [
            r for r in await self._store.fetch_embeddings(project_id=project_id, model=model)
            if len(r["vector"]) == len(vector)
        ]
        if not rows:
            return []
        sims = self._score_rows(vector, rows)
        hits = [
            self._public(row, similarity=round(float(sim), 6))
            for row, sim in zip(rows, sims)
            if sim >= threshold
        ]
        hits.sort(key=lambda h: h["similarity"], reverse=True)
        return hits[:limit]

    async def find_similar_chunks(
        self,
        query_text: str,
        project_id: Optional[str] = None,
        limit: int = 20,
        threshold: Optional[float] = None,
    ) -> list[dict]:
        """
        Embed *query_text* and return the most similar chunks.

        Each result carries chunk fields (chunk_id, content, chunk_type,
        language), owning-node fields (node_id, node_name, node_type,
        path) and ``similarity``.
        """
        query = await self.generate_embedding(query_text)
        return await self.search_similar(query.vector, project_id, limit, threshold, model=query.model)

    async def semantic_search(
        self,
        query: str,
        project_id: Optional[str] = None,
        limit: int = 20,
        threshold: Optional[float] = None,
        use_vector: bool = True,
        use_text: bool = True,
        chunk_types: Optional[Sequence[str]] = None,
    ) -> list[dict]:
        """
        Hybrid search over chunk vectors and chunk text.

        With both signals enabled the score is
        ``0.7 * similarity + 0.3 * text_rank`` and a chunk qualifies when
        either its similarity reaches *threshold* or it shares a term with
        the query.

        Returns
        -------
        list[dict]
            Chunk and node fields plus ``semantic_similarity``,
            ``text_rank`` and ``score``, ordered by score descending.
        """
        if not use_vector and not use_text:
            return []
        threshold = self._threshold if threshold is None else threshold

        if use_vector:
            q = await self.generate_embedding(query)
            rows = [
                r for r in await self._store.fetch_embeddings(project_id=project_id, model=q.model)
                if len(r["vector"]) == len(q.vector)
            ]
            sims = self._score_rows(q.vector, rows)
        else:
            rows = await self._store.list_chunks(project_id=project_id)
            sims = np.zeros(len(rows))

        hits: list[dict] = []
        for row, sim in zip(rows, sims):
            if chunk_types and row.get("chunk_type") not in chunk_types:
                continue
            sim = float(sim)
            rank = lexical_rank(query, row.get("content", "")) if use_text else 0.0
            if use_vector and use_text:
                if sim < threshold and rank <= 0:
                    continue
                score = sim * VECTOR_WEIGHT + rank * TEXT_WEIGHT
            elif use_vector:
                if sim < threshold:
                    continue
                score = sim
            else:
                if rank <= 0:
                    continue
                score = rank
            hits.append(self._public(
                row,
                semantic_similarity=round(sim, 6),
                text_rank=round(rank, 6),
                score=round(score, 6),
            ))
        hits.sort(key=lambda h: h["score"], reverse=True)
        return hits[:limit]

    # ------------------------------------------------------------------
    # Stats / health
    # ------------------------------------------------------------------

    async def get_embedding_stats(self, project_id: Optional[str] = None) -> dict:
        return await self._store.embedding_stats(project_id)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("[embedding] Embedding cache cleared")

    def get_stats(self) -> dict:
        return {
            "provider": self.provider_name,
            "model": self.model,
            "batch_size": self._batch_size,
            "fallbacks": self._fallbacks,
            "cache": self._cache.stats(),
        }

    async def health(self) -> ComponentHealth:
        try:
            sample = await self.generate_embedding("test")
            stats = await self.get_embedding_stats()
        except StoreError as exc:
            return ComponentHealth("embedding_service", "error",
                                   f"Embedding service health check failed: {exc}")
        message = "Embedding service is healthy"
        if self._provider is not None and sample.provider != self._provider.name:
            message = f"{self._provider.name} unavailable, using local fallback"
        return ComponentHealth(
            "embedding_service", "ok", message,
            {"provider": sample.provider, "model": sample.model, "statistics": stats},
        )

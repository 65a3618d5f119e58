"""Tests for embedding providers and the embedding service."""

import asyncio
from types import SimpleNamespace

import pytest

from ckg.config import Config
from ckg.errors import ProviderUnavailable
from ckg.models import CodeChunk
from ckg.retrieval.embedding import EmbeddingService, lexical_rank
from ckg.retrieval.providers import (
    LOCAL_DIMENSIONS,
    LOCAL_MODEL,
    OpenAIEmbeddingProvider,
    create_provider,
    local_feature_vector,
)
from factories import symbol_node


class _DownProvider:
    name = "remote"
    model = "remote-model"
    dimensions = 4

    def __init__(self):
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        raise ProviderUnavailable("offline")


class _FixedProvider:
    name = "remote"
    model = "remote-model"
    dimensions = 4

    def __init__(self):
        self.calls = 0

    async def embed(self, texts):
        self.calls += 1
        return [[1.0, 0.0, 0.0, 0.0] for _ in texts]


class _FlakyProvider(_FixedProvider):
    def __init__(self):
        super().__init__()
        self.down = True

    async def embed(self, texts):
        if self.down:
            self.calls += 1
            raise ProviderUnavailable("offline")
        return await super().embed(texts)


class _FakeEmbeddings:
    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = 0

    async def create(self, model, input):
        self.calls += 1
        if self.calls <= self.fail_times:
            raise RuntimeError("rate limited")
        return SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2]) for _ in input])


async def _chunks(store, *texts):
    chunks = []
    for i, text in enumerate(texts):
        node = symbol_node("p1", f"f{i}.py", f"sym{i}")
        await store.create_node(node)
        chunks.append(CodeChunk(node_id=node.id, content=text, chunk_type="function"))
    await store.replace_chunks(chunks)
    return chunks


class TestLocalFeatures:
    def test_vector_is_deterministic(self):
        text = "def foo():\n    if x:\n        return 1"
        a, b = local_feature_vector(text), local_feature_vector(text)
        assert a == b
        assert len(a) == LOCAL_DIMENSIONS

    def test_feature_slots(self):
        vec = local_feature_vector('def handleRequest():\n    """Doc."""\n    for x in y: pass')
        assert vec[3] == 1.0
        assert vec[4] == 1.0
        assert vec[5] > 0
        assert vec[6] > 0
        # python keyword family
        assert vec[9] > 0

    def test_empty_text(self):
        vec = local_feature_vector("")
        assert vec[0] == 0.0
        assert vec[7] == 0.0


class TestProviders:
    def test_local_config_has_no_remote_provider(self):
        assert create_provider(Config()) is None

    def test_openai_without_key_falls_back(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        monkeypatch.delenv("CKG_EMBEDDING_PROVIDER", raising=False)
        assert create_provider(Config({"embedding": {"provider": "openai"}})) is None

    @pytest.mark.asyncio
    async def test_openai_provider_with_injected_client(self):
        fake = _FakeEmbeddings()
        provider = OpenAIEmbeddingProvider(client=SimpleNamespace(embeddings=fake), max_retries=1)
        assert await provider.embed(["a", "b"]) == [[0.1, 0.2], [0.1, 0.2]]
        assert provider.dimensions == 2

    @pytest.mark.asyncio
    async def test_openai_provider_exhausts_retries(self):
        fake = _FakeEmbeddings(fail_times=5)
        provider = OpenAIEmbeddingProvider(client=SimpleNamespace(embeddings=fake), max_retries=1)
        with pytest.raises(ProviderUnavailable):
            await provider.embed(["a"])
        assert fake.calls == 1


class TestGeneration:
    @pytest.mark.asyncio
    async def test_falls_back_to_local_when_provider_is_down(self, store):
        provider = _DownProvider()
        service = EmbeddingService(store, provider=provider)
        result = await service.generate_embedding("def foo(): pass")
        assert result.provider == "local"
        assert result.model == LOCAL_MODEL
        assert result.dimensions == LOCAL_DIMENSIONS
        assert service.get_stats()["fallbacks"] == 1

    @pytest.mark.asyncio
    async def test_cache_avoids_second_call(self, store):
        provider = _FixedProvider()
        service = EmbeddingService(store, provider=provider)
        await service.generate_embedding("same text")
        await service.generate_embedding("same text")
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_fallback_is_not_served_after_recovery(self, store):
        provider = _FlakyProvider()
        service = EmbeddingService(store, provider=provider)
        first = await service.generate_embedding("same text")
        again = await service.generate_embedding("same text")
        assert first.provider == again.provider == "local"
        assert again is first
        assert provider.calls == 2

        provider.down = False
        recovered = await service.generate_embedding("same text")
        assert recovered.provider == "remote"
        assert recovered.model == "remote-model"

    @pytest.mark.asyncio
    async def test_batch_generation_honours_cancel(self, store):
        service = EmbeddingService(store, batch_size=1, batch_delay=0)
        chunks = await _chunks(store, "one", "two", "three")
        cancel = asyncio.Event()
        cancel.set()
        assert await service.batch_generate_embeddings(chunks, cancel, show_progress=False) == []
        results = await service.batch_generate_embeddings(chunks, show_progress=False)
        assert [cid for cid, _ in results] == [c.id for c in chunks]

    @pytest.mark.asyncio
    async def test_embed_missing_only_embeds_new_chunks(self, store):
        service = EmbeddingService(store, batch_delay=0)
        await _chunks(store, "def alpha(): pass", "def beta(): pass")
        assert await service.embed_missing("p1", show_progress=False) == 2
        assert await service.embed_missing("p1", show_progress=False) == 0
        stats = await service.get_embedding_stats("p1")
        assert stats["total_embeddings"] == 2
        assert stats["by_provider"] == {"local": 2}

    @pytest.mark.asyncio
    async def test_reindex_project(self, store):
        service = EmbeddingService(store, batch_delay=0)
        await _chunks(store, "def alpha(): pass")
        assert await service.reindex_project("p1", show_progress=False) == {"processed": 1}
        assert await service.reindex_project("empty", show_progress=False) == {"processed": 0}


class TestSearch:
    @pytest.mark.asyncio
    async def test_search_similar_orders_and_thresholds(self, store):
        service = EmbeddingService(store, provider=_FixedProvider(), batch_delay=0)
        chunks = await _chunks(store, "near", "far")
        await store.upsert_embeddings([
            (chunks[0].id, [1.0, 0.0, 0.0, 0.0], "remote-model", "remote"),
            (chunks[1].id, [0.0, 1.0, 0.0, 0.0], "remote-model", "remote"),
        ])
        hits = await service.find_similar_chunks("anything", "p1", threshold=0.5)
        assert [h["content"] for h in hits] == ["near"]
        assert hits[0]["similarity"] == pytest.approx(1.0)
        assert "vector" not in hits[0]

    @pytest.mark.asyncio
    async def test_text_only_search(self, store):
        service = EmbeddingService(store, batch_delay=0)
        await _chunks(store, "def parse_config(path): ...", "def render(): ...")
        hits = await service.semantic_search("parse config", "p1", use_vector=False)
        assert len(hits) == 1
        assert hits[0]["text_rank"] == 1.0
        assert hits[0]["score"] == 1.0

    @pytest.mark.asyncio
    async def test_hybrid_score(self, store):
        service = EmbeddingService(store, provider=_FixedProvider(), batch_delay=0)
        chunks = await _chunks(store, "load user profile", "unrelated")
        await store.upsert_embeddings([
            (chunks[0].id, [1.0, 0.0, 0.0, 0.0], "remote-model", "remote"),
            (chunks[1].id, [0.0, 1.0, 0.0, 0.0], "remote-model", "remote"),
        ])
        hits = await service.semantic_search("user profile", "p1", threshold=0.9)
        assert len(hits) == 1
        assert hits[0]["score"] == pytest.approx(0.7 * 1.0 + 0.3 * 1.0)

    @pytest.mark.asyncio
    async def test_no_signals_returns_nothing(self, store):
        service = EmbeddingService(store)
        assert await service.semantic_search("x", use_vector=False, use_text=False) == []

    def test_lexical_rank_splits_identifiers(self):
        assert lexical_rank("user profile", "def loadUserProfile(): ...") == 1.0
        assert lexical_rank("user profile", "user_name") == 0.5
        assert lexical_rank("", "anything") == 0.0


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_reports_fallback(self, store):
        service = EmbeddingService(store, provider=_DownProvider())
        health = await service.health()
        assert health.ok
        assert "fallback" in health.message

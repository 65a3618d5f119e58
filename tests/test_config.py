"""Tests for configuration loading."""

import pytest

from ckg.config import Config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("CKG_DB_PATH", "CKG_EMBEDDING_PROVIDER", "CKG_EMBEDDING_BATCH_SIZE",
                "CKG_MAX_CONTEXT_TOKENS", "CKG_SIMILARITY_THRESHOLD", "CKG_LOG_DIR",
                "OPENAI_API_KEY", "OPENAI_BASE_URL"):
        monkeypatch.delenv(key, raising=False)


class TestDefaults:
    def test_defaults_without_yaml(self):
        cfg = Config()
        assert cfg.DB_PATH == ".ckg/graph.db"
        assert cfg.EMBEDDING_PROVIDER == "local"
        assert cfg.SIMILARITY_THRESHOLD == 0.7
        assert cfg.MAX_CONTEXT_TOKENS == 8000
        assert cfg.WEIGHTS == {}
        assert cfg.LOG_DIR == ""
        assert not cfg.openai_configured

    def test_load_missing_file_uses_defaults(self, tmp_path):
        cfg = Config.load(str(tmp_path / "missing.yaml"))
        assert cfg.DB_PATH == ".ckg/graph.db"


class TestPriority:
    def test_yaml_overrides_defaults(self):
        cfg = Config({"db_path": "/tmp/g.db", "max_context_tokens": 2000})
        assert cfg.DB_PATH == "/tmp/g.db"
        assert cfg.MAX_CONTEXT_TOKENS == 2000

    def test_env_overrides_yaml(self, monkeypatch):
        monkeypatch.setenv("CKG_MAX_CONTEXT_TOKENS", "1234")
        cfg = Config({"max_context_tokens": 2000})
        assert cfg.MAX_CONTEXT_TOKENS == 1234

    def test_embedding_section(self, monkeypatch):
        cfg = Config({"embedding": {"provider": "OpenAI", "batch_size": 7}})
        assert cfg.EMBEDDING_PROVIDER == "openai"
        assert cfg.EMBEDDING_BATCH_SIZE == 7
        monkeypatch.setenv("CKG_EMBEDDING_BATCH_SIZE", "3")
        assert Config({"embedding": {"batch_size": 7}}).EMBEDDING_BATCH_SIZE == 3

    def test_openai_configured_needs_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
        assert Config({"embedding": {"provider": "openai"}}).openai_configured
        assert not Config().openai_configured

    def test_weights_keep_only_numbers(self):
        cfg = Config({"weights": {"symbolic": "0.5", "errors": 0.2, "bogus": "high"}})
        assert cfg.WEIGHTS == {"symbolic": 0.5, "errors": 0.2}

    def test_load_reads_yaml_file(self, tmp_path):
        path = tmp_path / ".ckg.yaml"
        path.write_text("db_path: custom.db\nsimilarity_threshold: 0.5\n", encoding="utf-8")
        cfg = Config.load(str(path))
        assert cfg.DB_PATH == "custom.db"
        assert cfg.SIMILARITY_THRESHOLD == 0.5

"""
Configuration: loads settings from .ckg.yaml, environment variables,
and built-in defaults (in that priority order: env > YAML > defaults).
"""

from __future__ import annotations

import os
from typing import Optional

import yaml


_DEFAULTS = {
    "db_path": ".ckg/graph.db",
    "embedding_provider": "local",
    "embedding_model": "text-embedding-ada-002",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "embedding_batch_size": 100,
    "embedding_batch_delay": 1.0,
    "embedding_timeout": 30.0,
    "embedding_max_retries": 3,
    "embedding_cache_size": 10000,
    "similarity_threshold": 0.7,
    "cache_ttl_seconds": 300,
    "cache_max_size": 5000,
    "max_context_tokens": 8000,
    "watch_debounce_seconds": 0.5,
    "chunk_batch_size": 50,
    "log_dir": "",
    "weights": {},
}

# Config file search locations
_CONFIG_FILENAMES = [".ckg.yaml", ".ckg.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """CKG configuration.

    Settings are resolved in priority order:
    1. Environment variables (``CKG_*``)
    2. .ckg.yaml config file
    3. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        self.DB_PATH = _get("CKG_DB_PATH", "db_path", _DEFAULTS["db_path"])

        # Embeddings
        embedding = yd.get("embedding", {}) if isinstance(yd.get("embedding"), dict) else {}
        ed = {**yd, **embedding}

        def _get_embed(env_key: str, key: str, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            val = ed.get(key.replace("embedding_", ""), ed.get(key))
            if val is not None:
                return cast(val)
            return _DEFAULTS[key]

        self.EMBEDDING_PROVIDER = _get_embed("CKG_EMBEDDING_PROVIDER", "embedding_provider").lower()
        self.EMBEDDING_MODEL = _get_embed("CKG_EMBEDDING_MODEL", "embedding_model")
        self.EMBEDDING_BATCH_SIZE = _get_embed("CKG_EMBEDDING_BATCH_SIZE",
                                               "embedding_batch_size", cast=int)
        self.EMBEDDING_BATCH_DELAY = _get_embed("CKG_EMBEDDING_BATCH_DELAY",
                                                "embedding_batch_delay", cast=float)
        self.EMBEDDING_TIMEOUT = _get_embed("CKG_EMBEDDING_TIMEOUT",
                                            "embedding_timeout", cast=float)
        self.EMBEDDING_MAX_RETRIES = _get_embed("CKG_EMBEDDING_MAX_RETRIES",
                                                "embedding_max_retries", cast=int)
        self.EMBEDDING_CACHE_SIZE = _get_embed("CKG_EMBEDDING_CACHE_SIZE",
                                               "embedding_cache_size", cast=int)

        # OpenAI / cloud provider
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

        # Retrieval
        self.SIMILARITY_THRESHOLD = _get("CKG_SIMILARITY_THRESHOLD", "similarity_threshold",
                                         _DEFAULTS["similarity_threshold"], cast=float)
        self.MAX_CONTEXT_TOKENS = _get("CKG_MAX_CONTEXT_TOKENS", "max_context_tokens",
                                       _DEFAULTS["max_context_tokens"], cast=int)
        self.CACHE_TTL_SECONDS = _get("CKG_CACHE_TTL_SECONDS", "cache_ttl_seconds",
                                      _DEFAULTS["cache_ttl_seconds"], cast=float)
        self.CACHE_MAX_SIZE = _get("CKG_CACHE_MAX_SIZE", "cache_max_size",
                                   _DEFAULTS["cache_max_size"], cast=int)

        # Rerank weight overrides: {symbolic, semantic, recency, relevance, errors}
        self.WEIGHTS: dict[str, float] = {}
        weights_section = yd.get("weights", _DEFAULTS["weights"])
        if isinstance(weights_section, dict):
            for key, value in weights_section.items():
                try:
                    self.WEIGHTS[str(key)] = float(value)
                except (TypeError, ValueError):
                    continue

        # Indexing
        self.WATCH_DEBOUNCE_SECONDS = _get("CKG_WATCH_DEBOUNCE_SECONDS",
                                           "watch_debounce_seconds",
                                           _DEFAULTS["watch_debounce_seconds"], cast=float)
        self.CHUNK_BATCH_SIZE = _get("CKG_CHUNK_BATCH_SIZE", "chunk_batch_size",
                                     _DEFAULTS["chunk_batch_size"], cast=int)

        # Opt-in file logging
        self.LOG_DIR = _get("CKG_LOG_DIR", "log_dir", _DEFAULTS["log_dir"])

    @property
    def openai_configured(self) -> bool:
        return self.EMBEDDING_PROVIDER == "openai" and bool(self.OPENAI_API_KEY)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)

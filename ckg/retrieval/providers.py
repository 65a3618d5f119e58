"""
Embedding providers.

The set of providers is closed:

* :class:`OpenAIEmbeddingProvider`: remote embeddings through the
  ``openai`` async client (``pip install 'ckg[semantic]'``).
* :class:`LocalFeatureProvider`: a deterministic 384-dimensional vector
  computed from text features.  Always available; used as the fallback
  whenever the remote provider is unconfigured or failing.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
from typing import TYPE_CHECKING, Optional, Protocol, Sequence

from ..errors import ProviderUnavailable

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_OPENAI_MODEL = "text-embedding-ada-002"
LOCAL_MODEL = "local-text-features"
LOCAL_DIMENSIONS = 384

_CODE_RE = re.compile(r"```|function|class|def |fn |struct|interface")
_DOC_RE = re.compile(r'/\*\*|"""|##')
_CONTROL_FLOW_RE = re.compile(r"if|for|while|switch|try|catch")
_CAMEL_RE = re.compile(r"[a-z][A-Z]")
_UPPER_RE = re.compile(r"[A-Z]")

# Keyword families, in vector order (slots 8-12)
_LANGUAGE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "javascript": ("function", "class", "const", "let", "var", "import", "export"),
    "python": ("def", "class", "import", "from", "if", "for", "while"),
    "go": ("func", "type", "struct", "interface", "package", "import"),
    "rust": ("fn", "struct", "trait", "impl", "use", "mod"),
    "java": ("class", "interface", "public", "private", "static", "void"),
}
_KEYWORD_RES = {
    lang: [re.compile(rf"\b{w}\b", re.IGNORECASE) for w in words]
    for lang, words in _LANGUAGE_KEYWORDS.items()
}


class EmbeddingProvider(Protocol):
    """Anything that turns texts into vectors."""

    name: str
    model: str
    dimensions: Optional[int]

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        ...


# ---------------------------------------------------------------------------
# Local feature provider
# ---------------------------------------------------------------------------

def local_feature_vector(text: str) -> list[float]:
    """
    Compute the deterministic 384-dimensional feature vector for *text*.

    Slots 0-7 hold length, word, line, code marker, doc marker,
    control-flow, camelCase and uppercase-ratio features; 8-12 hold
    keyword counts per language family; the rest are filled with
    ``sin(i * len * 0.001) * 0.1``.
    """
    length = len(text)
    vector = [0.0] * LOCAL_DIMENSIONS
    vector[0] = min(length / 10000, 1.0)
    vector[1] = min(len(re.split(r"\s+", text)) / 1000, 1.0)
    vector[2] = min(len(text.split("\n")) / 100, 1.0)
    vector[3] = 1.0 if _CODE_RE.search(text) else 0.0
    vector[4] = 1.0 if _DOC_RE.search(text) else 0.0
    vector[5] = min(len(_CONTROL_FLOW_RE.findall(text)) / 20, 1.0)
    vector[6] = min(len(_CAMEL_RE.findall(text)) / 50, 1.0)
    vector[7] = len(_UPPER_RE.findall(text)) / length if length else 0.0

    pos = 8
    for patterns in _KEYWORD_RES.values():
        count = sum(len(p.findall(text)) for p in patterns)
        vector[pos] = min(count / 10, 1.0)
        pos += 1

    for i in range(pos, LOCAL_DIMENSIONS):
        vector[i] = math.sin(i * length * 0.001) * 0.1
    return vector


class LocalFeatureProvider:
    """Pure-function embedding provider; never fails."""

    name = "local"
    model = LOCAL_MODEL
    dimensions = LOCAL_DIMENSIONS

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        return [local_feature_vector(t) for t in texts]


# ---------------------------------------------------------------------------
# OpenAI provider
# ---------------------------------------------------------------------------

class OpenAIEmbeddingProvider:
    """
    Embeddings from the OpenAI API.

    Parameters
    ----------
    api_key:
        OpenAI API key.
    model:
        Embedding model name.
    base_url:
        API base URL (for compatible endpoints).
    timeout:
        Per-call timeout in seconds.
    max_retries:
        Attempts per call; back-off is ``2 ** attempt`` seconds.
    client:
        Pre-built ``AsyncOpenAI``-compatible client (tests inject a fake).
    """

    name = "openai"

    def __init__(
        self,
        api_key: str = "",
        model: str = DEFAULT_OPENAI_MODEL,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        client=None,
    ) -> None:
        self.model = model
        self.dimensions: Optional[int] = None
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._client = client or self._make_client(api_key, base_url)

    @staticmethod
    def _make_client(api_key: str, base_url: Optional[str]):
        """Return an ``openai.AsyncOpenAI`` client."""
        if not api_key:
            raise ProviderUnavailable("OPENAI_API_KEY is not set")
        try:
            import openai  # type: ignore
        except ImportError as exc:
            raise ProviderUnavailable(
                "openai package is required for remote embeddings. "
                "Install it with: pip install 'ckg[semantic]'"
            ) from exc
        return openai.AsyncOpenAI(api_key=api_key, base_url=base_url or None)

    async def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed *texts* in one API call.

        Retries up to ``max_retries`` times with exponential back-off.

        Raises
        ------
        ProviderUnavailable
            If all retries are exhausted.
        """
        for attempt in range(1, self._max_retries + 1):
            try:
                response = await asyncio.wait_for(
                    self._client.embeddings.create(model=self.model, input=list(texts)),
                    timeout=self._timeout,
                )
                vectors = [list(item.embedding) for item in response.data]
                if vectors:
                    self.dimensions = len(vectors[0])
                return vectors
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if attempt < self._max_retries:
                    wait = 2 ** attempt
                    logger.warning(
                        "[embedding] OpenAI error (attempt %d/%d): %s, retrying in %ds",
                        attempt, self._max_retries, exc, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise ProviderUnavailable(
                        f"OpenAI embeddings failed after {self._max_retries} attempts: {exc}"
                    ) from exc
        return []  # unreachable


def create_provider(config: "Config") -> Optional[EmbeddingProvider]:
    """
    Build the configured remote provider.

    Returns None when the configuration selects the local provider or the
    remote one cannot be constructed; the embedding service then uses
    :class:`LocalFeatureProvider`.
    """
    if config.EMBEDDING_PROVIDER != "openai":
        return None
    try:
        return OpenAIEmbeddingProvider(
            api_key=config.OPENAI_API_KEY,
            model=config.EMBEDDING_MODEL,
            base_url=config.OPENAI_BASE_URL,
            timeout=config.EMBEDDING_TIMEOUT,
            max_retries=config.EMBEDDING_MAX_RETRIES,
        )
    except ProviderUnavailable as exc:
        logger.warning("[embedding] Remote provider unavailable, using local features: %s", exc)
        return None

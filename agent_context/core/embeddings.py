"""Embedding providers: sentence-transformers (local) and OpenAI-compatible HTTP."""

from __future__ import annotations

import importlib.util
import logging
import os
from typing import Callable

from ..providers.base import post_with_retry
from ..types import EmbeddingConfig, EmbeddingProvider, EmbeddingProviderError

logger = logging.getLogger(__name__)

_EMBED_NOT_LOADED = object()  # sentinel for lazy model loading


class CallableEmbeddings:
    """Adapts a batch ``embed(texts) -> vectors`` function to the provider protocol."""

    def __init__(self, embed_fn: Callable[[list[str]], list[list[float]]]) -> None:
        self._embed = embed_fn

    def embed_query(self, text: str) -> list[float]:
        return self.embed_documents([text])[0]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        return [list(v) for v in self._embed(texts)]


class SentenceTransformerEmbeddings(CallableEmbeddings):
    """Local embeddings. The model is loaded on first use."""

    def __init__(self, model_name: str = "all-MiniLM-L6-v2") -> None:
        self.model_name = model_name
        self._embed = _EMBED_NOT_LOADED

    def _load_model(self) -> Callable[[list[str]], list[list[float]]]:
        """Load sentence-transformers model. Raises ImportError if not installed."""
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers not installed. "
                "Install with: pip install agent-context[embeddings]"
            )
        model = SentenceTransformer(self.model_name)
        logger.info("Loaded embedding model %s", self.model_name)

        def embed(texts: list[str]) -> list[list[float]]:
            return model.encode(texts, convert_to_numpy=True, show_progress_bar=False).tolist()

        return embed

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        if self._embed is _EMBED_NOT_LOADED:
            try:
                self._embed = self._load_model()
            except ImportError as e:
                logger.warning("%s; embeddings disabled", e)
                self._embed = None
        if self._embed is None:
            raise EmbeddingProviderError("sentence-transformers not installed", "sentence-transformers")
        return super().embed_documents(texts)


class OpenAIEmbeddings:
    """Any OpenAI-compatible ``/embeddings`` endpoint (OpenAI, Ollama, vLLM)."""

    _timeout = 60.0

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:11434/v1",
        model: str = "nomic-embed-text",
        api_key: str = "not-needed",
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.api_key = api_key

    def embed_query(self, text: str) -> list[float]:
        return self.embed_documents([text])[0]

    def embed_documents(self, texts: list[str]) -> list[list[float]]:
        data = post_with_retry(
            f"{self.base_url}/embeddings",
            {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {self.api_key}",
            },
            {"model": self.model, "input": texts},
            provider="openai_embeddings",
            timeout=self._timeout,
            error_cls=EmbeddingProviderError,
        )
        items = sorted(data.get("data", []), key=lambda d: d.get("index", 0))
        if len(items) != len(texts):
            raise EmbeddingProviderError(
                f"Expected {len(texts)} embeddings, got {len(items)}",
                provider="openai_embeddings",
            )
        return [list(item["embedding"]) for item in items]


def build_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider | None:
    """Build the configured provider. ``"none"`` disables embeddings."""
    provider = config.provider
    if provider == "none":
        return None
    if provider == "sentence-transformers":
        if importlib.util.find_spec("sentence_transformers") is None:
            logger.warning(
                "sentence-transformers not installed, memory retrieval disabled "
                "(install agent-context[embeddings] or set embeddings.provider)"
            )
            return None
        return SentenceTransformerEmbeddings(config.model)
    if provider == "openai":
        return OpenAIEmbeddings(
            base_url=config.base_url,
            model=config.model,
            api_key=os.environ.get(config.api_key_env, "") or "not-needed",
        )
    raise ValueError(f"Unknown embedding provider: {provider}")

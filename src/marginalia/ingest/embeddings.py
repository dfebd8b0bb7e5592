"""Embedding providers and their lazy, memoized loader.

A provider turns texts into fixed-length, L2-normalised vectors and carries a
``model`` tag. Two implementations:

- ``SentenceTransformerProvider``: in-process model (optional ``local`` extra);
- ``LiteLLMEmbeddingProvider``: any LiteLLM embedding model.

Providers are optional. ``EmbeddingProviderLoader`` loads one on first use and
caches the outcome; a failed load is cached as ``None`` and never retried, and
every caller treats ``None`` as "lexical search only".
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
from collections.abc import Sequence
from typing import Callable, Protocol, runtime_checkable

import litellm
import numpy as np

logger = logging.getLogger(__name__)

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True

LOCAL_DEFAULT_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
LITELLM_DEFAULT_MODEL = "openai/text-embedding-3-small"

_PROVIDER_ENV_KEYS: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "ollama": None,  # Local, no key required
}


@runtime_checkable
class EmbeddingProvider(Protocol):
    model: str

    def embed(self, texts: Sequence[str]) -> list[list[float]]: ...


ProviderFactory = Callable[[], EmbeddingProvider]


class SentenceTransformerProvider:
    """In-process sentence-transformers model, mean pooled and normalised."""

    def __init__(self, model: str = LOCAL_DEFAULT_MODEL, device: str = "cpu", batch_size: int = 32) -> None:
        from sentence_transformers import SentenceTransformer

        logger.info("Loading embedding model: %s", model)
        self.model = model
        self._batch_size = batch_size
        self._encoder = SentenceTransformer(model, device=device)

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        vectors = self._encoder.encode(
            list(texts),
            batch_size=self._batch_size,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return vectors.tolist()


class LiteLLMEmbeddingProvider:
    """Embeddings through ``litellm.embedding()``; vectors are re-normalised locally."""

    def __init__(self, model: str = LITELLM_DEFAULT_MODEL) -> None:
        self.model = model

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        response = litellm.embedding(model=self.model, input=list(texts))
        return [_normalize(item["embedding"]) for item in response.data]

    def check_api_key(self) -> None:
        """Raise RuntimeError if no API key is available for the model's provider."""
        provider = self.model.split("/")[0].lower() if "/" in self.model else ""
        required_env = _PROVIDER_ENV_KEYS.get(provider)
        if required_env and not os.environ.get(required_env):
            raise RuntimeError(
                f"No API key found for provider '{provider}'. "
                f"Set the {required_env} environment variable."
            )


def load_litellm_provider(model: str = LITELLM_DEFAULT_MODEL) -> LiteLLMEmbeddingProvider:
    provider = LiteLLMEmbeddingProvider(model)
    provider.check_api_key()
    return provider


def provider_factory(kind: str, model: str | None = None) -> ProviderFactory | None:
    """Return a factory for the configured provider *kind*, or None when disabled.

    Args:
        kind: ``local``, ``litellm`` or ``none``.
        model: Model identifier; each kind has its own default.

    Raises:
        ValueError: If *kind* is unknown.
    """
    if kind == "none":
        return None
    if kind == "local":
        return functools.partial(SentenceTransformerProvider, model or LOCAL_DEFAULT_MODEL)
    if kind == "litellm":
        return functools.partial(load_litellm_provider, model or LITELLM_DEFAULT_MODEL)
    raise ValueError(f"Unknown embedding provider '{kind}' (expected local, litellm or none)")


class EmbeddingProviderLoader:
    """Memoized, lazy access to an optional embedding provider.

    The first ``get()`` runs the factory in a worker thread; concurrent
    callers wait for that single load. The result, including a failure cached
    as ``None``, is returned by every later call.
    """

    def __init__(self, factory: ProviderFactory | None) -> None:
        self._factory = factory
        self._provider: EmbeddingProvider | None = None
        self._loaded = False
        self._lock = asyncio.Lock()

    @classmethod
    def resolved(cls, provider: EmbeddingProvider | None) -> EmbeddingProviderLoader:
        """Return a loader that already holds *provider* (or no provider)."""
        loader = cls(None)
        loader._provider = provider
        loader._loaded = True
        return loader

    @property
    def loaded(self) -> bool:
        return self._loaded

    async def get(self) -> EmbeddingProvider | None:
        if self._loaded:
            return self._provider
        async with self._lock:
            if not self._loaded:
                self._provider = await self._load()
                self._loaded = True
        return self._provider

    async def _load(self) -> EmbeddingProvider | None:
        if self._factory is None:
            return None
        try:
            provider = await asyncio.to_thread(self._factory)
        except Exception as exc:
            logger.warning(
                "Embedding provider unavailable (%s: %s); search stays lexical-only.",
                type(exc).__name__,
                exc,
            )
            return None
        logger.info("Embedding provider ready: %s", provider.model)
        return provider


def _normalize(vector: Sequence[float]) -> list[float]:
    arr = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(arr)
    if norm == 0.0:
        return arr.tolist()
    return (arr / norm).tolist()

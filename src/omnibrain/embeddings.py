"""Pluggable embedding providers for OmniBrain.

Each provider implements a simple interface: given text, return a vector of
floats.  All providers talk to a remote HTTP API using only the standard
library.  :func:`create_embedding_service` picks a provider from the
configured API keys; when no key is configured there is no service and the
engine falls back to lexical search.
"""

from __future__ import annotations

import json
import logging
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 60


def _post_json(
    url: str,
    payload: dict[str, Any],
    headers: dict[str, str],
    provider: str,
    timeout: float = _DEFAULT_TIMEOUT,
) -> Any:
    """POST *payload* as JSON and return the decoded response body.

    Raises:
        RuntimeError: If the API answers with an HTTP error status.
        ConnectionError: If the API cannot be reached.
    """
    req = urllib.request.Request(
        url,
        data=json.dumps(payload).encode(),
        headers={"Content-Type": "application/json", **headers},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except urllib.error.HTTPError as exc:
        body = exc.read().decode() if exc.fp else ""
        raise RuntimeError(f"{provider} embeddings failed ({exc.code}): {body}") from exc
    except urllib.error.URLError as exc:
        raise ConnectionError(f"Could not connect to {provider} API at {url}: {exc}") from exc


# ---------------------------------------------------------------------------
# Abstract base
# ---------------------------------------------------------------------------


class EmbeddingProvider(ABC):
    """Abstract base class for all embedding providers.

    Subclasses must implement :meth:`embed`.  A default
    :meth:`embed_batch` calls :meth:`embed` in a loop; providers whose API
    has a batch endpoint override it.
    """

    #: Dimensionality of the vectors this provider produces.
    dimension: int = 0

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable provider label, e.g. ``"OpenAI (text-embedding-3-small)"``."""

    @abstractmethod
    def embed(self, text: str) -> list[float]:
        """Compute the embedding vector for a single piece of text.

        Args:
            text: The input text to embed.

        Returns:
            A list of floats representing the embedding vector.
        """

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings for multiple texts, one call per text.

        Args:
            texts: A list of input texts.

        Returns:
            A list of embedding vectors, one per input text.
        """
        return [self.embed(t) for t in texts]


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class GeminiEmbedding(EmbeddingProvider):
    """Embedding provider using the Google Gemini API.

    The API has no batch endpoint for this model, so :meth:`embed_batch`
    issues one request per text, sequentially.

    Args:
        api_key: Gemini API key.
        model: Gemini embedding model name.
        base_url: API base URL.
    """

    dimension = 768

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-004",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
    ) -> None:
        if not api_key:
            raise ValueError("A Gemini API key is required (set GEMINI_API_KEY).")
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return f"Gemini ({self._model})"

    def embed(self, text: str) -> list[float]:
        """Compute the embedding via the ``embedContent`` endpoint.

        Returns an empty list (and logs a warning) if the API answers
        without any values.
        """
        data = _post_json(
            f"{self._base_url}/models/{self._model}:embedContent",
            {
                "model": f"models/{self._model}",
                "content": {"parts": [{"text": text}]},
            },
            {"x-goog-api-key": self._api_key},
            provider="Gemini",
        )
        values = (data.get("embedding") or {}).get("values") if isinstance(data, dict) else None
        if not values:
            logger.warning("Empty embedding returned from Gemini API")
            return []
        return values

    def __repr__(self) -> str:
        return f"GeminiEmbedding(model={self._model!r})"


# ---------------------------------------------------------------------------
# OpenAI (and OpenAI-compatible servers)
# ---------------------------------------------------------------------------


class OpenAIEmbedding(EmbeddingProvider):
    """Embedding provider using the OpenAI Embeddings API.

    Any server implementing the same ``/embeddings`` contract (Azure,
    Ollama, LM Studio, vLLM, ...) can be used by pointing *base_url* at it.

    Args:
        api_key: API key sent as a bearer token.
        model: Embedding model name.
        base_url: API base URL.  A trailing slash is ignored.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1",
    ) -> None:
        if not api_key:
            raise ValueError("An OpenAI API key is required (set OPENAI_API_KEY).")
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")
        # text-embedding-3-large = 3072; 3-small and ada-002 = 1536
        self.dimension = 3072 if "3-large" in model else 1536

    @property
    def name(self) -> str:
        return f"OpenAI ({self._model})"

    @property
    def base_url(self) -> str:
        return self._base_url

    def _request(self, payload_input: str | list[str]) -> list[dict[str, Any]]:
        data = _post_json(
            f"{self._base_url}/embeddings",
            {"model": self._model, "input": payload_input},
            {"Authorization": f"Bearer {self._api_key}"},
            provider="OpenAI",
        )
        return list(data.get("data", []))

    def embed(self, text: str) -> list[float]:
        """Compute the embedding for a single text."""
        items = self._request(text)
        if not items:
            raise RuntimeError("OpenAI embeddings response contained no data")
        return items[0]["embedding"]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings for multiple texts in one request.

        Returns:
            List of embedding vectors, in the same order as the inputs.
        """
        if not texts:
            return []
        # The response is not guaranteed to preserve submission order.
        items = sorted(self._request(texts), key=lambda d: d["index"])
        return [item["embedding"] for item in items]

    def __repr__(self) -> str:
        return f"OpenAIEmbedding(model={self._model!r}, base_url={self._base_url!r})"


# ---------------------------------------------------------------------------
# Cohere
# ---------------------------------------------------------------------------


class CohereEmbedding(EmbeddingProvider):
    """Embedding provider using the Cohere v2 ``embed`` endpoint.

    Args:
        api_key: Cohere API key.
        model: Cohere embedding model name.
        base_url: API base URL.
    """

    dimension = 1024

    def __init__(
        self,
        api_key: str,
        model: str = "embed-english-v3.0",
        base_url: str = "https://api.cohere.com/v2",
    ) -> None:
        if not api_key:
            raise ValueError("A Cohere API key is required (set COHERE_API_KEY).")
        self._api_key = api_key
        self._model = model
        self._base_url = base_url.rstrip("/")

    @property
    def name(self) -> str:
        return f"Cohere ({self._model})"

    def embed(self, text: str) -> list[float]:
        """Compute the embedding for one text via the batch endpoint."""
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Compute embeddings for multiple texts in one request."""
        if not texts:
            return []
        data = _post_json(
            f"{self._base_url}/embed",
            {
                "model": self._model,
                "texts": texts,
                "input_type": "search_document",
                "embedding_types": ["float"],
            },
            {"Authorization": f"Bearer {self._api_key}"},
            provider="Cohere",
        )
        embeddings = data.get("embeddings") or {}
        vectors = embeddings.get("float") if isinstance(embeddings, dict) else embeddings
        if not isinstance(vectors, list) or len(vectors) != len(texts):
            raise RuntimeError(f"Cohere returned an unexpected response: {data}")
        return vectors

    def __repr__(self) -> str:
        return f"CohereEmbedding(model={self._model!r})"


# ---------------------------------------------------------------------------
# Service wrapper
# ---------------------------------------------------------------------------


class EmbeddingService:
    """Front for the selected provider.

    Failures are logged with the provider name and then re-raised; the
    caller decides whether to continue without a vector.

    Args:
        provider: The provider doing the work.
    """

    def __init__(self, provider: EmbeddingProvider) -> None:
        self._provider = provider
        logger.info(
            "Embedding service initialised: %s (%dd)", provider.name, provider.dimension
        )

    @property
    def provider(self) -> EmbeddingProvider:
        return self._provider

    @property
    def provider_name(self) -> str:
        return self._provider.name

    @property
    def dimension(self) -> int:
        return self._provider.dimension

    def embed(self, text: str) -> list[float]:
        try:
            return self._provider.embed(text)
        except Exception as exc:
            logger.error("Embedding generation failed (provider=%s): %s", self.provider_name, exc)
            raise

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            return self._provider.embed_batch(texts)
        except Exception as exc:
            logger.error("Batch embedding failed (provider=%s): %s", self.provider_name, exc)
            raise

    def __repr__(self) -> str:
        return f"EmbeddingService({self._provider!r})"


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _gemini_from_config(config: Config) -> EmbeddingProvider:
    return GeminiEmbedding(api_key=config.gemini_api_key or "")


def _openai_from_config(config: Config) -> EmbeddingProvider:
    kwargs: dict[str, Any] = {}
    if config.openai_model:
        kwargs["model"] = config.openai_model
    if config.openai_base_url:
        kwargs["base_url"] = config.openai_base_url
    return OpenAIEmbedding(api_key=config.openai_api_key or "", **kwargs)


def _cohere_from_config(config: Config) -> EmbeddingProvider:
    kwargs: dict[str, Any] = {}
    if config.cohere_model:
        kwargs["model"] = config.cohere_model
    return CohereEmbedding(api_key=config.cohere_api_key or "", **kwargs)


# Auto-detection order: the first provider whose key is configured wins.
_PROVIDER_PRIORITY: list[
    tuple[str, Callable[[Config], bool], Callable[[Config], EmbeddingProvider]]
] = [
    ("gemini", lambda c: bool(c.gemini_api_key), _gemini_from_config),
    ("openai", lambda c: bool(c.openai_api_key), _openai_from_config),
    ("cohere", lambda c: bool(c.cohere_api_key), _cohere_from_config),
]

# Values accepted for an explicit provider choice.
_EXPLICIT_NAMES: dict[str, str] = {
    "gemini": "gemini",
    "openai": "openai",
    "openai-compatible": "openai",
    "cohere": "cohere",
}


def create_embedding_service(config: Config) -> EmbeddingService | None:
    """Create an :class:`EmbeddingService` from configuration.

    An explicit ``embedding_provider`` is honoured when that provider's key
    is set.  Otherwise providers are tried in priority order (Gemini,
    OpenAI, Cohere) and the first one with a key is used.

    Args:
        config: Loaded configuration.

    Returns:
        The service, or ``None`` when no embedding key is configured.
    """
    explicit = _EXPLICIT_NAMES.get((config.embedding_provider or "").strip().lower())
    if explicit is not None:
        for name, available, build in _PROVIDER_PRIORITY:
            if name == explicit and available(config):
                return EmbeddingService(build(config))
        logger.warning(
            "Embedding provider %r requested but its API key is not set; auto-detecting",
            config.embedding_provider,
        )

    for _name, available, build in _PROVIDER_PRIORITY:
        if available(config):
            return EmbeddingService(build(config))

    logger.info("No embedding API key set -- semantic search disabled (using smart search)")
    return None


_PROVIDER_ALIASES: dict[str, type[EmbeddingProvider]] = {
    "gemini": GeminiEmbedding,
    "openai": OpenAIEmbedding,
    "openai-compatible": OpenAIEmbedding,
    "cohere": CohereEmbedding,
}


def create_embedding_provider(name: str, **kwargs: Any) -> EmbeddingProvider:
    """Create an embedding provider by name.

    Args:
        name: ``"gemini"``, ``"openai"``, ``"openai-compatible"`` or
            ``"cohere"``.
        **kwargs: Forwarded to the provider's constructor.

    Returns:
        An :class:`EmbeddingProvider` instance.

    Raises:
        ValueError: If *name* is not a recognised provider.

    Examples::

        provider = create_embedding_provider("openai", api_key="sk-...")
        provider = create_embedding_provider(
            "openai-compatible", api_key="ollama", base_url="http://localhost:11434/v1"
        )
    """
    cls = _PROVIDER_ALIASES.get(name.lower().strip())
    if cls is None:
        supported = ", ".join(sorted(_PROVIDER_ALIASES))
        raise ValueError(
            f"Unknown embedding provider {name!r}. Supported providers: {supported}"
        )
    return cls(**kwargs)

"""Tests for embedding providers and provider selection.

HTTP calls are intercepted by monkeypatching ``urllib.request.urlopen`` so
no test touches the network.
"""

from __future__ import annotations

import io
import json
import urllib.error
import urllib.request

import pytest

from omnibrain.config import Config
from omnibrain.embeddings import (
    CohereEmbedding,
    EmbeddingService,
    GeminiEmbedding,
    OpenAIEmbedding,
    create_embedding_provider,
    create_embedding_service,
)

# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


class _FakeResponse:
    def __init__(self, payload):
        self._body = json.dumps(payload).encode()

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


@pytest.fixture()
def http(monkeypatch):
    """Queue JSON responses and capture outgoing requests."""

    class _Http:
        def __init__(self):
            self.requests = []
            self.responses = []

        def reply(self, *payloads):
            self.responses.extend(payloads)

        def urlopen(self, req, timeout=None):
            self.requests.append(req)
            response = self.responses.pop(0)
            if isinstance(response, Exception):
                raise response
            return _FakeResponse(response)

        def body(self, index=0):
            return json.loads(self.requests[index].data)

    fake = _Http()
    monkeypatch.setattr(urllib.request, "urlopen", fake.urlopen)
    return fake


# ------------------------------------------------------------------
# Gemini
# ------------------------------------------------------------------


def test_gemini_embed_request(http):
    http.reply({"embedding": {"values": [0.1, 0.2, 0.3]}})
    provider = GeminiEmbedding(api_key="g-key")
    assert provider.embed("hello") == [0.1, 0.2, 0.3]

    req = http.requests[0]
    assert req.full_url.endswith("/models/text-embedding-004:embedContent")
    assert req.get_header("X-goog-api-key") == "g-key"
    assert http.body() == {
        "model": "models/text-embedding-004",
        "content": {"parts": [{"text": "hello"}]},
    }
    assert provider.dimension == 768


def test_gemini_empty_values_give_empty_vector(http):
    http.reply({"embedding": {"values": []}})
    assert GeminiEmbedding(api_key="g-key").embed("hello") == []


def test_gemini_batch_is_one_request_per_text(http):
    http.reply({"embedding": {"values": [1.0]}}, {"embedding": {"values": [2.0]}})
    vectors = GeminiEmbedding(api_key="g-key").embed_batch(["a", "b"])
    assert vectors == [[1.0], [2.0]]
    assert [http.body(i)["content"]["parts"][0]["text"] for i in range(2)] == ["a", "b"]


# ------------------------------------------------------------------
# OpenAI
# ------------------------------------------------------------------


def test_openai_batch_reorders_by_index(http):
    http.reply(
        {
            "data": [
                {"index": 1, "embedding": [2.0]},
                {"index": 0, "embedding": [1.0]},
            ]
        }
    )
    provider = OpenAIEmbedding(api_key="sk-test")
    assert provider.embed_batch(["first", "second"]) == [[1.0], [2.0]]
    assert http.body() == {"model": "text-embedding-3-small", "input": ["first", "second"]}
    assert http.requests[0].get_header("Authorization") == "Bearer sk-test"


def test_openai_compatible_base_url(http):
    http.reply({"data": [{"index": 0, "embedding": [0.5]}]})
    provider = OpenAIEmbedding(
        api_key="ollama", model="nomic-embed-text", base_url="http://localhost:11434/v1/"
    )
    assert provider.embed("hi") == [0.5]
    assert http.requests[0].full_url == "http://localhost:11434/v1/embeddings"
    assert provider.base_url == "http://localhost:11434/v1"


def test_openai_dimension_depends_on_model():
    assert OpenAIEmbedding(api_key="k").dimension == 1536
    assert OpenAIEmbedding(api_key="k", model="text-embedding-3-large").dimension == 3072


def test_openai_empty_response_raises(http):
    http.reply({"data": []})
    with pytest.raises(RuntimeError):
        OpenAIEmbedding(api_key="k").embed("hi")


# ------------------------------------------------------------------
# Cohere
# ------------------------------------------------------------------


def test_cohere_batch_request(http):
    http.reply({"embeddings": {"float": [[1.0, 0.0], [0.0, 1.0]]}})
    provider = CohereEmbedding(api_key="co-key")
    assert provider.embed_batch(["a", "b"]) == [[1.0, 0.0], [0.0, 1.0]]
    assert http.requests[0].full_url == "https://api.cohere.com/v2/embed"
    assert http.body() == {
        "model": "embed-english-v3.0",
        "texts": ["a", "b"],
        "input_type": "search_document",
        "embedding_types": ["float"],
    }


def test_cohere_count_mismatch_raises(http):
    http.reply({"embeddings": {"float": [[1.0]]}})
    with pytest.raises(RuntimeError):
        CohereEmbedding(api_key="co-key").embed_batch(["a", "b"])


# ------------------------------------------------------------------
# Transport errors
# ------------------------------------------------------------------


def test_http_error_becomes_runtime_error(http):
    http.reply(
        urllib.error.HTTPError(
            "https://api.openai.com/v1/embeddings", 401, "Unauthorized", None, io.BytesIO(b"bad key")
        )
    )
    with pytest.raises(RuntimeError, match="401"):
        OpenAIEmbedding(api_key="k").embed("hi")


def test_unreachable_api_becomes_connection_error(http):
    http.reply(urllib.error.URLError("connection refused"))
    with pytest.raises(ConnectionError):
        GeminiEmbedding(api_key="k").embed("hi")


def test_service_reraises_provider_failures(http):
    http.reply(urllib.error.URLError("down"))
    service = EmbeddingService(GeminiEmbedding(api_key="k"))
    with pytest.raises(ConnectionError):
        service.embed("hi")


def test_service_batch_of_nothing_makes_no_request(http):
    service = EmbeddingService(OpenAIEmbedding(api_key="k"))
    assert service.embed_batch([]) == []
    assert http.requests == []


# ------------------------------------------------------------------
# Provider selection
# ------------------------------------------------------------------


def test_no_keys_means_no_service():
    assert create_embedding_service(Config(user_id="u")) is None


def test_gemini_has_priority():
    config = Config(user_id="u", gemini_api_key="g", openai_api_key="o", cohere_api_key="c")
    service = create_embedding_service(config)
    assert isinstance(service.provider, GeminiEmbedding)


def test_openai_before_cohere():
    service = create_embedding_service(Config(user_id="u", openai_api_key="o", cohere_api_key="c"))
    assert isinstance(service.provider, OpenAIEmbedding)


def test_explicit_provider_overrides_priority():
    config = Config(user_id="u", gemini_api_key="g", cohere_api_key="c", embedding_provider="cohere")
    assert isinstance(create_embedding_service(config).provider, CohereEmbedding)


def test_explicit_provider_without_key_falls_back():
    config = Config(user_id="u", gemini_api_key="g", embedding_provider="openai")
    assert isinstance(create_embedding_service(config).provider, GeminiEmbedding)


def test_openai_compatible_uses_base_url_and_model():
    config = Config(
        user_id="u",
        openai_api_key="lm-studio",
        openai_base_url="http://localhost:1234/v1",
        openai_model="nomic-embed-text",
        embedding_provider="openai-compatible",
    )
    service = create_embedding_service(config)
    assert isinstance(service.provider, OpenAIEmbedding)
    assert service.provider.base_url == "http://localhost:1234/v1"
    assert service.provider_name == "OpenAI (nomic-embed-text)"


# ------------------------------------------------------------------
# Factory: create_embedding_provider
# ------------------------------------------------------------------


def test_create_provider_by_alias():
    provider = create_embedding_provider("openai-compatible", api_key="k", base_url="http://x/v1")
    assert isinstance(provider, OpenAIEmbedding)


def test_create_provider_unknown():
    with pytest.raises(ValueError, match=r"[Uu]nknown"):
        create_embedding_provider("nonexistent_provider")


def test_provider_requires_key():
    with pytest.raises(ValueError):
        GeminiEmbedding(api_key="")

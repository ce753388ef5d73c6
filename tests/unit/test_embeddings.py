"""L1 Unit Tests: embedding math, HTTP providers, provider resolution."""

import json
import math
import sys

import httpx
import pytest

from memorybook.config import EmbeddingSettings
from memorybook.errors import EmbeddingError, EmbeddingProviderError
from memorybook.memory.embeddings import (
    EmbeddingManager,
    EmbeddingRegistry,
    GeminiEmbeddingProvider,
    OpenAIEmbeddingProvider,
    VoyageEmbeddingProvider,
    cache_key,
    cosine_similarity,
    create_provider,
    normalize_embedding,
)
from tests.fixtures.fake_embedding import FakeEmbeddingProvider


def _magnitude(vec):
    return math.sqrt(sum(v * v for v in vec))


class TestVectorMath:
    @pytest.mark.parametrize("vec", [[3.0, 4.0], [1e-3, -2e-3, 5e-4], [10.0] * 768])
    def test_normalize_unit_length(self, vec):
        assert _magnitude(normalize_embedding(vec)) == pytest.approx(1.0)

    def test_normalize_zero_vector(self):
        assert normalize_embedding([0.0, 0.0, 0.0]) == [0.0, 0.0, 0.0]

    def test_normalize_non_finite(self):
        result = normalize_embedding([float("nan"), 3.0, float("inf"), 4.0])
        assert result == pytest.approx([0.0, 0.6, 0.0, 0.8])

    def test_cosine_self_and_negation(self):
        v = [0.3, -1.2, 4.0]
        assert cosine_similarity(v, v) == pytest.approx(1.0)
        assert cosine_similarity(v, [-x for x in v]) == pytest.approx(-1.0)

    def test_cosine_symmetric(self):
        a, b = [1.0, 2.0, 3.0], [-2.0, 0.5, 1.0]
        assert cosine_similarity(a, b) == pytest.approx(cosine_similarity(b, a))

    def test_cosine_length_mismatch(self):
        assert cosine_similarity([1.0, 0.0], [1.0, 0.0, 0.0]) == 0.0

    def test_cosine_zero_vector(self):
        assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


class TestHTTPProviders:
    @pytest.mark.asyncio
    async def test_openai_reorders_by_index(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "data": [
                        {"index": 1, "embedding": [0.0, 2.0]},
                        {"index": 0, "embedding": [3.0, 4.0]},
                    ]
                },
            )

        provider = OpenAIEmbeddingProvider(
            "text-embedding-3-small", "sk-test", transport=httpx.MockTransport(handler)
        )
        vectors = await provider.embed_batch(["first", "second"])

        assert seen["url"] == "https://api.openai.com/v1/embeddings"
        assert seen["auth"] == "Bearer sk-test"
        assert seen["body"] == {"model": "text-embedding-3-small", "input": ["first", "second"]}
        assert vectors[0] == pytest.approx([0.6, 0.8])
        assert vectors[1] == pytest.approx([0.0, 1.0])

    @pytest.mark.asyncio
    async def test_custom_base_url(self):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})

        provider = OpenAIEmbeddingProvider(
            "m", "k", base_url="http://localhost:8080/v1/", transport=httpx.MockTransport(handler)
        )
        assert await provider.embed_query("x") == [1.0]
        assert urls == ["http://localhost:8080/v1/embeddings"]

    @pytest.mark.asyncio
    async def test_voyage_endpoint(self):
        urls = []

        def handler(request):
            urls.append(str(request.url))
            return httpx.Response(200, json={"data": [{"index": 0, "embedding": [0.0, 5.0]}]})

        provider = VoyageEmbeddingProvider("voyage-3-lite", "vk", transport=httpx.MockTransport(handler))
        assert provider.max_input_tokens == 32000
        assert await provider.embed_query("x") == pytest.approx([0.0, 1.0])
        assert urls == ["https://api.voyageai.com/v1/embeddings"]

    @pytest.mark.asyncio
    async def test_gemini_batch(self):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["key"] = request.url.params.get("key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"embeddings": [{"values": [2.0, 0.0]}, {"values": [0.0, 0.0]}]}
            )

        provider = GeminiEmbeddingProvider(
            "text-embedding-004", "gk", transport=httpx.MockTransport(handler)
        )
        vectors = await provider.embed_batch(["a", "b"])

        assert seen["path"].endswith("/models/text-embedding-004:batchEmbedContents")
        assert seen["key"] == "gk"
        assert seen["body"]["requests"][1] == {
            "model": "models/text-embedding-004",
            "content": {"parts": [{"text": "b"}]},
        }
        assert vectors == [[1.0, 0.0], [0.0, 0.0]]

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="upstream down"))
        provider = OpenAIEmbeddingProvider("m", "k", transport=transport)
        with pytest.raises(EmbeddingError, match="500"):
            await provider.embed_batch(["x"])

    @pytest.mark.asyncio
    async def test_count_mismatch_raises(self):
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, json={"data": [{"index": 0, "embedding": [1.0]}]})
        )
        provider = OpenAIEmbeddingProvider("m", "k", transport=transport)
        with pytest.raises(EmbeddingError):
            await provider.embed_batch(["x", "y"])

    @pytest.mark.asyncio
    async def test_malformed_response_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"oops": []}))
        provider = OpenAIEmbeddingProvider("m", "k", transport=transport)
        with pytest.raises(EmbeddingError):
            await provider.embed_batch(["x"])


class TestProviderResolution:
    def test_auto_without_credentials(self, no_provider_env):
        with pytest.raises(EmbeddingProviderError):
            EmbeddingRegistry().resolve(EmbeddingSettings(provider="auto"))

    def test_auto_priority_order(self, no_provider_env, monkeypatch):
        monkeypatch.setenv("VOYAGE_API_KEY", "vk")
        monkeypatch.setenv("GEMINI_API_KEY", "gk")
        resolution = EmbeddingRegistry().resolve(EmbeddingSettings(provider="auto"))
        assert resolution.provider.id == "voyage"
        assert resolution.fallback_used is False

    def test_google_key_alias(self, no_provider_env, monkeypatch):
        monkeypatch.setenv("GOOGLE_API_KEY", "gk")
        provider = create_provider("gemini", EmbeddingSettings())
        assert provider.id == "gemini"
        assert provider.model == "text-embedding-004"

    def test_explicit_api_key(self, no_provider_env):
        provider = create_provider("openai", EmbeddingSettings(api_key="sk-x", model="custom"))
        assert provider.model == "custom"

    def test_fallback_used(self, no_provider_env, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "gk")
        resolution = EmbeddingRegistry().resolve(
            EmbeddingSettings(provider="openai", fallback="gemini")
        )
        assert resolution.provider.id == "gemini"
        assert resolution.fallback_used is True
        assert "OPENAI_API_KEY" in resolution.fallback_reason

    def test_fallback_both_fail(self, no_provider_env):
        with pytest.raises(EmbeddingProviderError) as exc:
            EmbeddingRegistry().resolve(EmbeddingSettings(provider="openai", fallback="voyage"))
        message = str(exc.value)
        assert "OPENAI_API_KEY" in message
        assert "Fallback to voyage failed" in message
        assert "OPENAI_API_KEY" in exc.value.reason

    def test_fallback_same_as_primary(self, no_provider_env):
        with pytest.raises(EmbeddingProviderError) as exc:
            EmbeddingRegistry().resolve(EmbeddingSettings(provider="openai", fallback="openai"))
        assert "Fallback" not in str(exc.value)

    def test_local_without_library(self, monkeypatch):
        monkeypatch.setitem(sys.modules, "sentence_transformers", None)
        with pytest.raises(EmbeddingProviderError, match="sentence-transformers"):
            create_provider("local", EmbeddingSettings(provider="local"))

    def test_registry_caches_by_provider_and_model(self, no_provider_env, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk")
        registry = EmbeddingRegistry()
        config = EmbeddingSettings(provider="openai")
        first = registry.resolve(config).provider
        assert registry.resolve(EmbeddingSettings(provider="openai")).provider is first
        assert registry.resolve(EmbeddingSettings(provider="openai", model="other")).provider is not first
        assert len(registry) == 2

        registry.clear()
        assert len(registry) == 0
        assert registry.resolve(config).provider is not first

    def test_cache_key(self):
        assert cache_key(EmbeddingSettings(provider="openai")) == "openai:text-embedding-3-small"
        assert cache_key(EmbeddingSettings(provider="auto")) == "auto:default"
        assert cache_key(EmbeddingSettings(provider="voyage", model="v")) == "voyage:v"


class TestEmbeddingManager:
    def test_provider_info(self, fake_provider):
        assert EmbeddingManager().provider_info is None
        manager = EmbeddingManager(provider=fake_provider)
        manager.initialize()
        assert manager.is_available()
        assert manager.provider_info == {"id": "fake", "model": "fake-embed-v1"}

    @pytest.mark.asyncio
    async def test_batch_skips_empty_texts(self, fake_provider):
        manager = EmbeddingManager(provider=fake_provider)
        vectors = await manager.embed_batch(["alpha", "", "   ", "beta"])

        assert fake_provider.calls == [["alpha", "beta"]]
        assert vectors[1] == [] and vectors[2] == []
        assert vectors[0] == fake_provider.vector_for("alpha")
        assert vectors[3] == fake_provider.vector_for("beta")

    @pytest.mark.asyncio
    async def test_batch_all_empty(self, fake_provider):
        manager = EmbeddingManager(provider=fake_provider)
        assert await manager.embed_batch([]) == []
        assert await manager.embed_batch(["", ""]) == [[], []]
        assert fake_provider.calls == []

    def test_compute_similarities(self):
        sims = EmbeddingManager.compute_similarities([1.0, 0.0], [[1.0, 0.0], [0.0, 1.0], [1.0]])
        assert sims == pytest.approx([1.0, 0.0, 0.0])

    def test_initialize_failure_propagates(self, no_provider_env):
        manager = EmbeddingManager(EmbeddingSettings(provider="openai"))
        with pytest.raises(EmbeddingProviderError):
            manager.initialize()
        assert manager.is_available() is False


def test_fake_provider_is_deterministic():
    provider = FakeEmbeddingProvider()
    assert provider.vector_for("same text") == provider.vector_for("same text")

"""
Embedding 后端

四种可插拔的 Embedding 后端, 统一接口 embed_query / embed_batch:
- OpenAIEmbeddingProvider: OpenAI 兼容 /embeddings 接口 (可配置 base_url)
- VoyageEmbeddingProvider: Voyage AI
- GeminiEmbeddingProvider: Google Gemini batchEmbedContents
- LocalEmbeddingProvider: 本地 sentence-transformers 模型 (可选依赖, 延迟加载)

所有向量返回前都做 L2 归一化。

选择策略 (EmbeddingRegistry.resolve):
- provider="auto": 依次尝试 openai → voyage → gemini, 第一个能构造的胜出
- 指定 provider: 失败且配置了不同的 fallback 时尝试一次 fallback
- 解析结果按 (provider, model) 缓存, 相同配置复用同一实例

用法:
    registry = EmbeddingRegistry()
    manager = EmbeddingManager(settings.embedding, registry=registry)
    manager.initialize()
    vec = await manager.embed("用户喜欢咖啡")
"""

from __future__ import annotations

import asyncio
import logging
import math
import os
import threading
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from ..config import EmbeddingSettings
from ..errors import EmbeddingError, EmbeddingProviderError

logger = logging.getLogger(__name__)


DEFAULT_MODELS: dict[str, str] = {
    "openai": "text-embedding-3-small",
    "voyage": "voyage-3-lite",
    "gemini": "text-embedding-004",
    "local": "shibing624/text2vec-base-chinese",
}

AUTO_PROVIDER_ORDER = ("openai", "voyage", "gemini")

_MIN_MAGNITUDE = 1e-10


# =========================================================================
# Vector math
# =========================================================================


def normalize_embedding(vec: list[float]) -> list[float]:
    """L2 归一化; 非有限值视为 0, 模长可忽略时原样返回 (全零向量保持全零)"""
    sanitized = [float(v) if math.isfinite(v) else 0.0 for v in vec]
    magnitude = math.sqrt(sum(v * v for v in sanitized))
    if magnitude < _MIN_MAGNITUDE:
        return sanitized
    return [v / magnitude for v in sanitized]


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """余弦相似度; 长度不等或任一向量接近零时返回 0"""
    if len(a) != len(b):
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude < _MIN_MAGNITUDE:
        return 0.0
    return dot / magnitude


# =========================================================================
# Provider protocol
# =========================================================================


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Embedding 后端抽象接口"""

    id: str
    model: str
    max_input_tokens: int | None

    async def embed_query(self, text: str) -> list[float]:
        ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """批量向量化, 输出顺序与输入一致"""
        ...


class _HTTPEmbeddingProvider:
    """远程 HTTP 后端的公共部分"""

    id = ""
    max_input_tokens: int | None = None

    def __init__(
        self,
        model: str,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def embed_query(self, text: str) -> list[float]:
        results = await self.embed_batch([text])
        if not results:
            raise EmbeddingError(f"{self.id} embedding returned no vectors")
        return results[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        raise NotImplementedError

    def _raise_for_status(self, resp: httpx.Response) -> None:
        if not resp.is_success:
            raise EmbeddingError(
                f"{self.id} embedding failed: {resp.status_code} {resp.text[:500]}"
            )


class OpenAIEmbeddingProvider(_HTTPEmbeddingProvider):
    """OpenAI 兼容 /embeddings 接口"""

    id = "openai"
    max_input_tokens = 8191
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
    API_KEY_ENV = ("OPENAI_API_KEY",)

    def __init__(
        self,
        model: str,
        api_key: str,
        base_url: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(model, api_key, timeout=timeout, transport=transport)
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.base_url}/embeddings",
                    headers={
                        "Authorization": f"Bearer {self._api_key}",
                        "Content-Type": "application/json",
                    },
                    json={"model": self.model, "input": texts},
                )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"{self.id} embedding request failed: {e}") from e

        self._raise_for_status(resp)
        try:
            items = resp.json()["data"]
            # 按 index 排序, 保证与输入顺序对齐
            items = sorted(items, key=lambda item: item.get("index", 0))
            vectors = [normalize_embedding(item["embedding"]) for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"{self.id} embedding returned malformed response: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"{self.id} embedding returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors


class VoyageEmbeddingProvider(OpenAIEmbeddingProvider):
    """Voyage AI (请求/响应结构与 OpenAI 相同)"""

    id = "voyage"
    max_input_tokens = 32000
    DEFAULT_BASE_URL = "https://api.voyageai.com/v1"
    API_KEY_ENV = ("VOYAGE_API_KEY",)


class GeminiEmbeddingProvider(_HTTPEmbeddingProvider):
    """Google Gemini batchEmbedContents (响应已按输入顺序排列)"""

    id = "gemini"
    max_input_tokens = 2048
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
    API_KEY_ENV = ("GEMINI_API_KEY", "GOOGLE_API_KEY")

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        requests = [
            {"model": f"models/{self.model}", "content": {"parts": [{"text": t}]}}
            for t in texts
        ]
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.BASE_URL}/{self.model}:batchEmbedContents",
                    params={"key": self._api_key},
                    headers={"Content-Type": "application/json"},
                    json={"requests": requests},
                )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"{self.id} embedding request failed: {e}") from e

        self._raise_for_status(resp)
        try:
            vectors = [normalize_embedding(item["values"]) for item in resp.json()["embeddings"]]
        except (ValueError, KeyError, TypeError) as e:
            raise EmbeddingError(f"{self.id} embedding returned malformed response: {e}") from e

        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"{self.id} embedding returned {len(vectors)} vectors for {len(texts)} inputs"
            )
        return vectors


class LocalEmbeddingProvider:
    """
    本地 embedding 模型 (sentence-transformers)

    模型在首次调用时加载一次, 之后在进程内复用。
    encode 是 CPU 密集操作, 放到线程池执行, 避免阻塞事件循环。
    """

    id = "local"
    max_input_tokens: int | None = None

    def __init__(self, model: str, device: str = "cpu", cache_dir: str = "") -> None:
        try:
            import sentence_transformers
        except ImportError as e:
            raise EmbeddingProviderError(
                "Local embeddings unavailable: sentence-transformers is not installed. "
                "Install it with: pip install 'memorybook[vector-memory]', "
                'or use a remote provider: provider = "openai" / "voyage" / "gemini"',
                provider=self.id,
            ) from e

        self._st = sentence_transformers
        self.model = model
        self.device = device
        self.cache_dir = cache_dir or None
        self._model = None
        self._lock = threading.Lock()

    def _ensure_model(self):
        with self._lock:
            if self._model is None:
                logger.info(f"[Embedding] Loading local model: {self.model} (device={self.device})")
                self._model = self._st.SentenceTransformer(
                    self.model, device=self.device, cache_folder=self.cache_dir
                )
            return self._model

    def _encode(self, texts: list[str]) -> list[list[float]]:
        model = self._ensure_model()
        return [normalize_embedding(list(map(float, v))) for v in model.encode(texts)]

    async def embed_query(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)


# =========================================================================
# Resolution & registry
# =========================================================================


def _resolve_api_key(config: EmbeddingSettings, env_names: tuple[str, ...]) -> str:
    if config.api_key:
        return config.api_key
    for name in env_names:
        value = os.environ.get(name, "")
        if value:
            return value
    return ""


def create_provider(
    provider_id: str,
    config: EmbeddingSettings,
) -> EmbeddingProvider:
    """按 ID 构造后端; 缺少凭据或依赖时抛出 EmbeddingProviderError"""
    model = config.model or DEFAULT_MODELS.get(provider_id, "")

    if provider_id in ("openai", "voyage"):
        cls = OpenAIEmbeddingProvider if provider_id == "openai" else VoyageEmbeddingProvider
        api_key = _resolve_api_key(config, cls.API_KEY_ENV)
        if not api_key:
            raise EmbeddingProviderError(
                f"No API key found for provider {provider_id}. "
                f"Set {cls.API_KEY_ENV[0]} environment variable.",
                provider=provider_id,
            )
        return cls(model, api_key, base_url=config.base_url, timeout=config.timeout)

    if provider_id == "gemini":
        api_key = _resolve_api_key(config, GeminiEmbeddingProvider.API_KEY_ENV)
        if not api_key:
            raise EmbeddingProviderError(
                "No API key found for provider gemini. "
                "Set GEMINI_API_KEY or GOOGLE_API_KEY environment variable.",
                provider=provider_id,
            )
        return GeminiEmbeddingProvider(model, api_key, timeout=config.timeout)

    if provider_id == "local":
        return LocalEmbeddingProvider(
            config.local_model_path or model,
            device=config.device,
            cache_dir=config.local_model_cache_dir,
        )

    raise EmbeddingProviderError(f"Unknown embedding provider: {provider_id}", provider=provider_id)


def cache_key(config: EmbeddingSettings) -> str:
    provider = config.provider or "auto"
    model = config.model or DEFAULT_MODELS.get(provider, "default")
    return f"{provider}:{model}"


@dataclass
class ProviderResolution:
    """后端解析结果"""

    provider: EmbeddingProvider
    fallback_used: bool = False
    fallback_reason: str = ""


class EmbeddingRegistry:
    """已解析后端的注册表: (provider, model) → 实例"""

    def __init__(self) -> None:
        self._providers: dict[str, EmbeddingProvider] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._providers)

    def resolve(self, config: EmbeddingSettings) -> ProviderResolution:
        key = cache_key(config)
        with self._lock:
            cached = self._providers.get(key)
            if cached is not None:
                return ProviderResolution(provider=cached)

            resolution = self._create(config)
            self._providers[key] = resolution.provider
            return resolution

    def _create(self, config: EmbeddingSettings) -> ProviderResolution:
        if config.provider == "auto":
            errors: list[str] = []
            for provider_id in AUTO_PROVIDER_ORDER:
                try:
                    return ProviderResolution(provider=create_provider(provider_id, config))
                except EmbeddingProviderError as e:
                    errors.append(f"{provider_id}: {e}")
            raise EmbeddingProviderError(
                "No embedding provider available.\n" + "\n".join(errors), provider="auto"
            )

        try:
            return ProviderResolution(provider=create_provider(config.provider, config))
        except EmbeddingProviderError as primary_err:
            reason = str(primary_err)
            fallback = config.fallback
            if not fallback or fallback == "none" or fallback == config.provider:
                raise

            try:
                provider = create_provider(fallback, config)
            except EmbeddingProviderError as fallback_err:
                raise EmbeddingProviderError(
                    f"{reason}\n\nFallback to {fallback} failed: {fallback_err}",
                    provider=config.provider,
                    reason=reason,
                ) from primary_err
            return ProviderResolution(provider=provider, fallback_used=True, fallback_reason=reason)

    def register(self, config: EmbeddingSettings, provider: EmbeddingProvider) -> None:
        """手动注册 (测试或宿主自带后端时使用)"""
        with self._lock:
            self._providers[cache_key(config)] = provider

    def clear(self) -> None:
        with self._lock:
            self._providers.clear()


# =========================================================================
# Manager
# =========================================================================


class EmbeddingManager:
    """
    记忆系统使用的 embedding 入口

    - initialize(): 解析后端 (失败时抛出 EmbeddingProviderError, 由调用方决定降级)
    - embed() / embed_batch(): 批量时空文本不发给后端, 原位返回空向量
    """

    def __init__(
        self,
        config: EmbeddingSettings | None = None,
        registry: EmbeddingRegistry | None = None,
        provider: EmbeddingProvider | None = None,
    ) -> None:
        self.config = config or EmbeddingSettings()
        self.registry = registry or EmbeddingRegistry()
        self._provider: EmbeddingProvider | None = provider

    def initialize(self) -> None:
        if self._provider is not None:
            return

        resolution = self.registry.resolve(self.config)
        self._provider = resolution.provider
        if resolution.fallback_used:
            logger.warning(f"[Embedding] Provider fallback: {resolution.fallback_reason}")
        logger.info(
            f"[Embedding] Provider initialized: {self._provider.id} ({self._provider.model})"
        )

    def is_available(self) -> bool:
        return self._provider is not None

    @property
    def provider_info(self) -> dict | None:
        if self._provider is None:
            return None
        return {"id": self._provider.id, "model": self._provider.model}

    @property
    def model(self) -> str:
        return self._provider.model if self._provider is not None else "unknown"

    def _require_provider(self) -> EmbeddingProvider:
        if self._provider is None:
            self.initialize()
        return self._provider

    async def embed(self, text: str) -> list[float]:
        return await self._require_provider().embed_query(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        provider = self._require_provider()
        non_empty = [t for t in texts if t and t.strip()]
        if not non_empty:
            return [[] for _ in texts]

        embeddings = await provider.embed_batch(non_empty)
        if len(embeddings) != len(non_empty):
            raise EmbeddingError(
                f"{provider.id} returned {len(embeddings)} vectors for {len(non_empty)} inputs"
            )

        it = iter(embeddings)
        return [next(it) if t and t.strip() else [] for t in texts]

    @staticmethod
    def compute_similarities(query: list[float], embeddings: list[list[float]]) -> list[float]:
        return [cosine_similarity(query, emb) for emb in embeddings]

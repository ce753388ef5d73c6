"""
MemoryBook 记忆系统

架构:
- MemoryStore: JSON 主存储 (每个记忆本一个文件) + 索引同步
- MemoryIndex: 每个记忆本一个 SQLite 索引 (向量 + FTS5)
- EmbeddingManager: 可插拔 embedding 后端 (openai / voyage / gemini / local)
- RetrievalEngine: 混合检索, 关键词兜底
- MemoryExtractor: LLM 提取 + 触发词提取
"""

from .embeddings import (
    EmbeddingManager,
    EmbeddingProvider,
    EmbeddingRegistry,
    GeminiEmbeddingProvider,
    LocalEmbeddingProvider,
    OpenAIEmbeddingProvider,
    VoyageEmbeddingProvider,
    cosine_similarity,
    normalize_embedding,
)
from .extractor import (
    ExtractedMemory,
    ExtractionContext,
    MemoryExtractor,
    build_extraction_prompt,
    get_extraction_stats,
    parse_extraction_response,
    should_extract,
)
from .index import IndexRegistry, MemoryIndex, deserialize_vector, serialize_vector
from .manager import MemoryManager
from .retrieval import RetrievalEngine, build_memory_prompt, extract_keywords
from .storage import BookStorage
from .types import (
    IndexStatus,
    MatchType,
    MemoryBook,
    MemoryBookSettings,
    MemoryEntry,
    MemoryEntryType,
    RetrievalResult,
    ScoredEntry,
    SortBy,
)
from .unified_store import MemoryStore
from .vector_store import VectorMemoryStore

__all__ = [
    "MemoryManager",
    "MemoryStore",
    "MemoryExtractor",
    "RetrievalEngine",
    "VectorMemoryStore",
    "BookStorage",
    # Index
    "MemoryIndex",
    "IndexRegistry",
    "serialize_vector",
    "deserialize_vector",
    # Embeddings
    "EmbeddingProvider",
    "EmbeddingManager",
    "EmbeddingRegistry",
    "OpenAIEmbeddingProvider",
    "VoyageEmbeddingProvider",
    "GeminiEmbeddingProvider",
    "LocalEmbeddingProvider",
    "normalize_embedding",
    "cosine_similarity",
    # Retrieval / extraction helpers
    "build_memory_prompt",
    "extract_keywords",
    "build_extraction_prompt",
    "parse_extraction_response",
    "should_extract",
    "get_extraction_stats",
    "ExtractedMemory",
    "ExtractionContext",
    # Types
    "MemoryEntry",
    "MemoryEntryType",
    "MemoryBook",
    "MemoryBookSettings",
    "SortBy",
    "MatchType",
    "ScoredEntry",
    "IndexStatus",
    "RetrievalResult",
]

"""
向量存储 - Embedding 后端 + 每个记忆本的 SQLite 索引

提供语义搜索能力:
- 记忆向量化写入 (单条 / 批量, 批量带进度回调)
- 混合检索 (向量 + 关键词) 或纯向量检索
- 向量检索失败时退回关键词检索
- 记忆本增量同步 (缺失条目 + 模型变化后需要重新向量化的条目)

Embedding 后端在首次使用时解析; 解析失败只记录警告,
此后 enabled 为 False, 上层走纯关键词路径。
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from ..config import VectorSearchSettings
from ..errors import EmbeddingError, EmbeddingProviderError
from .embeddings import EmbeddingManager
from .index import IndexRegistry, MemoryIndex
from .types import IndexStatus, MemoryBook, MemoryEntry, ScoredEntry

logger = logging.getLogger(__name__)

# (completed, total, label)
ProgressCallback = Callable[[int, int, str], None]

EMBED_CHUNK_SIZE = 64


class VectorMemoryStore:
    """
    向量存储

    embedding 为 None 或后端无法构造时, 只维护索引的字段镜像与全文索引。
    """

    def __init__(
        self,
        indexes: IndexRegistry,
        embedding: EmbeddingManager | None = None,
        settings: VectorSearchSettings | None = None,
    ):
        self.indexes = indexes
        self.embedding = embedding
        self.settings = settings or VectorSearchSettings()

        self._initialized = False
        self._enabled = False
        self._lock = threading.RLock()

    def _ensure_initialized(self) -> bool:
        with self._lock:
            if self._initialized:
                return self._enabled
            self._initialized = True

            if self.embedding is None or not self.settings.enabled:
                self._enabled = False
                return False

            try:
                self.embedding.initialize()
                self._enabled = True
            except EmbeddingProviderError as e:
                logger.warning(f"[VectorStore] Embedding unavailable, keyword-only mode: {e}")
                self._enabled = False
            return self._enabled

    @property
    def enabled(self) -> bool:
        return self._ensure_initialized()

    @property
    def model(self) -> str:
        return self.embedding.model if self.embedding is not None else "unknown"

    def index(self, book_id: str) -> MemoryIndex:
        return self.indexes.get(book_id)

    # ==================== Write ====================

    async def add_entry(self, book_id: str, entry: MemoryEntry) -> bool:
        """
        写入单条记忆; 返回是否写入了向量

        embedding 失败不是错误: 条目仍写入索引 (无向量), 以后 sync_book 会补上。
        """
        index = self.index(book_id)
        if not self.enabled:
            index.index_entry(entry)
            return False

        try:
            vector = await self.embedding.embed(entry.content)
        except EmbeddingError as e:
            logger.warning(f"[VectorStore] Embedding failed for {entry.id}: {e}")
            index.index_entry(entry)
            return False

        index.index_entry(entry, vector, self.model)
        return True

    async def add_entries(
        self,
        book_id: str,
        entries: list[MemoryEntry],
        progress: ProgressCallback | None = None,
    ) -> int:
        """批量向量化后在一个事务里写入; embedding 失败时抛出 EmbeddingError"""
        if not entries:
            return 0
        if not self.enabled:
            raise EmbeddingError("Embedding provider not available")

        total = len(entries)
        vectors: list[list[float]] = []
        for start in range(0, total, EMBED_CHUNK_SIZE):
            chunk = entries[start : start + EMBED_CHUNK_SIZE]
            vectors.extend(await self.embedding.embed_batch([e.content for e in chunk]))
            if progress:
                progress(len(vectors), total, "embedding")

        count = self.index(book_id).index_batch(list(zip(entries, vectors)), model=self.model)
        if progress:
            progress(total, total, "indexed")
        return count

    def remove_entry(self, book_id: str, entry_id: str) -> bool:
        return self.index(book_id).remove_entry(entry_id)

    # ==================== Search ====================

    async def search(
        self,
        book_id: str,
        query: str,
        max_results: int | None = None,
        min_score: float | None = None,
        use_hybrid: bool | None = None,
        fallback: bool = True,
    ) -> list[ScoredEntry]:
        """fallback=False 时向量路径的异常直接抛给调用方"""
        max_results = max_results or self.settings.max_results
        min_score = self.settings.min_score if min_score is None else min_score
        use_hybrid = self.settings.use_hybrid if use_hybrid is None else use_hybrid
        index = self.index(book_id)

        if not self.enabled:
            return index.search_keyword(query, max_results)

        try:
            query_vector = await self.embedding.embed(query)
            if use_hybrid:
                return index.hybrid_search(
                    query_vector,
                    query,
                    max_results,
                    vector_weight=self.settings.vector_weight,
                    keyword_weight=self.settings.keyword_weight,
                    min_score=min_score,
                    model=self.model,
                )
            return index.search_vector(query_vector, max_results, min_score, model=self.model)
        except Exception as e:
            if not fallback:
                raise
            logger.warning(f"[VectorStore] Vector search failed, falling back to keyword: {e}")
            return index.search_keyword(query, max_results)

    # ==================== Sync ====================

    async def sync_book(self, book: MemoryBook, progress: ProgressCallback | None = None) -> int:
        """
        让索引追上记忆本: 缺失条目 + 向量模型不一致的条目一次性重新向量化

        索引中已不存在于记忆本的条目会被清理。返回重新写入的条目数。
        """
        if not self.enabled:
            return 0

        index = self.index(book.id)
        canonical = {e.id: e for e in book.entries}
        indexed_ids = {e.id for e in index.get_all_entries()}

        for orphan_id in indexed_ids - canonical.keys():
            index.remove_entry(orphan_id)

        stale_ids = [
            e.id for e in index.get_entries_needing_embedding(self.model) if e.id in canonical
        ]
        missing_ids = [entry_id for entry_id in canonical if entry_id not in indexed_ids]
        to_index = [canonical[entry_id] for entry_id in dict.fromkeys(stale_ids + missing_ids)]

        if not to_index:
            logger.debug(f"[VectorStore] Book {book.id} is already synced")
            return 0

        count = await self.add_entries(book.id, to_index, progress=progress)
        logger.info(f"[VectorStore] Synced {count} entries for book {book.id}")
        return count

    # ==================== Status ====================

    def book_status(self, book_id: str) -> IndexStatus:
        return self.index(book_id).status()

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "provider": self.embedding.provider_info if self.embedding is not None else None,
            "use_hybrid": self.settings.use_hybrid,
        }

    def close(self) -> None:
        self.indexes.close_all()

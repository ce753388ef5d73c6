"""
记忆管理器: 核心协调器

由 Settings 组装全部子组件:
- store: MemoryStore (JSON 主存储 + SQLite 索引)
- vector_store: VectorMemoryStore (embedding 后端 + 每个记忆本的索引)
- retrieval_engine: RetrievalEngine
- extractor: MemoryExtractor

宿主生命周期入口:
- build_memory_context(): 组装 prompt 前调用, 返回可直接拼接的记忆文本
- on_turn_complete(): 一轮对话结束后调用, 按提取模式写入新记忆

两个入口都不会把基础设施错误抛给对话流程。
"""

from __future__ import annotations

import logging
from pathlib import Path

from ..config import Settings
from .embeddings import EmbeddingManager, EmbeddingProvider, EmbeddingRegistry
from .extractor import (
    ExtractionContext,
    ExtractionLLM,
    MemoryExtractor,
    get_extraction_stats,
    should_extract,
)
from .index import IndexRegistry
from .retrieval import RetrievalEngine, build_memory_prompt
from .storage import BookStorage
from .types import MemoryEntry, RetrievalResult
from .unified_store import MemoryStore
from .vector_store import VectorMemoryStore

logger = logging.getLogger(__name__)


class MemoryManager:
    """记忆管理器"""

    def __init__(
        self,
        settings: Settings | None = None,
        llm: ExtractionLLM | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        embedding_registry: EmbeddingRegistry | None = None,
    ):
        """
        Args:
            settings: 应用配置 (默认从环境变量 / .env 读取)
            llm: 提取用 LLM; 为 None 时提取退化为触发词模式
            embedding_provider: 直接指定 embedding 后端 (跳过配置解析)
            embedding_registry: 共享的后端注册表
        """
        self.settings = settings or Settings()
        self.llm = llm

        data_dir = Path(self.settings.storage_dir).expanduser()
        data_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir = data_dir

        self.embedding_registry = embedding_registry or EmbeddingRegistry()
        embedding = None
        if self.settings.vector_search.enabled:
            embedding = EmbeddingManager(
                self.settings.embedding,
                registry=self.embedding_registry,
                provider=embedding_provider,
            )

        self.indexes = IndexRegistry(data_dir / "index")
        self.vector_store = VectorMemoryStore(
            self.indexes, embedding=embedding, settings=self.settings.vector_search
        )
        self.store = MemoryStore(
            BookStorage(data_dir / "books"), self.vector_store, settings=self.settings.memory
        )
        self.retrieval_engine = RetrievalEngine(self.store)
        self.extractor = MemoryExtractor(
            self.store,
            llm=llm,
            deduplication_threshold=self.settings.memory.deduplication_threshold,
        )

    # ==================== Retrieval ====================

    async def retrieve(
        self,
        book_id: str,
        context: str,
        max_memories: int | None = None,
        min_importance: int | None = None,
    ) -> RetrievalResult:
        """
        向量可用时先尽力同步索引再走混合检索, 否则关键词检索

        add_memory / 触发词提取只写主存储, 同步后这些条目才能被向量路径检索到。
        """
        if self.vector_store.enabled:
            try:
                await self.store.sync_book(book_id)
            except Exception as e:
                logger.warning(f"[MemoryManager] Index sync failed for {book_id}: {e}")

        return await self.retrieval_engine.retrieve_memories_with_vector(
            book_id, context, max_memories=max_memories, min_importance=min_importance
        )

    async def build_memory_context(
        self,
        context: str,
        character_id: str | None = None,
        character_name: str | None = None,
        session_key: str | None = None,
    ) -> str:
        """
        组装 prompt 前调用: 定位记忆本 → 同步索引 → 检索 → 渲染

        任何基础设施错误都只记录日志并返回空字符串。
        """
        if not self.settings.memory.enabled:
            return ""

        try:
            book = self.store.get_or_create_memory_book(
                character_id=character_id,
                character_name=character_name,
                session_key=session_key,
            )
            if not book.entries:
                return ""

            result = await self.retrieve(book.id, context)
            return build_memory_prompt(result.memories, max_tokens=book.settings.max_memory_tokens)
        except Exception as e:
            logger.warning(f"[MemoryManager] Failed to build memory context: {e}")
            return ""

    # ==================== Extraction ====================

    async def on_turn_complete(
        self,
        messages: list[dict],
        character_id: str | None = None,
        character_name: str | None = None,
        user_name: str | None = None,
        session_key: str | None = None,
    ) -> list[MemoryEntry]:
        """一轮对话结束后按提取模式写入新记忆, 返回新写入的条目"""
        memory_settings = self.settings.memory
        if not memory_settings.enabled:
            return []
        if not should_extract(
            memory_settings.extraction_mode, messages, memory_settings.extraction_triggers
        ):
            return []

        try:
            book = self.store.get_or_create_memory_book(
                character_id=character_id,
                character_name=character_name,
                session_key=session_key,
            )

            if self.llm is None:
                return self.extractor.extract_triggered_memories(
                    book.id, messages, memory_settings.extraction_triggers
                )

            result = await self.extractor.auto_extract_memories(
                ExtractionContext(
                    messages=messages,
                    character_name=character_name,
                    user_name=user_name,
                    character_id=character_id,
                    session_key=session_key,
                ),
                book_id=book.id,
            )
            return result.saved
        except Exception as e:
            logger.warning(f"[MemoryManager] Memory extraction failed: {e}")
            return []

    def get_extraction_stats(self, book_id: str) -> dict | None:
        book = self.store.load_memory_book(book_id)
        if book is None:
            return None
        return get_extraction_stats(book)

    # ==================== Status ====================

    def status(self) -> dict:
        return {
            "enabled": self.settings.memory.enabled,
            "storage_dir": str(self.data_dir),
            "books": len(self.store.list_memory_books()),
            "extraction_mode": self.settings.memory.extraction_mode,
            "vector_search": self.vector_store.status(),
        }

    def close(self) -> None:
        self.vector_store.close()

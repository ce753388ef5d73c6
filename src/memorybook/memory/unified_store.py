"""
统一存储层

协调 BookStorage (JSON, 权威数据源) + VectorMemoryStore (SQLite 索引):
- 写入: JSON 主写, 索引尽力同步 (embedding 失败只记录日志, 不影响主写)
- 删除: 先删索引再删主存储, 不会留下指向已删除条目的索引
- 同步: sync_book 补齐缺失条目并重新向量化模型不一致的条目
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime

from ..config import MemorySettings
from ..errors import IndexWriteError
from .storage import BookStorage
from .types import (
    DEFAULT_IMPORTANCE,
    MemoryBook,
    MemoryBookSettings,
    MemoryEntry,
    MemoryEntryType,
    SortBy,
    clamp_importance,
)
from .vector_store import ProgressCallback, VectorMemoryStore

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("content", "keywords", "importance", "category", "source", "enabled", "type")


def default_book_settings(settings: MemorySettings | None = None) -> MemoryBookSettings:
    """由全局配置生成新记忆本的默认设置"""
    settings = settings or MemorySettings()
    return MemoryBookSettings(
        max_memories_per_request=settings.max_memories_per_request,
        max_memory_tokens=settings.max_memory_tokens,
        use_keyword_retrieval=settings.use_keyword_retrieval,
        auto_extract=settings.auto_extract,
        min_importance_for_injection=settings.min_importance,
        sort_by=SortBy(settings.sort_by),
    )


class MemoryStore:
    """记忆本的唯一入口: 记忆本身份、设置与条目的读写"""

    def __init__(
        self,
        storage: BookStorage,
        vector_store: VectorMemoryStore,
        settings: MemorySettings | None = None,
    ) -> None:
        self.storage = storage
        self.vectors = vector_store
        self.settings = settings or MemorySettings()

    # ======================================================================
    # Books
    # ======================================================================

    def create_memory_book(
        self,
        name: str,
        character_id: str | None = None,
        session_key: str | None = None,
        settings: MemoryBookSettings | None = None,
    ) -> MemoryBook:
        book = MemoryBook(
            name=name or "Default",
            character_id=character_id,
            session_key=session_key,
            settings=settings or default_book_settings(self.settings),
        )
        self.storage.save(book)
        logger.info(f"[MemoryStore] Created memory book {book.id} ({book.name})")
        return book

    def get_or_create_memory_book(
        self,
        character_id: str | None = None,
        character_name: str | None = None,
        session_key: str | None = None,
    ) -> MemoryBook:
        """按角色 ID 查找, 其次按会话 key, 都找不到时新建"""
        if character_id:
            existing = self.storage.find_by_character(character_id)
            if existing is not None:
                return existing

        if session_key:
            existing = self.storage.find_by_session(session_key)
            if existing is not None:
                return existing

        return self.create_memory_book(
            name=character_name or session_key or "Default",
            character_id=character_id,
            session_key=session_key,
        )

    def load_memory_book(self, book_id: str) -> MemoryBook | None:
        return self.storage.load(book_id)

    def list_memory_books(self) -> list[MemoryBook]:
        return self.storage.load_all()

    def save_memory_book(self, book: MemoryBook) -> MemoryBook:
        book.updated_at = datetime.now()
        self.storage.save(book)
        return book

    def delete_memory_book(self, book_id: str) -> bool:
        """删除记忆本及其索引文件"""
        if self.storage.load(book_id) is None:
            return False
        self.vectors.indexes.drop(book_id)
        deleted = self.storage.delete(book_id)
        if deleted:
            logger.info(f"[MemoryStore] Deleted memory book {book_id}")
        return deleted

    # ======================================================================
    # Entries
    # ======================================================================

    def _append_entry(
        self,
        book_id: str,
        content: str,
        keywords: list[str] | None,
        importance: int,
        category: str | None,
        source: str | None,
        entry_type: MemoryEntryType,
    ) -> tuple[MemoryBook, MemoryEntry] | None:
        if not content or not content.strip():
            raise ValueError("memory content must not be empty")

        book = self.storage.load(book_id)
        if book is None:
            return None

        entry = MemoryEntry(
            content=content,
            type=entry_type,
            keywords=list(keywords) if keywords else None,
            importance=importance,
            category=category,
            source=source,
        )
        book.entries.append(entry)
        self.save_memory_book(book)
        return book, entry

    def add_memory(
        self,
        book_id: str,
        content: str,
        keywords: list[str] | None = None,
        importance: int = DEFAULT_IMPORTANCE,
        category: str | None = None,
        source: str | None = None,
        entry_type: MemoryEntryType = MemoryEntryType.MANUAL,
    ) -> MemoryEntry | None:
        """只写主存储; 记忆本不存在时返回 None"""
        added = self._append_entry(
            book_id, content, keywords, importance, category, source, entry_type
        )
        return added[1] if added else None

    async def add_memory_with_embedding(
        self,
        book_id: str,
        content: str,
        keywords: list[str] | None = None,
        importance: int = DEFAULT_IMPORTANCE,
        category: str | None = None,
        source: str | None = None,
        entry_type: MemoryEntryType = MemoryEntryType.MANUAL,
    ) -> MemoryEntry | None:
        """写主存储后尽力写入索引, 索引失败不影响返回值"""
        added = self._append_entry(
            book_id, content, keywords, importance, category, source, entry_type
        )
        if added is None:
            return None

        _, entry = added
        await self._index_best_effort(book_id, entry)
        return entry

    async def _index_best_effort(self, book_id: str, entry: MemoryEntry) -> None:
        try:
            await self.vectors.add_entry(book_id, entry)
        except Exception as e:
            logger.warning(f"[MemoryStore] Failed to index memory {entry.id}: {e}")

    def update_memory(self, book_id: str, memory_id: str, updates: dict) -> MemoryEntry | None:
        """
        更新记忆字段; id / created_at 不可修改, access_count 只增不减

        索引已存在时同步更新镜像; 内容变化后旧向量作废, 等待重新向量化。
        """
        book = self.storage.load(book_id)
        if book is None:
            return None
        entry = book.get_entry(memory_id)
        if entry is None:
            return None

        if "content" in updates and not (updates["content"] or "").strip():
            raise ValueError("memory content must not be empty")

        content_changed = "content" in updates and updates["content"] != entry.content
        for key in _UPDATABLE_FIELDS:
            if key not in updates:
                continue
            value = updates[key]
            if key == "importance":
                value = clamp_importance(value)
            elif key == "type":
                value = MemoryEntryType(value) if not isinstance(value, MemoryEntryType) else value
            elif key == "keywords":
                value = list(value) if value else None
            setattr(entry, key, value)

        if "access_count" in updates:
            entry.access_count = max(entry.access_count, int(updates["access_count"]))
        if "last_accessed_at" in updates and isinstance(updates["last_accessed_at"], datetime):
            entry.last_accessed_at = updates["last_accessed_at"]

        self.save_memory_book(book)
        self._mirror_update(book_id, entry, content_changed)
        return entry

    def _mirror_update(self, book_id: str, entry: MemoryEntry, content_changed: bool) -> None:
        indexes = self.vectors.indexes
        if not indexes.is_open(book_id) and not indexes.path_for(book_id).exists():
            return
        try:
            index = indexes.get(book_id)
            if content_changed:
                index.remove_vector(entry.id)
            index.index_entry(entry)
        except (sqlite3.Error, IndexWriteError) as e:
            logger.warning(f"[MemoryStore] Failed to update index for {entry.id}: {e}")

    def _remove_from_index(self, book_id: str, memory_id: str) -> None:
        """索引删除失败时整个丢弃索引文件, sync_book 会重建"""
        indexes = self.vectors.indexes
        if not indexes.is_open(book_id) and not indexes.path_for(book_id).exists():
            return
        try:
            indexes.get(book_id).remove_entry(memory_id)
        except (sqlite3.Error, IndexWriteError) as e:
            logger.warning(f"[MemoryStore] Failed to remove {memory_id} from index, dropping it: {e}")
            indexes.drop(book_id)

    async def update_memory_with_embedding(
        self, book_id: str, memory_id: str, updates: dict
    ) -> MemoryEntry | None:
        """更新后若内容变化, 尽力重新向量化"""
        previous = self.storage.load(book_id)
        old = previous.get_entry(memory_id) if previous else None
        entry = self.update_memory(book_id, memory_id, updates)
        if entry is None:
            return None
        if old is None or old.content != entry.content:
            await self._index_best_effort(book_id, entry)
        return entry

    def delete_memory(self, book_id: str, memory_id: str) -> bool:
        """先从索引删除, 再从主存储删除"""
        book = self.storage.load(book_id)
        if book is None:
            return False
        entry = book.get_entry(memory_id)
        if entry is None:
            return False

        self._remove_from_index(book_id, memory_id)

        book.entries.remove(entry)
        self.save_memory_book(book)
        return True

    def record_access(self, book: MemoryBook, entries: list[MemoryEntry]) -> None:
        """检索命中的记忆: 更新访问时间和计数并持久化 (entries 必须属于 book)"""
        if not entries:
            return
        now = datetime.now()
        for entry in entries:
            entry.touch(now)
        self.storage.save(book)

    # ======================================================================
    # Vector index
    # ======================================================================

    async def sync_book(self, book_id: str, progress: ProgressCallback | None = None) -> int:
        book = self.storage.load(book_id)
        if book is None:
            return 0
        return await self.vectors.sync_book(book, progress=progress)

    def get_memory_book_vector_status(self, book_id: str) -> dict | None:
        book = self.storage.load(book_id)
        if book is None:
            return None

        status = self.vectors.book_status(book_id)
        return {
            "book_id": book_id,
            "enabled": self.vectors.enabled,
            "total_entries": len(book.entries),
            "indexed_entries": status.indexed_entries,
            "model": status.model,
            "last_updated": status.last_updated,
            "db_path": status.db_path,
        }

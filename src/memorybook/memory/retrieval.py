"""
记忆检索引擎

两条路径:
- 向量路径: 混合检索 (向量 + 关键词) 或纯向量检索, 任何异常都退回关键词路径
- 关键词路径: 从上下文提取关键词, 对记忆本内容做子串匹配, 再排序截断

两条路径都过滤 enabled=False 和重要性不足的记忆, 并对返回的记忆
更新访问时间和计数 (recency / accessCount 排序依赖这个)。
"""

from __future__ import annotations

import logging
import re

from .types import MemoryBook, MemoryEntry, RetrievalResult, SortBy
from .unified_store import MemoryStore

logger = logging.getLogger(__name__)

MEMORY_PROMPT_HEADING = "## Long-term Memories"

# 粗略估算, 中英文混合时每 token 约 2.5 字符
CHARS_PER_TOKEN = 2.5

STOP_WORDS = frozenset(
    {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "can", "and", "or", "but", "if",
        "then", "else", "when", "where", "why", "how", "what", "which", "who",
        "whom", "this", "that", "these", "those", "for", "with", "about",
        "into", "through", "during", "before", "after", "above", "below",
        "from", "up", "down", "in", "out", "on", "off", "over", "under",
        "again", "further", "once", "here", "there", "all", "each", "few",
        "more", "most", "other", "some", "such", "no", "nor", "not", "only",
        "own", "same", "so", "than", "too", "very", "just",
        "的", "是", "在", "了", "和", "与", "或", "但", "如果", "那么", "这",
        "那", "这个", "那个", "我", "你", "他", "她", "它", "我们", "你们", "他们",
    }
)


def extract_keywords(text: str) -> list[str]:
    """小写, 去掉非字母数字/非中文字符, 丢弃 ≤2 字符的词和停用词, 保序去重"""
    if not text or not text.strip():
        return []
    cleaned = re.sub(r"[^\w\s\u4e00-\u9fff]", " ", text.lower())
    words = [w for w in cleaned.split() if len(w) > 2 and w not in STOP_WORDS]
    return list(dict.fromkeys(words))


def _matches(entry: MemoryEntry, keywords: list[str]) -> bool:
    content = entry.content.lower()
    entry_keywords = [k.lower() for k in entry.keywords or []]
    for kw in keywords:
        if kw in content or any(kw in k for k in entry_keywords):
            return True
    return False


def sort_memories(entries: list[MemoryEntry], sort_by: SortBy) -> list[MemoryEntry]:
    if sort_by == SortBy.RECENCY:
        return sorted(entries, key=lambda e: e.last_accessed_at, reverse=True)
    if sort_by == SortBy.ACCESS_COUNT:
        return sorted(entries, key=lambda e: e.access_count, reverse=True)
    return sorted(entries, key=lambda e: e.importance, reverse=True)


def build_memory_prompt(memories: list[MemoryEntry], max_tokens: int | None = None) -> str:
    """
    渲染为注入 prompt 的文本

    没有记忆时返回空字符串 (不输出标题), 调用方可以直接拼接。
    指定 max_tokens 时按估算 token 数截断, 一条都放不下时同样返回空字符串。
    """
    if not memories:
        return ""

    lines: list[str] = []
    token_est = 0.0
    for memory in memories:
        line = memory.to_prompt_line()
        line_tokens = len(line) / CHARS_PER_TOKEN
        if max_tokens is not None and token_est + line_tokens > max_tokens:
            break
        lines.append(line)
        token_est += line_tokens

    if not lines:
        return ""
    return "\n".join([MEMORY_PROMPT_HEADING, ""] + lines)


class RetrievalEngine:
    """记忆检索引擎"""

    def __init__(self, store: MemoryStore) -> None:
        self.store = store

    def retrieve_memories(
        self,
        book_id: str,
        context: str,
        max_memories: int | None = None,
        min_importance: int | None = None,
        keywords: list[str] | None = None,
        sort_by: SortBy | str | None = None,
    ) -> RetrievalResult:
        """关键词路径 (不需要索引和 embedding)"""
        book = self.store.load_memory_book(book_id)
        if book is None:
            return RetrievalResult()
        return self._retrieve_keyword(book, context, max_memories, min_importance, keywords, sort_by)

    def _retrieve_keyword(
        self,
        book: MemoryBook,
        context: str,
        max_memories: int | None,
        min_importance: int | None,
        keywords: list[str] | None = None,
        sort_by: SortBy | str | None = None,
    ) -> RetrievalResult:
        settings = book.settings
        max_memories = max_memories if max_memories is not None else settings.max_memories_per_request
        min_importance = (
            min_importance if min_importance is not None else settings.min_importance_for_injection
        )
        sort_by = SortBy(sort_by) if sort_by is not None else settings.sort_by

        filtered = [e for e in book.entries if e.enabled and e.importance >= min_importance]

        method = sort_by.value
        search_keywords = keywords if keywords is not None else extract_keywords(context)
        search_keywords = [k.lower() for k in search_keywords if k]
        if search_keywords and settings.use_keyword_retrieval:
            method = "keyword"
            filtered = [e for e in filtered if _matches(e, search_keywords)]

        filtered = sort_memories(filtered, sort_by)
        memories = filtered[:max_memories]
        self.store.record_access(book, memories)

        return RetrievalResult(
            memories=memories,
            total_memories=len(book.entries),
            truncated=len(filtered) > max_memories,
            method=method,
        )

    async def retrieve_memories_with_vector(
        self,
        book_id: str,
        context: str,
        max_memories: int | None = None,
        min_importance: int | None = None,
        min_score: float | None = None,
        use_hybrid: bool | None = None,
    ) -> RetrievalResult:
        """
        向量路径优先; embedding 不可用或检索出错时退回关键词路径

        结果按检索得分排序 (sort_by 只作用于关键词路径)。
        """
        book = self.store.load_memory_book(book_id)
        if book is None:
            return RetrievalResult()

        vectors = self.store.vectors
        max_memories = (
            max_memories if max_memories is not None else book.settings.max_memories_per_request
        )
        min_importance = (
            min_importance
            if min_importance is not None
            else book.settings.min_importance_for_injection
        )
        use_hybrid = vectors.settings.use_hybrid if use_hybrid is None else use_hybrid

        if vectors.enabled:
            try:
                results = await vectors.search(
                    book.id,
                    context,
                    max_results=max_memories * 2,
                    min_score=min_score,
                    use_hybrid=use_hybrid,
                    fallback=False,
                )

                # 以主存储为准, 索引里残留的 id 直接跳过
                filtered = []
                for r in results:
                    entry = book.get_entry(r.entry.id)
                    if entry is None or not entry.enabled or entry.importance < min_importance:
                        continue
                    filtered.append((entry, r.score))
            except Exception as e:
                logger.warning(f"[Retrieval] Vector retrieval failed, using keyword path: {e}")
            else:
                selected = filtered[:max_memories]
                memories = [entry for entry, _ in selected]
                self.store.record_access(book, memories)

                return RetrievalResult(
                    memories=memories,
                    total_memories=len(book.entries),
                    truncated=len(filtered) > max_memories,
                    method="hybrid" if use_hybrid else "vector",
                    vector_search_used=True,
                    scores=[score for _, score in selected],
                )

        return self._retrieve_keyword(book, context, max_memories, min_importance)

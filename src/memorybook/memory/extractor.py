"""
记忆提取器

功能:
1. LLM 提取: 从最近几轮对话提取候选记忆 (结构化 JSON 输出)
2. 去重: 提交前做向量相似度检查, 超过阈值的候选丢弃
3. 触发词提取: 不依赖 LLM, 含触发词的消息原文记为记忆
4. 提取统计
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Protocol, runtime_checkable

from ..config import DEFAULT_EXTRACTION_TRIGGERS
from .types import MemoryBook, MemoryEntry, MemoryEntryType
from .unified_store import MemoryStore

logger = logging.getLogger(__name__)

MEMORY_CATEGORIES = ("fact", "preference", "relationship", "event", "trait", "other")

RECENT_MESSAGE_WINDOW = 6
TRIGGERED_IMPORTANCE = 60
DEFAULT_LLM_IMPORTANCE = 5


@runtime_checkable
class ExtractionLLM(Protocol):
    """提取使用的 LLM, 只需要一个补全方法"""

    async def complete(self, prompt: str) -> str:
        ...


@dataclass
class ExtractedMemory:
    """LLM 提出的候选记忆, importance 为 1-10"""

    content: str
    keywords: list[str] = field(default_factory=list)
    importance: int = DEFAULT_LLM_IMPORTANCE
    category: str = "other"


@dataclass
class ExtractionContext:
    messages: list[dict] = field(default_factory=list)
    character_name: str | None = None
    user_name: str | None = None
    character_id: str | None = None
    session_key: str | None = None


@dataclass
class ExtractionResult:
    extracted: list[ExtractedMemory] = field(default_factory=list)
    saved: list[MemoryEntry] = field(default_factory=list)
    duplicates: list[ExtractedMemory] = field(default_factory=list)


EXTRACTION_PROMPT = """You are a memory extraction assistant. Analyze the following conversation and extract important information that should be remembered for future interactions.

Character: {character}
User: {user}

Recent Conversation:
{conversation}

Extract memories that are worth remembering. Focus on:
1. Facts about the user (name, preferences, background, etc.)
2. User preferences and likes/dislikes
3. Relationship dynamics between user and character
4. Important events or experiences mentioned
5. Character traits or behaviors the user appreciates
6. Any promises, commitments, or ongoing topics

For each memory, provide:
- content: A concise statement of what to remember
- keywords: 2-5 relevant keywords
- importance: Score from 1-10 (10 = critical to remember)
- category: One of "fact", "preference", "relationship", "event", "trait", "other"

Respond in JSON format:
{{
  "memories": [
    {{
      "content": "...",
      "keywords": ["...", "..."],
      "importance": 7,
      "category": "fact"
    }}
  ],
  "reasoning": "Brief explanation of why these memories were extracted"
}}

If there's nothing significant to remember from this conversation, respond with:
{{
  "memories": [],
  "reasoning": "No significant new information to remember"
}}

Important:
- Only extract NEW information, not things that would already be known
- Be concise but complete in the content
- Higher importance for personal details and preferences
- Lower importance for casual mentions or temporary topics"""


# ==================================================================
# Prompt & parsing
# ==================================================================


def build_extraction_prompt(context: ExtractionContext) -> str:
    character = context.character_name or "Assistant"
    user = context.user_name or "User"

    lines = []
    for m in context.messages[-RECENT_MESSAGE_WINDOW:]:
        role = m.get("role")
        speaker = user if role == "user" else character if role == "assistant" else "System"
        lines.append(f"{speaker}: {m.get('content', '')}")

    return EXTRACTION_PROMPT.format(
        character=character,
        user=user,
        conversation="\n\n".join(lines),
    )


def _first_json_object(text: str) -> dict | None:
    """取第一个能解析的 JSON 对象, 允许前后夹杂说明文字"""
    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        return None
    try:
        data = json.loads(match.group())
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    for m in re.finditer(r"\{", text):
        try:
            data, _ = decoder.raw_decode(text, m.start())
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _validate_category(category) -> str:
    if isinstance(category, str) and category in MEMORY_CATEGORIES:
        return category
    return "other"


def parse_extraction_response(response: str) -> list[ExtractedMemory]:
    """解析 LLM 输出; 没有候选或格式错误时返回空列表"""
    data = _first_json_object(response or "")
    if data is None:
        return []

    items = data.get("memories")
    if not isinstance(items, list):
        return []

    memories = []
    for item in items:
        if not isinstance(item, dict):
            continue
        content = item.get("content")
        if not isinstance(content, str) or not content.strip():
            continue

        keywords = item.get("keywords")
        keywords = [k for k in keywords if isinstance(k, str)] if isinstance(keywords, list) else []

        importance = item.get("importance")
        if isinstance(importance, (int, float)) and not isinstance(importance, bool):
            importance = int(round(min(10, max(1, importance))))
        else:
            importance = DEFAULT_LLM_IMPORTANCE

        memories.append(
            ExtractedMemory(
                content=content.strip(),
                keywords=keywords,
                importance=importance,
                category=_validate_category(item.get("category")),
            )
        )
    return memories


# ==================================================================
# Triggers
# ==================================================================


def compile_triggers(patterns: list | None = None) -> list[re.Pattern]:
    """编译触发词; 非法正则按字面量处理"""
    compiled = []
    for p in patterns if patterns is not None else DEFAULT_EXTRACTION_TRIGGERS:
        if isinstance(p, re.Pattern):
            compiled.append(p)
            continue
        try:
            compiled.append(re.compile(p, re.IGNORECASE))
        except re.error:
            logger.warning(f"[Extractor] Invalid trigger pattern {p!r}, matching literally")
            compiled.append(re.compile(re.escape(p), re.IGNORECASE))
    return compiled


def should_extract(mode: str, messages: list[dict], trigger_patterns: list | None = None) -> bool:
    """
    off: 从不提取; auto: 有新消息就提取;
    trigger: 最后一条用户消息命中任一触发词时提取
    """
    if mode == "auto":
        return len(messages) > 0

    if mode == "trigger":
        last_user = next((m for m in reversed(messages) if m.get("role") == "user"), None)
        if last_user is None:
            return False
        content = last_user.get("content") or ""
        return any(p.search(content) for p in compile_triggers(trigger_patterns))

    return False


# ==================================================================
# Stats
# ==================================================================


def get_extraction_stats(book: MemoryBook, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    one_day_ago = now - timedelta(days=1)

    by_category: dict[str, int] = {}
    total_importance = 0
    recent_count = 0
    for entry in book.entries:
        category = entry.category or "other"
        by_category[category] = by_category.get(category, 0) + 1
        total_importance += entry.importance
        if entry.created_at > one_day_ago:
            recent_count += 1

    total = len(book.entries)
    return {
        "total_memories": total,
        "by_category": by_category,
        "avg_importance": total_importance / total if total else 0,
        "recent_count": recent_count,
    }


# ==================================================================
# Extractor
# ==================================================================


class MemoryExtractor:
    """把候选记忆写入记忆本 (LLM 提取 + 触发词提取)"""

    def __init__(
        self,
        store: MemoryStore,
        llm: ExtractionLLM | None = None,
        deduplication_threshold: float = 0.85,
    ) -> None:
        self.store = store
        self.llm = llm
        self.deduplication_threshold = deduplication_threshold

    async def is_duplicate_memory(
        self, book_id: str, content: str, threshold: float | None = None
    ) -> bool:
        """向量相似度去重; embedding 不可用或检索出错时视为不重复"""
        threshold = self.deduplication_threshold if threshold is None else threshold
        vectors = self.store.vectors
        if not vectors.enabled:
            return False

        try:
            results = await vectors.search(
                book_id,
                content,
                max_results=3,
                min_score=threshold,
                use_hybrid=False,
                fallback=False,
            )
        except Exception as e:
            logger.debug(f"[Extractor] Duplicate check skipped: {e}")
            return False
        return any(r.score >= threshold for r in results)

    async def _complete(self, prompt: str) -> str:
        complete = getattr(self.llm, "complete", None)
        if complete is not None and callable(complete):
            return await complete(prompt)
        return await self.llm(prompt)

    async def auto_extract_memories(
        self,
        context: ExtractionContext,
        book_id: str | None = None,
        deduplication_threshold: float | None = None,
    ) -> ExtractionResult:
        """LLM 提取 → 去重 → 写入 (importance 1-10 换算为 0-100)"""
        if self.llm is None:
            return ExtractionResult()

        prompt = build_extraction_prompt(context)
        try:
            response = await self._complete(prompt)
        except Exception as e:
            logger.warning(f"[Extractor] LLM extraction failed: {e}")
            return ExtractionResult()

        extracted = parse_extraction_response(response if isinstance(response, str) else str(response))
        if not extracted:
            return ExtractionResult()

        if book_id is None:
            book_id = self.store.get_or_create_memory_book(
                character_id=context.character_id or context.character_name,
                character_name=context.character_name,
                session_key=context.session_key,
            ).id

        result = ExtractionResult(extracted=extracted)
        for memory in extracted:
            if await self.is_duplicate_memory(book_id, memory.content, deduplication_threshold):
                result.duplicates.append(memory)
                continue

            entry = await self.store.add_memory_with_embedding(
                book_id,
                memory.content,
                keywords=memory.keywords,
                importance=memory.importance * 10,
                category=memory.category,
                source="llm-extraction",
                entry_type=MemoryEntryType.AUTO,
            )
            if entry is not None:
                result.saved.append(entry)

        logger.info(
            f"[Extractor] Extracted {len(extracted)} memories "
            f"(saved={len(result.saved)}, duplicates={len(result.duplicates)})"
        )
        return result

    def extract_triggered_memories(
        self,
        book_id: str,
        messages: list[dict],
        trigger_patterns: list | None = None,
    ) -> list[MemoryEntry]:
        """
        含触发词的消息原文记为记忆 (不需要 LLM)

        用户消息分类为 user-stated, 助手消息为 ai-noted。
        只按原文或来源精确去重。
        """
        book = self.store.load_memory_book(book_id)
        if book is None:
            return []

        patterns = compile_triggers(trigger_patterns)
        seen_content = {e.content for e in book.entries}
        seen_sources = {e.source for e in book.entries if e.source}

        saved = []
        for message in messages:
            role = message.get("role")
            content = (message.get("content") or "").strip()
            if role not in ("user", "assistant") or not content:
                continue
            if not any(p.search(content) for p in patterns):
                continue

            source = f"message:{message['id']}" if message.get("id") else None
            if content in seen_content or (source and source in seen_sources):
                continue

            entry = self.store.add_memory(
                book_id,
                content,
                importance=TRIGGERED_IMPORTANCE,
                category="user-stated" if role == "user" else "ai-noted",
                source=source,
                entry_type=MemoryEntryType.AUTO,
            )
            if entry is not None:
                saved.append(entry)
                seen_content.add(content)
                if source:
                    seen_sources.add(source)

        if saved:
            logger.info(f"[Extractor] Saved {len(saved)} triggered memories to {book_id}")
        return saved

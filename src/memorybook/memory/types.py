"""
记忆类型定义

- MemoryEntry: 单条记忆
- MemoryBook: 一个角色 / 会话的记忆本 (检索范围)
- MemoryBookSettings: 记忆本级别的注入设置
- ScoredEntry / RetrievalResult / IndexStatus: 检索与索引的返回结构
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MemoryEntryType(Enum):
    """记忆来源类型"""

    MANUAL = "manual"
    AUTO = "auto"


class SortBy(Enum):
    """注入排序方式"""

    IMPORTANCE = "importance"
    RECENCY = "recency"
    ACCESS_COUNT = "accessCount"


class MatchType(Enum):
    """检索命中方式"""

    VECTOR = "vector"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


DEFAULT_IMPORTANCE = 50


def clamp_importance(value) -> int:
    try:
        importance = int(round(float(value)))
    except (TypeError, ValueError):
        return DEFAULT_IMPORTANCE
    return max(0, min(100, importance))


def _parse_dt(value) -> datetime:
    if isinstance(value, datetime):
        return value
    if value:
        try:
            return datetime.fromisoformat(str(value).replace("Z", "+00:00")).replace(tzinfo=None)
        except ValueError:
            pass
    return datetime.now()


def generate_memory_id() -> str:
    return f"mem-{uuid.uuid4().hex[:12]}"


def generate_book_id(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")[:20] or "book"
    return f"mb-{slug}-{uuid.uuid4().hex[:10]}"


# ---------------------------------------------------------------------------
# MemoryEntry
# ---------------------------------------------------------------------------


@dataclass
class MemoryEntry:
    """单条记忆"""

    content: str = ""
    id: str = field(default_factory=generate_memory_id)
    created_at: datetime = field(default_factory=datetime.now)
    last_accessed_at: datetime = field(default_factory=datetime.now)
    access_count: int = 0
    type: MemoryEntryType = MemoryEntryType.MANUAL
    keywords: list[str] | None = None
    importance: int = DEFAULT_IMPORTANCE
    category: str | None = None
    source: str | None = None
    enabled: bool = True

    def __post_init__(self) -> None:
        self.importance = clamp_importance(self.importance)

    def touch(self, now: datetime | None = None) -> None:
        """记录一次被检索: 更新访问时间并累加计数"""
        self.last_accessed_at = now or datetime.now()
        self.access_count += 1

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "access_count": self.access_count,
            "type": self.type.value,
            "keywords": self.keywords,
            "importance": self.importance,
            "category": self.category,
            "source": self.source,
            "enabled": self.enabled,
        }

    @classmethod
    def from_dict(cls, data: dict) -> MemoryEntry:
        try:
            entry_type = MemoryEntryType(data.get("type", "manual"))
        except ValueError:
            entry_type = MemoryEntryType.MANUAL
        keywords = data.get("keywords")
        return cls(
            id=data.get("id") or generate_memory_id(),
            content=data.get("content", ""),
            created_at=_parse_dt(data.get("created_at")),
            last_accessed_at=_parse_dt(data.get("last_accessed_at")),
            access_count=int(data.get("access_count", 0) or 0),
            type=entry_type,
            keywords=list(keywords) if keywords else None,
            importance=data.get("importance", DEFAULT_IMPORTANCE),
            category=data.get("category"),
            source=data.get("source"),
            enabled=bool(data.get("enabled", True)),
        )

    def to_prompt_line(self) -> str:
        prefix = f"[{self.category}] " if self.category else ""
        return f"- {prefix}{self.content}"


# ---------------------------------------------------------------------------
# MemoryBook
# ---------------------------------------------------------------------------


@dataclass
class MemoryBookSettings:
    """记忆本设置"""

    max_memories_per_request: int = 10
    max_memory_tokens: int = 1000
    use_keyword_retrieval: bool = True
    auto_extract: bool = False
    min_importance_for_injection: int = 50
    sort_by: SortBy = SortBy.IMPORTANCE

    def to_dict(self) -> dict:
        return {
            "max_memories_per_request": self.max_memories_per_request,
            "max_memory_tokens": self.max_memory_tokens,
            "use_keyword_retrieval": self.use_keyword_retrieval,
            "auto_extract": self.auto_extract,
            "min_importance_for_injection": self.min_importance_for_injection,
            "sort_by": self.sort_by.value,
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> MemoryBookSettings:
        data = data or {}
        defaults = cls()
        try:
            sort_by = SortBy(data.get("sort_by", defaults.sort_by.value))
        except ValueError:
            sort_by = defaults.sort_by
        return cls(
            max_memories_per_request=data.get(
                "max_memories_per_request", defaults.max_memories_per_request
            ),
            max_memory_tokens=data.get("max_memory_tokens", defaults.max_memory_tokens),
            use_keyword_retrieval=data.get(
                "use_keyword_retrieval", defaults.use_keyword_retrieval
            ),
            auto_extract=data.get("auto_extract", defaults.auto_extract),
            min_importance_for_injection=data.get(
                "min_importance_for_injection", defaults.min_importance_for_injection
            ),
            sort_by=sort_by,
        )


@dataclass
class MemoryBook:
    """记忆本: 一个角色或会话的检索范围"""

    name: str = "Default"
    id: str = ""
    character_id: str | None = None
    session_key: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)
    entries: list[MemoryEntry] = field(default_factory=list)
    settings: MemoryBookSettings = field(default_factory=MemoryBookSettings)

    def __post_init__(self) -> None:
        if not self.id:
            self.id = generate_book_id(self.name)

    def get_entry(self, memory_id: str) -> MemoryEntry | None:
        for entry in self.entries:
            if entry.id == memory_id:
                return entry
        return None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "character_id": self.character_id,
            "session_key": self.session_key,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "entries": [e.to_dict() for e in self.entries],
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> MemoryBook:
        if not isinstance(data, dict) or not data.get("id"):
            raise ValueError("memory book document requires an id")
        return cls(
            id=data["id"],
            name=data.get("name", "Default"),
            character_id=data.get("character_id"),
            session_key=data.get("session_key"),
            created_at=_parse_dt(data.get("created_at")),
            updated_at=_parse_dt(data.get("updated_at")),
            entries=[MemoryEntry.from_dict(e) for e in data.get("entries", [])],
            settings=MemoryBookSettings.from_dict(data.get("settings")),
        )


# ---------------------------------------------------------------------------
# 检索 / 索引结果
# ---------------------------------------------------------------------------


@dataclass
class ScoredEntry:
    """带得分的检索结果"""

    entry: MemoryEntry
    score: float
    match_type: MatchType


@dataclass
class IndexStatus:
    total_entries: int
    indexed_entries: int
    model: str | None
    last_updated: str | None
    db_path: str


@dataclass
class RetrievalResult:
    """记忆检索结果"""

    memories: list[MemoryEntry] = field(default_factory=list)
    total_memories: int = 0
    truncated: bool = False
    # keyword / importance / recency / accessCount / all / vector / hybrid
    method: str = "all"
    vector_search_used: bool = False
    scores: list[float] = field(default_factory=list)

"""
记忆索引 (每个记忆本一个 SQLite 文件)

三张逻辑表:
- entries: 记忆字段的镜像 (仅用于检索, 不是内容的权威来源)
- vectors: entry_id → float32 小端序向量 + 模型名 + 写入时间
- entries_fts: FTS5 全文索引 (content + keywords)

FTS5 优先使用 trigram 分词 (子串语义, 中英文都可用), 不支持时退回
unicode61, 完全没有 FTS5 时退回子串匹配 (Python 侧 casefold)。该模式得分固定为 0.5,
但命中的条目集合与 FTS 模式一致。

批量写入在单个事务中完成, 失败时整批回滚并抛出 IndexWriteError。
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import struct
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from ..errors import IndexWriteError
from .embeddings import cosine_similarity
from .types import IndexStatus, MatchType, MemoryEntry, MemoryEntryType, ScoredEntry

logger = logging.getLogger(__name__)

LIKE_FALLBACK_SCORE = 0.5
MIN_TOKEN_LENGTH = 3


def serialize_vector(vec: list[float]) -> bytes:
    """float32 小端序"""
    return struct.pack(f"<{len(vec)}f", *vec)


def deserialize_vector(data: bytes) -> list[float]:
    n = len(data) // 4
    return list(struct.unpack(f"<{n}f", data[: n * 4]))


def tokenize_query(text: str) -> list[str]:
    """小写分词, 去掉长度 ≤ 2 的 token, 保持首次出现顺序去重"""
    tokens = re.findall(r"\w+", (text or "").lower())
    return list(dict.fromkeys(t for t in tokens if len(t) >= MIN_TOKEN_LENGTH))


def _fts_query(tokens: list[str]) -> str:
    return " OR ".join('"' + t.replace('"', '""') + '"' for t in tokens)


class MemoryIndex:
    """单个记忆本的向量 + 关键词索引"""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        # 自动提交模式, 事务由 _transaction 显式控制
        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._fts_available = False

        try:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._init_schema()
        except sqlite3.Error:
            self._conn.close()
            raise

    # ==================== Schema ====================

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS entries (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                created_at TEXT,
                last_accessed_at TEXT,
                access_count INTEGER DEFAULT 0,
                type TEXT DEFAULT 'manual',
                keywords TEXT,
                importance INTEGER DEFAULT 50,
                category TEXT,
                source TEXT,
                enabled INTEGER DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS vectors (
                entry_id TEXT PRIMARY KEY,
                embedding BLOB NOT NULL,
                model TEXT NOT NULL,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS meta (
                key TEXT PRIMARY KEY,
                value TEXT
            );
            """
        )

        for tokenizer in ("trigram", "unicode61"):
            try:
                self._conn.execute(
                    "CREATE VIRTUAL TABLE IF NOT EXISTS entries_fts USING fts5("
                    f"entry_id UNINDEXED, content, keywords, tokenize='{tokenizer}')"
                )
                self._fts_available = True
                break
            except sqlite3.OperationalError as e:
                logger.debug(f"[MemoryIndex] FTS5 tokenizer {tokenizer} unavailable: {e}")

        if not self._fts_available:
            logger.info(f"[MemoryIndex] FTS5 not available, using LIKE search ({self.db_path.name})")

    @property
    def fts_available(self) -> bool:
        return self._fts_available

    @contextmanager
    def _transaction(self):
        """BEGIN/COMMIT; 嵌套调用并入外层事务"""
        with self._lock:
            if self._in_transaction:
                yield
                return
            self._conn.execute("BEGIN IMMEDIATE")
            self._in_transaction = True
            try:
                yield
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._in_transaction = False

    # ==================== Row mapping ====================

    @staticmethod
    def _entry_params(entry: MemoryEntry) -> tuple:
        return (
            entry.id,
            entry.content,
            entry.created_at.isoformat(),
            entry.last_accessed_at.isoformat(),
            entry.access_count,
            entry.type.value,
            json.dumps(entry.keywords, ensure_ascii=False) if entry.keywords is not None else None,
            entry.importance,
            entry.category,
            entry.source,
            1 if entry.enabled else 0,
        )

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
        keywords = json.loads(row["keywords"]) if row["keywords"] else None
        try:
            entry_type = MemoryEntryType(row["type"])
        except ValueError:
            entry_type = MemoryEntryType.MANUAL
        return MemoryEntry(
            id=row["id"],
            content=row["content"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_accessed_at=datetime.fromisoformat(row["last_accessed_at"]),
            access_count=row["access_count"] or 0,
            type=entry_type,
            keywords=keywords,
            importance=row["importance"],
            category=row["category"],
            source=row["source"],
            enabled=bool(row["enabled"]),
        )

    def _write(self, entry: MemoryEntry, vector: list[float] | None, model: str | None) -> None:
        now = datetime.now().isoformat()
        self._conn.execute(
            """INSERT OR REPLACE INTO entries
               (id, content, created_at, last_accessed_at, access_count, type,
                keywords, importance, category, source, enabled)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            self._entry_params(entry),
        )

        if self._fts_available:
            self._conn.execute("DELETE FROM entries_fts WHERE entry_id = ?", (entry.id,))
            self._conn.execute(
                "INSERT INTO entries_fts (entry_id, content, keywords) VALUES (?, ?, ?)",
                (entry.id, entry.content, " ".join(entry.keywords or [])),
            )

        if vector is not None:
            self._conn.execute(
                """INSERT OR REPLACE INTO vectors (entry_id, embedding, model, created_at)
                   VALUES (?, ?, ?, ?)""",
                (entry.id, serialize_vector(vector), model or "unknown", now),
            )
            self._set_meta("model", model or "unknown")

        self._set_meta("last_updated", now)

    def _set_meta(self, key: str, value: str) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)", (key, value)
        )

    def _get_meta(self, key: str) -> str | None:
        row = self._conn.execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else None

    # ==================== Write ====================

    def index_entry(
        self,
        entry: MemoryEntry,
        vector: list[float] | None = None,
        model: str | None = None,
    ) -> None:
        """写入 / 覆盖单条记忆; vector 为 None 时只更新字段镜像和全文索引"""
        with self._transaction():
            self._write(entry, vector, model)
        logger.debug(f"[MemoryIndex] Indexed {entry.id} (vector={'yes' if vector else 'no'})")

    def index_batch(
        self,
        items: list[tuple[MemoryEntry, list[float] | None]],
        model: str | None = None,
    ) -> int:
        """
        批量写入 [(entry, vector), ...], 整批一个事务

        Raises:
            ValueError: items 结构不合法 (调用方错误, 不写入任何数据)
            IndexWriteError: 写入过程中失败, 整批已回滚
        """
        for i, item in enumerate(items):
            if (
                not isinstance(item, (tuple, list))
                or len(item) != 2
                or not isinstance(item[0], MemoryEntry)
            ):
                raise ValueError(f"index_batch item {i} must be an (entry, vector) pair")

        if not items:
            return 0

        try:
            with self._transaction():
                for entry, vector in items:
                    self._write(entry, vector, model)
        except (sqlite3.Error, struct.error, TypeError, ValueError) as e:
            raise IndexWriteError(f"Batch of {len(items)} entries rolled back: {e}") from e

        logger.debug(f"[MemoryIndex] Indexed batch of {len(items)} entries")
        return len(items)

    def remove_entry(self, entry_id: str) -> bool:
        """删除记忆及其向量和全文索引; 不存在时返回 False"""
        with self._transaction():
            cursor = self._conn.execute("DELETE FROM entries WHERE id = ?", (entry_id,))
            self._conn.execute("DELETE FROM vectors WHERE entry_id = ?", (entry_id,))
            if self._fts_available:
                self._conn.execute("DELETE FROM entries_fts WHERE entry_id = ?", (entry_id,))
        return cursor.rowcount > 0

    def remove_vector(self, entry_id: str) -> None:
        """只删除向量 (内容变化后旧向量失效)"""
        with self._transaction():
            self._conn.execute("DELETE FROM vectors WHERE entry_id = ?", (entry_id,))

    # ==================== Search ====================

    def search_vector(
        self,
        query_vector: list[float],
        limit: int = 10,
        min_score: float = 0.0,
        model: str | None = None,
    ) -> list[ScoredEntry]:
        """对所有启用条目做余弦相似度; model 指定时只比较同一模型产生的向量"""
        sql = """SELECT e.*, v.embedding FROM vectors v
                 JOIN entries e ON e.id = v.entry_id
                 WHERE e.enabled = 1"""
        params: tuple = ()
        if model:
            sql += " AND v.model = ?"
            params = (model,)

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()

        results: list[ScoredEntry] = []
        for row in rows:
            score = cosine_similarity(query_vector, deserialize_vector(row["embedding"]))
            if score >= min_score:
                results.append(ScoredEntry(self._row_to_entry(row), score, MatchType.VECTOR))

        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    def search_keyword(self, query_text: str, limit: int = 10) -> list[ScoredEntry]:
        tokens = tokenize_query(query_text)
        if not tokens or limit <= 0:
            return []

        if self._fts_available:
            try:
                return self._search_fts(tokens, limit)
            except sqlite3.OperationalError as e:
                logger.warning(f"[MemoryIndex] FTS query failed, using LIKE: {e}")
        return self._search_like(tokens, limit)

    def _search_fts(self, tokens: list[str], limit: int) -> list[ScoredEntry]:
        with self._lock:
            rows = self._conn.execute(
                """SELECT entries.*, bm25(entries_fts) AS rank
                   FROM entries_fts
                   JOIN entries ON entries.id = entries_fts.entry_id
                   WHERE entries_fts MATCH ? AND entries.enabled = 1
                   ORDER BY rank
                   LIMIT ?""",
                (_fts_query(tokens), limit),
            ).fetchall()

        if not rows:
            return []

        # bm25 越小越相关, 归一化到 [0.1, 1.0]
        ranks = [row["rank"] for row in rows]
        best, worst = min(ranks), max(ranks)
        results = []
        for row in rows:
            if worst == best:
                score = 1.0
            else:
                score = 0.1 + 0.9 * (worst - row["rank"]) / (worst - best)
            results.append(ScoredEntry(self._row_to_entry(row), score, MatchType.KEYWORD))
        return results

    def _search_like(self, tokens: list[str], limit: int) -> list[ScoredEntry]:
        """
        无 FTS5 时的子串匹配

        在 Python 侧做 casefold 比较: SQLite 的 lower() / LIKE 只折叠 ASCII,
        且 LIKE 会把 token 里的 "_" 当通配符。
        """
        needles = [t.casefold() for t in tokens]
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM entries WHERE enabled = 1 ORDER BY importance DESC"
            ).fetchall()

        results: list[ScoredEntry] = []
        for row in rows:
            entry = self._row_to_entry(row)
            haystack = "\n".join([entry.content, *(entry.keywords or [])]).casefold()
            if any(n in haystack for n in needles):
                results.append(ScoredEntry(entry, LIKE_FALLBACK_SCORE, MatchType.KEYWORD))
                if len(results) >= limit:
                    break
        return results

    def hybrid_search(
        self,
        query_vector: list[float],
        query_text: str,
        limit: int = 10,
        vector_weight: float = 0.7,
        keyword_weight: float = 0.3,
        min_score: float = 0.0,
        model: str | None = None,
    ) -> list[ScoredEntry]:
        """向量 + 关键词融合: 各取 2×limit 候选, 按 id 合并加权求和"""
        vector_results = self.search_vector(query_vector, limit * 2, 0.0, model=model)
        keyword_results = self.search_keyword(query_text, limit * 2)

        merged: dict[str, ScoredEntry] = {}
        for r in vector_results:
            merged[r.entry.id] = ScoredEntry(r.entry, r.score * vector_weight, MatchType.VECTOR)

        for r in keyword_results:
            existing = merged.get(r.entry.id)
            if existing is not None:
                existing.score += r.score * keyword_weight
                existing.match_type = MatchType.HYBRID
            else:
                merged[r.entry.id] = ScoredEntry(
                    r.entry, r.score * keyword_weight, MatchType.KEYWORD
                )

        results = [r for r in merged.values() if r.score >= min_score]
        results.sort(key=lambda r: r.score, reverse=True)
        return results[:limit]

    # ==================== Query ====================

    def get_all_entries(self) -> list[MemoryEntry]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM entries").fetchall()
        return [self._row_to_entry(row) for row in rows]

    def get_entries_needing_embedding(self, model: str) -> list[MemoryEntry]:
        """没有向量, 或向量由其他模型产生的条目"""
        with self._lock:
            rows = self._conn.execute(
                """SELECT e.* FROM entries e
                   LEFT JOIN vectors v ON v.entry_id = e.id
                   WHERE v.entry_id IS NULL OR v.model != ?""",
                (model,),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def has_embedding(self, entry_id: str, model: str | None = None) -> bool:
        sql = "SELECT 1 FROM vectors WHERE entry_id = ?"
        params: tuple = (entry_id,)
        if model:
            sql += " AND model = ?"
            params = (entry_id, model)
        with self._lock:
            return self._conn.execute(sql, params).fetchone() is not None

    def status(self) -> IndexStatus:
        with self._lock:
            total = self._conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
            indexed = self._conn.execute("SELECT COUNT(*) FROM vectors").fetchone()[0]
            model = self._get_meta("model")
            last_updated = self._get_meta("last_updated")
        return IndexStatus(
            total_entries=total,
            indexed_entries=indexed,
            model=model,
            last_updated=last_updated,
            db_path=str(self.db_path),
        )

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug(f"[MemoryIndex] Close failed for {self.db_path.name}: {e}")


class IndexRegistry:
    """book_id → MemoryIndex 句柄缓存, 首次访问时创建"""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self._indexes: dict[str, MemoryIndex] = {}
        self._lock = threading.Lock()

    def path_for(self, book_id: str) -> Path:
        return self.base_dir / f"{book_id}.sqlite"

    def get(self, book_id: str) -> MemoryIndex:
        with self._lock:
            index = self._indexes.get(book_id)
            if index is None:
                index = MemoryIndex(self.path_for(book_id))
                self._indexes[book_id] = index
            return index

    def is_open(self, book_id: str) -> bool:
        return book_id in self._indexes

    def close(self, book_id: str) -> None:
        with self._lock:
            index = self._indexes.pop(book_id, None)
        if index is not None:
            index.close()

    def close_all(self) -> None:
        with self._lock:
            indexes = list(self._indexes.values())
            self._indexes.clear()
        for index in indexes:
            index.close()

    def drop(self, book_id: str) -> None:
        """关闭并删除记忆本的索引文件"""
        self.close(book_id)
        db_path = self.path_for(book_id)
        for suffix in ("", "-wal", "-shm"):
            Path(f"{db_path}{suffix}").unlink(missing_ok=True)

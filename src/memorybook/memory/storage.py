"""
记忆本持久化 (权威数据源)

每个记忆本一个 JSON 文件 (<book_id>.json), 角色 / 会话关联字段保存在
文档内部, 按角色或会话查找时线性扫描目录下所有文档。
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from .types import MemoryBook

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_.-]+$")


class BookStorage:
    """JSON 文件存储"""

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, book_id: str) -> Path:
        if not _SAFE_ID.match(book_id or ""):
            raise ValueError(f"Invalid memory book id: {book_id!r}")
        return self.base_dir / f"{book_id}.json"

    def save(self, book: MemoryBook) -> None:
        """先写临时文件再替换, 保留上一版 .bak"""
        path = self.path_for(book.id)
        tmp = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(book.to_dict(), f, ensure_ascii=False, indent=2)
            if path.exists():
                path.replace(path.with_suffix(path.suffix + ".bak"))
            tmp.replace(path)
        except OSError as e:
            logger.error(f"[MemoryStore] Failed to save book {book.id}: {e}")
            raise

    def load(self, book_id: str) -> MemoryBook | None:
        try:
            path = self.path_for(book_id)
        except ValueError:
            return None
        if not path.exists():
            return None
        return self._read(path)

    def _read(self, path: Path) -> MemoryBook | None:
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return MemoryBook.from_dict(data)
        except (OSError, ValueError, TypeError, AttributeError) as e:
            logger.warning(f"[MemoryStore] Skipping unreadable book file {path.name}: {e}")
            return None

    def load_all(self) -> list[MemoryBook]:
        books = []
        for path in sorted(self.base_dir.glob("*.json")):
            book = self._read(path)
            if book is not None:
                books.append(book)
        return books

    def find_by_character(self, character_id: str) -> MemoryBook | None:
        for book in self.load_all():
            if book.character_id == character_id:
                return book
        return None

    def find_by_session(self, session_key: str) -> MemoryBook | None:
        for book in self.load_all():
            if book.session_key == session_key:
                return book
        return None

    def delete(self, book_id: str) -> bool:
        try:
            path = self.path_for(book_id)
        except ValueError:
            return False
        if not path.exists():
            return False
        path.unlink()
        path.with_suffix(path.suffix + ".bak").unlink(missing_ok=True)
        return True

import asyncio
import json
import logging
import random
import re
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, TypeVar

from .models import ContextMessage, ScrapbookMemory

log = logging.getLogger(__name__)

T = TypeVar("T")


def _terms(text: str) -> List[str]:
    return [term for term in re.findall(r"[a-z0-9']+", (text or "").lower()) if term]


class ScrapbookStore(ABC):
    """Memorable quotes. Lookup works both by id and by the exact quote text."""

    @abstractmethod
    async def insert(
        self,
        *,
        key_message: str,
        author: str,
        context: List[ContextMessage],
        created_at: datetime,
    ) -> str: ...

    @abstractmethod
    async def delete(self, memory_id: str) -> None: ...

    @abstractmethod
    async def get_random(self) -> Optional[ScrapbookMemory]: ...

    @abstractmethod
    async def search(self, query: str, limit: int = 10) -> List[ScrapbookMemory]: ...

    @abstractmethod
    async def get_by_id(self, memory_id: str) -> Optional[ScrapbookMemory]: ...

    @abstractmethod
    async def get_by_quote(self, quote: str) -> Optional[ScrapbookMemory]: ...


class InMemoryScrapbookStore(ScrapbookStore):
    def __init__(self) -> None:
        self._memories: Dict[str, ScrapbookMemory] = {}
        self._next_id = 1

    async def insert(self, *, key_message, author, context, created_at) -> str:
        memory_id = f"scrap_{self._next_id}"
        self._next_id += 1
        self._memories[memory_id] = ScrapbookMemory(
            id=memory_id,
            key_message=key_message,
            author=author,
            context=list(context),
            created_at=created_at,
        )
        return memory_id

    async def delete(self, memory_id: str) -> None:
        self._memories.pop(memory_id, None)

    async def get_random(self) -> Optional[ScrapbookMemory]:
        if not self._memories:
            return None
        return random.choice(list(self._memories.values()))

    async def search(self, query: str, limit: int = 10) -> List[ScrapbookMemory]:
        wanted = set(_terms(query))
        if not wanted:
            return []
        scored = []
        for memory in self._memories.values():
            hits = len(wanted & set(_terms(memory.key_message)))
            if hits:
                scored.append((hits, memory))
        scored.sort(key=lambda item: item[0], reverse=True)
        return [memory for _, memory in scored[:limit]]

    async def get_by_id(self, memory_id: str) -> Optional[ScrapbookMemory]:
        return self._memories.get(memory_id)

    async def get_by_quote(self, quote: str) -> Optional[ScrapbookMemory]:
        for memory in self._memories.values():
            if memory.key_message == quote:
                return memory
        return None


class SqliteScrapbookStore(ScrapbookStore):
    def __init__(self, db_path: str = "memory.db", *, conn: Optional[sqlite3.Connection] = None):
        self.conn = conn or sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scrapbook_memories (
                  id TEXT PRIMARY KEY,
                  key_message TEXT NOT NULL,
                  author TEXT NOT NULL,
                  context TEXT NOT NULL DEFAULT '[]',
                  created_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_scrapbook_created_at ON scrapbook_memories(created_at)"
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_scrapbook_key_message ON scrapbook_memories(key_message)"
            )
            self.conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS scrapbook_search
                USING fts5(memory_id UNINDEXED, key_message)
                """
            )

    async def _run(self, fn: Callable[[], T]) -> T:
        def _locked() -> T:
            with self._lock:
                return fn()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _locked)

    async def insert(self, *, key_message, author, context, created_at) -> str:
        memory_id = str(uuid.uuid4())
        payload = json.dumps([item.to_dict() for item in context])

        def _insert() -> None:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO scrapbook_memories(id, key_message, author, context, created_at) "
                    "VALUES(?,?,?,?,?)",
                    (memory_id, key_message, author, payload, created_at.isoformat()),
                )
                self.conn.execute(
                    "INSERT INTO scrapbook_search(memory_id, key_message) VALUES(?,?)",
                    (memory_id, key_message),
                )

        await self._run(_insert)
        return memory_id

    async def delete(self, memory_id: str) -> None:
        def _delete() -> None:
            with self.conn:
                self.conn.execute("DELETE FROM scrapbook_memories WHERE id=?", (memory_id,))
                self.conn.execute("DELETE FROM scrapbook_search WHERE memory_id=?", (memory_id,))

        await self._run(_delete)

    def _one(self, sql: str, params: tuple = ()) -> Optional[ScrapbookMemory]:
        row = self.conn.execute(sql, params).fetchone()
        return ScrapbookMemory.from_row(row) if row else None

    async def get_random(self) -> Optional[ScrapbookMemory]:
        return await self._run(
            lambda: self._one("SELECT * FROM scrapbook_memories ORDER BY random() LIMIT 1")
        )

    async def search(self, query: str, limit: int = 10) -> List[ScrapbookMemory]:
        terms = _terms(query)
        if not terms:
            return []
        # quote each term so user text cannot inject FTS operators
        match = " OR ".join('"' + term.replace('"', '""') + '"' for term in terms)

        def _search() -> List[ScrapbookMemory]:
            rows = self.conn.execute(
                """
                SELECT m.* FROM scrapbook_search s
                JOIN scrapbook_memories m ON m.id = s.memory_id
                WHERE scrapbook_search MATCH ?
                ORDER BY bm25(scrapbook_search)
                LIMIT ?
                """,
                (match, limit),
            ).fetchall()
            return [ScrapbookMemory.from_row(row) for row in rows]

        return await self._run(_search)

    async def get_by_id(self, memory_id: str) -> Optional[ScrapbookMemory]:
        return await self._run(
            lambda: self._one("SELECT * FROM scrapbook_memories WHERE id=?", (memory_id,))
        )

    async def get_by_quote(self, quote: str) -> Optional[ScrapbookMemory]:
        return await self._run(
            lambda: self._one(
                "SELECT * FROM scrapbook_memories WHERE key_message=? LIMIT 1", (quote,)
            )
        )

    def close(self) -> None:
        self.conn.close()

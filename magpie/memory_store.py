import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, TypeVar

from .models import Memory, cosine_similarity

log = logging.getLogger(__name__)

T = TypeVar("T")


class MemoryStore(ABC):
    """Persistence for memory rows. Strength is only ever changed by MemoryService."""

    @abstractmethod
    async def insert(
        self,
        *,
        content: str,
        embedding: List[float],
        strength: float,
        last_seen_at: datetime,
        created_at: datetime,
    ) -> str: ...

    @abstractmethod
    async def update(
        self,
        memory_id: str,
        *,
        strength: Optional[float] = None,
        last_seen_at: Optional[datetime] = None,
    ) -> None: ...

    @abstractmethod
    async def update_strength_if(
        self,
        memory_id: str,
        *,
        expected: float,
        strength: float,
        last_seen_at: Optional[datetime] = None,
    ) -> bool:
        """Write ``strength`` only if the stored value still equals ``expected``."""

    @abstractmethod
    async def delete(self, memory_id: str) -> None: ...

    @abstractmethod
    async def get(self, memory_id: str) -> Optional[Memory]: ...

    @abstractmethod
    async def find_similar(self, embedding: List[float], top_k: int) -> List[Memory]: ...

    @abstractmethod
    async def find_by_strength_above(self, threshold: float) -> List[Memory]: ...

    @abstractmethod
    async def get_all(self) -> List[Memory]: ...


def _rank_by_similarity(memories: List[Memory], embedding: List[float], top_k: int) -> List[Memory]:
    if top_k <= 0:
        return []
    scored = [(cosine_similarity(embedding, memory.embedding), memory) for memory in memories]
    scored.sort(key=lambda item: item[0], reverse=True)
    return [memory for _, memory in scored[:top_k]]


class InMemoryMemoryStore(MemoryStore):
    def __init__(self) -> None:
        self._memories: Dict[str, Memory] = {}
        self._next_id = 1

    async def insert(self, *, content, embedding, strength, last_seen_at, created_at) -> str:
        memory_id = f"mem_{self._next_id}"
        self._next_id += 1
        self._memories[memory_id] = Memory(
            id=memory_id,
            content=content,
            embedding=list(embedding),
            strength=strength,
            last_seen_at=last_seen_at,
            created_at=created_at,
        )
        return memory_id

    async def update(self, memory_id, *, strength=None, last_seen_at=None) -> None:
        existing = self._memories.get(memory_id)
        if existing is None:
            raise KeyError(f"Memory {memory_id} not found")
        if strength is not None:
            existing.strength = strength
        if last_seen_at is not None:
            existing.last_seen_at = last_seen_at

    async def update_strength_if(self, memory_id, *, expected, strength, last_seen_at=None) -> bool:
        existing = self._memories.get(memory_id)
        if existing is None or existing.strength != expected:
            return False
        await self.update(memory_id, strength=strength, last_seen_at=last_seen_at)
        return True

    async def delete(self, memory_id: str) -> None:
        self._memories.pop(memory_id, None)

    async def get(self, memory_id: str) -> Optional[Memory]:
        return self._memories.get(memory_id)

    async def find_similar(self, embedding: List[float], top_k: int) -> List[Memory]:
        return _rank_by_similarity(list(self._memories.values()), embedding, top_k)

    async def find_by_strength_above(self, threshold: float) -> List[Memory]:
        return [memory for memory in self._memories.values() if memory.strength > threshold]

    async def get_all(self) -> List[Memory]:
        return list(self._memories.values())


class SqliteMemoryStore(MemoryStore):
    """Durable store. Embeddings are JSON text; similarity is ranked in Python."""

    def __init__(self, db_path: str = "memory.db", *, conn: Optional[sqlite3.Connection] = None):
        self.conn = conn or sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self) -> None:
        with self.conn:
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS memories (
                  id TEXT PRIMARY KEY,
                  content TEXT NOT NULL,
                  embedding TEXT NOT NULL,
                  strength REAL NOT NULL DEFAULT 1.0,
                  last_seen_at TEXT NOT NULL,
                  created_at TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memories_strength ON memories(strength)"
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_memories_last_seen_at ON memories(last_seen_at)"
            )

    async def _run(self, fn: Callable[[], T]) -> T:
        def _locked() -> T:
            with self._lock:
                return fn()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, _locked)

    async def insert(self, *, content, embedding, strength, last_seen_at, created_at) -> str:
        memory_id = str(uuid.uuid4())

        def _insert() -> None:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO memories(id, content, embedding, strength, last_seen_at, created_at) "
                    "VALUES(?,?,?,?,?,?)",
                    (
                        memory_id,
                        content,
                        json.dumps(list(embedding)),
                        strength,
                        last_seen_at.isoformat(),
                        created_at.isoformat(),
                    ),
                )

        await self._run(_insert)
        return memory_id

    async def update(self, memory_id, *, strength=None, last_seen_at=None) -> None:
        assignments = []
        params: list = []
        if strength is not None:
            assignments.append("strength=?")
            params.append(strength)
        if last_seen_at is not None:
            assignments.append("last_seen_at=?")
            params.append(last_seen_at.isoformat())
        if not assignments:
            return
        params.append(memory_id)

        def _update() -> int:
            with self.conn:
                cur = self.conn.execute(
                    f"UPDATE memories SET {', '.join(assignments)} WHERE id=?", params
                )
                return cur.rowcount

        if not await self._run(_update):
            raise KeyError(f"Memory {memory_id} not found")

    async def update_strength_if(self, memory_id, *, expected, strength, last_seen_at=None) -> bool:
        def _swap() -> int:
            with self.conn:
                if last_seen_at is not None:
                    cur = self.conn.execute(
                        "UPDATE memories SET strength=?, last_seen_at=? WHERE id=? AND strength=?",
                        (strength, last_seen_at.isoformat(), memory_id, expected),
                    )
                else:
                    cur = self.conn.execute(
                        "UPDATE memories SET strength=? WHERE id=? AND strength=?",
                        (strength, memory_id, expected),
                    )
                return cur.rowcount

        return bool(await self._run(_swap))

    async def delete(self, memory_id: str) -> None:
        def _delete() -> None:
            with self.conn:
                self.conn.execute("DELETE FROM memories WHERE id=?", (memory_id,))

        await self._run(_delete)

    async def get(self, memory_id: str) -> Optional[Memory]:
        def _get() -> Optional[Memory]:
            row = self.conn.execute("SELECT * FROM memories WHERE id=?", (memory_id,)).fetchone()
            return Memory.from_row(row) if row else None

        return await self._run(_get)

    def _select(self, sql: str, params: tuple = ()) -> List[Memory]:
        return [Memory.from_row(row) for row in self.conn.execute(sql, params).fetchall()]

    async def find_similar(self, embedding: List[float], top_k: int) -> List[Memory]:
        memories = await self._run(lambda: self._select("SELECT * FROM memories"))
        return _rank_by_similarity(memories, embedding, top_k)

    async def find_by_strength_above(self, threshold: float) -> List[Memory]:
        return await self._run(
            lambda: self._select("SELECT * FROM memories WHERE strength > ?", (threshold,))
        )

    async def get_all(self) -> List[Memory]:
        return await self._run(lambda: self._select("SELECT * FROM memories"))

    def close(self) -> None:
        self.conn.close()

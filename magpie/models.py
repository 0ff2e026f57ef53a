import json
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

DAY_SECONDS = 60 * 60 * 24


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(utcnow().timestamp() * 1000)


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Memory:
    id: str
    content: str
    embedding: List[float]
    strength: float
    last_seen_at: datetime
    created_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Memory":
        try:
            embedding = json.loads(row["embedding"] or "[]")
        except json.JSONDecodeError:
            embedding = []
        return cls(
            id=str(row["id"]),
            content=row["content"],
            embedding=[float(x) for x in embedding],
            strength=float(row["strength"]),
            last_seen_at=_parse_dt(row["last_seen_at"]),
            created_at=_parse_dt(row["created_at"]),
        )

    def days_since_seen(self, now: Optional[datetime] = None) -> float:
        now = now or utcnow()
        return max(0.0, (now - self.last_seen_at).total_seconds() / DAY_SECONDS)


@dataclass
class ContextMessage:
    author: str
    content: str
    timestamp: int

    def to_dict(self) -> dict:
        return {"author": self.author, "content": self.content, "timestamp": self.timestamp}

    @classmethod
    def from_dict(cls, data: dict) -> "ContextMessage":
        return cls(
            author=str(data.get("author", "")),
            content=str(data.get("content", "")),
            timestamp=int(data.get("timestamp") or 0),
        )


@dataclass
class ScrapbookMemory:
    id: str
    key_message: str
    author: str
    context: List[ContextMessage]
    created_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ScrapbookMemory":
        try:
            raw_context = json.loads(row["context"] or "[]")
        except json.JSONDecodeError:
            raw_context = []
        return cls(
            id=str(row["id"]),
            key_message=row["key_message"],
            author=row["author"],
            context=[ContextMessage.from_dict(item) for item in raw_context if isinstance(item, dict)],
            created_at=_parse_dt(row["created_at"]),
        )


@dataclass
class LabeledMessage:
    """A user turn as fed to scrapbook detection."""

    id: str
    author: str
    content: str
    timestamp: int


@dataclass
class AgentMessage:
    id: str
    role: str
    content: str
    timestamp: int
    author: Optional[str] = None
    images: List[str] = field(default_factory=list)


@dataclass
class AgentContext:
    channel_id: str
    is_dm: bool = False
    history: List[AgentMessage] = field(default_factory=list)
    last_scrapbook_memory_id: Optional[str] = None


@dataclass
class IncomingMessage:
    id: str
    content: str
    author_id: str
    author_name: str
    channel_id: str
    timestamp: int
    images: List[str] = field(default_factory=list)
    is_dm: bool = False
    mentions_bot: bool = False

    def to_agent_message(self) -> AgentMessage:
        return AgentMessage(
            id=self.id,
            role="user",
            content=self.content,
            timestamp=self.timestamp,
            author=self.author_name,
            images=list(self.images),
        )


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any]


@dataclass
class ToolStepDone:
    text: str
    done: bool = True


@dataclass
class ToolStepContinue:
    tool_calls: List[ToolCall]
    response_id: str
    done: bool = False


ToolStep = Union[ToolStepDone, ToolStepContinue]


@dataclass
class ToolResult:
    success: bool
    message: str = ""
    error: str = ""

    @classmethod
    def ok(cls, message: str) -> "ToolResult":
        return cls(success=True, message=message)

    @classmethod
    def fail(cls, error: str) -> "ToolResult":
        return cls(success=False, error=error)


@dataclass
class SentMessage:
    message_id: str


@dataclass
class AgentResponse:
    text: Optional[str]
    tool_calls_made: List[ToolCall] = field(default_factory=list)
    timed_out: bool = False


@dataclass
class ReferenceImage:
    data: str
    mime_type: str


def cosine_similarity(vec_a: List[float], vec_b: List[float]) -> float:
    if not vec_a or not vec_b or len(vec_a) != len(vec_b):
        return 0.0
    dot = sum(x * y for x, y in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(x * x for x in vec_a))
    norm_b = math.sqrt(sum(y * y for y in vec_b))
    if not norm_a or not norm_b:
        return 0.0
    return dot / (norm_a * norm_b)

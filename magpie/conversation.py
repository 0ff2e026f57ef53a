import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .models import AgentContext, AgentMessage, LabeledMessage, now_ms

HISTORY_LIMIT = 12
SILENT = "(silent)"


def relative_time(timestamp_ms: int, now: Optional[int] = None) -> str:
    now = now_ms() if now is None else now
    seconds = max(0, round((now - timestamp_ms) / 1000))
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{round(seconds / 60)}m ago"
    return f"{round(seconds / 3600)}h ago"


def speaker_line(message: AgentMessage) -> str:
    return f"{message.author}: {message.content}" if message.author else message.content


def format_timeline(history: Iterable[AgentMessage], *, now: Optional[int] = None) -> str:
    now = now_ms() if now is None else now
    return "\n".join(
        f"[{relative_time(message.timestamp, now)}] {message.role}: {speaker_line(message)}" for message in history
    )


def is_extractable(message: AgentMessage) -> bool:
    return message.role == "user" and bool(message.content) and message.content != SILENT


def labeled_user_turns(history: Iterable[AgentMessage]) -> List[LabeledMessage]:
    return [
        LabeledMessage(id=m.id, author=m.author or "unknown", content=m.content, timestamp=m.timestamp)
        for m in history
        if m.role == "user"
    ]


@dataclass
class ConversationState:
    context: AgentContext
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    messages_since_extraction: int = 0
    messages_since_detection: int = 0
    pending_batch: List[str] = field(default_factory=list)
    last_activity_at: float = field(default_factory=time.monotonic)
    starter_sent: bool = False
    backfilled: bool = False


class ConversationStore:
    """Per-channel history. One writer per channel: the ingestion path."""

    def __init__(self, history_limit: int = HISTORY_LIMIT) -> None:
        self.history_limit = history_limit
        self._states: Dict[str, ConversationState] = {}

    def state(self, channel_id: str, *, is_dm: Optional[bool] = None) -> ConversationState:
        """Get or create the channel state. ``is_dm=None`` leaves the DM flag untouched."""
        state = self._states.get(channel_id)
        if state is None:
            state = ConversationState(context=AgentContext(channel_id=channel_id, is_dm=bool(is_dm)))
            self._states[channel_id] = state
        elif is_dm is not None:
            state.context.is_dm = is_dm
        return state

    def get(self, channel_id: str) -> Optional[ConversationState]:
        return self._states.get(channel_id)

    def append(self, channel_id: str, message: AgentMessage, *, is_dm: Optional[bool] = None) -> ConversationState:
        state = self.state(channel_id, is_dm=is_dm)
        history = state.context.history
        if any(existing.id == message.id for existing in history):
            return state
        history.append(message)
        if len(history) > self.history_limit:
            del history[: len(history) - self.history_limit]
        if message.role == "user":
            state.messages_since_extraction += 1
            state.messages_since_detection += 1
            state.last_activity_at = time.monotonic()
            state.starter_sent = False
        if is_extractable(message):
            state.pending_batch.append(speaker_line(message))
        return state

    def prepend_backfill(self, channel_id: str, messages: List[AgentMessage], *, is_dm: Optional[bool] = None) -> None:
        state = self.state(channel_id, is_dm=is_dm)
        known = {m.id for m in state.context.history}
        older = [m for m in messages if m.id not in known]
        merged = sorted(older + state.context.history, key=lambda m: m.timestamp)
        state.context.history[:] = merged[-self.history_limit :]
        state.backfilled = True

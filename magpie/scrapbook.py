import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from .errors import ServiceError
from .models import ContextMessage, LabeledMessage, ScrapbookMemory, utcnow
from .scrapbook_store import ScrapbookStore

log = logging.getLogger(__name__)

CONTEXT_WINDOW_SIZE = 20
COOLDOWN_MS = 60_000
MIN_DETECTION_MESSAGES = 3
DEFAULT_CHANNEL = "_global"

DETECTION_SYSTEM = """You analyse chat conversations to find exceptionally memorable or quotable moments.

Given recent chat messages with IDs, decide whether any single message stands out as particularly memorable, funny, profound or quotable.

Be VERY conservative. Most conversations have nothing worth saving. Only pick a message if it is genuinely:
- A hilarious or witty comment
- An unexpectedly profound statement
- A memorable inside-joke moment
- Something that would be fun to reminisce about later

Do NOT pick routine conversation, questions without interesting answers, generic statements or bot messages.
Return the ID of the key message, or null if nothing stands out."""

DETECTION_SCHEMA = {
    "type": "object",
    "properties": {
        "keyMessageId": {
            "type": ["string", "null"],
            "description": "The ID of the most memorable message, or null if nothing stands out",
        },
    },
    "required": ["keyMessageId"],
    "additionalProperties": False,
}


class ScrapbookService:
    def __init__(self, store: ScrapbookStore, llm, *, model: Optional[str] = None):
        self.store = store
        self.llm = llm
        self.model = model
        self._last_saved_at: Dict[str, int] = {}
        self._save_locks: Dict[str, asyncio.Lock] = {}

    async def detect_key_message(self, messages: Sequence[LabeledMessage]) -> Optional[str]:
        if len(messages) < MIN_DETECTION_MESSAGES:
            return None
        listing = "\n".join(f"[{m.id}] {m.author}: {m.content}" for m in messages)
        try:
            result = await self.llm.chat_structured(
                [
                    {"role": "system", "content": DETECTION_SYSTEM},
                    {
                        "role": "user",
                        "content": f"Analyse these messages and identify the most memorable one (if any):\n\n{listing}",
                    },
                ],
                schema=DETECTION_SCHEMA,
                schema_name="scrapbookDetection",
                model=self.model,
            )
        except ServiceError as exc:
            log.error("Failed to detect key message for scrapbook: %s", exc)
            return None
        key_id = result.get("keyMessageId")
        if not key_id:
            return None
        key_id = str(key_id)
        if not any(m.id == key_id for m in messages):
            log.warning("Scrapbook detection returned unknown message id %s", key_id)
            return None
        log.info("Detected memorable message %s", key_id)
        return key_id

    def last_saved_at(self, channel_id: Optional[str] = None) -> int:
        return self._last_saved_at.get(channel_id or DEFAULT_CHANNEL, 0)

    async def save_memory(
        self,
        key_message: LabeledMessage,
        all_messages: Sequence[LabeledMessage],
        channel_id: Optional[str] = None,
    ) -> Optional[str]:
        key_index = next((idx for idx, m in enumerate(all_messages) if m.id == key_message.id), -1)
        if key_index == -1:
            log.warning("Key message %s not found in message list", key_message.id)
            return None

        channel = channel_id or DEFAULT_CHANNEL
        async with self._save_locks.setdefault(channel, asyncio.Lock()):
            return await self._save_window(key_message, all_messages, key_index, channel)

    async def _save_window(
        self,
        key_message: LabeledMessage,
        all_messages: Sequence[LabeledMessage],
        key_index: int,
        channel: str,
    ) -> Optional[str]:
        last = self._last_saved_at.get(channel, 0)
        if last > 0 and abs(key_message.timestamp - last) < COOLDOWN_MS:
            log.debug("Skipping scrapbook save in %s: too soon after the last one", channel)
            return None

        half = CONTEXT_WINDOW_SIZE // 2
        start = max(0, key_index - half)
        end = min(len(all_messages) - 1, key_index + half)
        context = [
            ContextMessage(author=m.author, content=m.content, timestamp=m.timestamp)
            for m in all_messages[start : end + 1]
        ]
        try:
            memory_id = await self.store.insert(
                key_message=key_message.content,
                author=key_message.author,
                context=context,
                created_at=utcnow(),
            )
        except Exception as exc:
            log.error("Failed to save scrapbook memory: %s", exc)
            return None
        self._last_saved_at[channel] = key_message.timestamp
        log.info("Saved scrapbook memory %s: %r by %s", memory_id, key_message.content, key_message.author)
        return memory_id

    async def get_random_memory(self) -> Optional[ScrapbookMemory]:
        try:
            return await self.store.get_random()
        except Exception as exc:
            log.error("Failed to get random scrapbook memory: %s", exc)
            return None

    async def search_memories(self, query: str, limit: int = 10) -> List[ScrapbookMemory]:
        try:
            return await self.store.search(query, limit)
        except Exception as exc:
            log.error("Failed to search scrapbook memories: %s", exc)
            return []

    async def delete_memory(self, memory_id: str) -> bool:
        try:
            await self.store.delete(memory_id)
        except Exception as exc:
            log.error("Failed to delete scrapbook memory %s: %s", memory_id, exc)
            return False
        log.info("Deleted scrapbook memory %s", memory_id)
        return True

    async def get_memory_by_id(self, memory_id: str) -> Optional[ScrapbookMemory]:
        try:
            return await self.store.get_by_id(memory_id)
        except Exception as exc:
            log.error("Failed to get scrapbook memory %s: %s", memory_id, exc)
            return None

    async def get_memory_by_quote(self, quote: str) -> Optional[ScrapbookMemory]:
        try:
            return await self.store.get_by_quote(quote)
        except Exception as exc:
            log.error("Failed to get scrapbook memory by quote %r: %s", quote, exc)
            return None

    @staticmethod
    def format_context(memory: ScrapbookMemory) -> str:
        return "\n".join(f"<{m.author}> {m.content}" for m in memory.context)

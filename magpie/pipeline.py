import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, List, Optional, Set

from .agent import TIMEOUT_TEXT, Agent
from .conversation import SILENT, ConversationState, ConversationStore, labeled_user_turns
from .decision import ResponseDecisionGate
from .memory import MemoryService
from .models import AgentMessage, IncomingMessage, now_ms
from .scrapbook import ScrapbookService

log = logging.getLogger(__name__)

EXTRACTION_INTERVAL = 10
SCRAPBOOK_DETECTION_INTERVAL = 6
AUTO_REACT_PROBABILITY = 0.15
INACTIVITY_TIMEOUT = 90 * 60
STARTER_CHECK_INTERVAL = 60

Backfill = Callable[[str], Awaitable[List[AgentMessage]]]


def _log_task_failure(task: "asyncio.Task") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.error("Background task %s failed: %s", task.get_name(), exc, exc_info=exc)


class MessagePipeline:
    """Ingestion path for one platform: history first, then background work, then the gate and the agent."""

    def __init__(
        self,
        agent: Agent,
        gate: ResponseDecisionGate,
        memory: MemoryService,
        scrapbook: ScrapbookService,
        conversations: Optional[ConversationStore] = None,
        *,
        main_channel_id: str = "",
        auto_react_probability: float = AUTO_REACT_PROBABILITY,
        rng: Optional[random.Random] = None,
    ):
        self.agent = agent
        self.gate = gate
        self.memory = memory
        self.scrapbook = scrapbook
        self.conversations = conversations or ConversationStore()
        self.main_channel_id = main_channel_id
        self.auto_react_probability = auto_react_probability
        self.rng = rng or random.Random()
        self._tasks: Set[asyncio.Task] = set()

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def drain(self) -> None:
        """Wait for outstanding background work; used on shutdown."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def tracks_scrapbook(self, channel_id: str) -> bool:
        return not self.main_channel_id or channel_id == self.main_channel_id

    async def handle(self, message: IncomingMessage, *, backfill: Optional[Backfill] = None) -> Optional[str]:
        """Record ``message`` and return the reply text to send, if any."""
        channel_id = message.channel_id
        state = self.conversations.state(channel_id, is_dm=message.is_dm)
        async with state.lock:
            if backfill is not None and not state.backfilled:
                try:
                    earlier = await backfill(channel_id)
                except Exception as exc:
                    log.warning("History backfill failed for %s: %s", channel_id, exc)
                    earlier = []
                self.conversations.prepend_backfill(channel_id, earlier, is_dm=message.is_dm)
            self.conversations.append(channel_id, message.to_agent_message(), is_dm=message.is_dm)
            self._schedule_background_work(state)

        context = state.context
        if not await self.gate.should_respond(message, context):
            if self.rng.random() < self.auto_react_probability:
                self._spawn(self.agent.auto_react(context, message.to_agent_message()), f"auto-react-{message.id}")
            return None

        response = await self.agent.generate_response(context, message.id)
        if response.timed_out:
            return TIMEOUT_TEXT
        text = (response.text or "").strip()
        if not text:
            await self.record_reply(channel_id, f"silent-{message.id}", SILENT)
            return None
        return text

    async def record_reply(self, channel_id: str, message_id: str, content: str) -> None:
        state = self.conversations.state(channel_id)
        async with state.lock:
            self.conversations.append(
                channel_id, AgentMessage(id=message_id, role="assistant", content=content, timestamp=now_ms())
            )

    def _schedule_background_work(self, state: ConversationState) -> None:
        channel_id = state.context.channel_id
        if state.messages_since_extraction >= EXTRACTION_INTERVAL:
            state.messages_since_extraction = 0
            batch = "\n".join(state.pending_batch)
            state.pending_batch.clear()
            self._spawn(self.memory.extract_from_batch(batch), f"extract-{channel_id}")
        if state.messages_since_detection >= SCRAPBOOK_DETECTION_INTERVAL:
            state.messages_since_detection = 0
            if self.tracks_scrapbook(channel_id):
                turns = labeled_user_turns(state.context.history)
                self._spawn(self._detect_scrapbook(channel_id, turns), f"scrapbook-{channel_id}")

    async def _detect_scrapbook(self, channel_id: str, turns) -> Optional[str]:
        key_id = await self.scrapbook.detect_key_message(turns)
        if key_id is None:
            return None
        key = next(m for m in turns if m.id == key_id)
        return await self.scrapbook.save_memory(key, turns, channel_id)

    async def start_conversation_if_idle(self, now: Optional[float] = None) -> bool:
        """Post one scrapbook memory to the main channel after a long silence."""
        if not self.main_channel_id:
            return False
        state = self.conversations.get(self.main_channel_id)
        if state is None or state.starter_sent:
            return False
        now = time.monotonic() if now is None else now
        if now - state.last_activity_at < INACTIVITY_TIMEOUT:
            return False
        memory = await self.scrapbook.get_random_memory()
        state.starter_sent = True
        if memory is None:
            return False
        log.info("Channel %s idle, resurfacing scrapbook memory %s", self.main_channel_id, memory.id)
        await self.agent.post_scrapbook_memory(self.main_channel_id, memory)
        state.context.last_scrapbook_memory_id = memory.id
        return True

    async def run_conversation_starter(self, interval: float = STARTER_CHECK_INTERVAL) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.start_conversation_if_idle()
            except Exception as exc:
                log.warning("Conversation starter check failed: %s", exc)

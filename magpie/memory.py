import logging
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from .errors import ServiceError
from .memory_store import MemoryStore
from .models import Memory, utcnow

log = logging.getLogger(__name__)

DECAY_RATE = 0.1
REINFORCEMENT_BOOST = 0.3
CONTRADICTION_PENALTY = 0.5
PURGE_THRESHOLD = 0.05
MAX_STRENGTH = 5.0
INITIAL_STRENGTH = 1.0
SIMILAR_CANDIDATES = 10
UPDATE_ATTEMPTS = 3

EXTRACTION_SYSTEM = """You extract factual observations and hypotheses about people from conversations.

Focus on:
- Personal facts (interests, preferences, job, location, relationships)
- Behavioural patterns (how someone typically acts or responds)
- Opinions and beliefs they've expressed
- Relationships between people
- Significant events or experiences mentioned

Write each fact as a standalone statement that makes sense without the original conversation.
Include the person's name in each fact.
Only extract meaningful facts with long-term relevance; skip trivial statements and anything that only matters to the current conversation.
Be conservative: it's perfectly OK to return an empty array if nothing meaningful was said."""

EXTRACTION_SCHEMA = {
    "type": "object",
    "properties": {
        "facts": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "content": {"type": "string", "description": "The factual statement or hypothesis"},
                },
                "required": ["content"],
                "additionalProperties": False,
            },
        },
    },
    "required": ["facts"],
    "additionalProperties": False,
}

RELATION_SYSTEM = """You are analysing how a new observation relates to existing memories.

Given a new observation and a list of existing memories, decide:
1. Which existing memories are REINFORCED (the observation supports or confirms them)
2. Which existing memories are CONTRADICTED (the observation genuinely conflicts with them)
3. Whether the observation also contains NEW information no existing memory covers

Only mark a memory reinforced when the observation clearly supports it, and contradicted only on a real conflict.
Empty arrays are fine."""

RELATION_SCHEMA = {
    "type": "object",
    "properties": {
        "reinforces": {
            "type": "array",
            "items": {"type": "string"},
            "description": "IDs of memories this observation reinforces",
        },
        "contradicts": {
            "type": "array",
            "items": {"type": "string"},
            "description": "IDs of memories this observation contradicts",
        },
        "isNew": {
            "type": "boolean",
            "description": "Whether this contains information not in existing memories",
        },
    },
    "required": ["reinforces", "contradicts", "isNew"],
    "additionalProperties": False,
}


def effective_strength(memory: Memory, now: Optional[datetime] = None) -> float:
    return memory.strength * math.exp(-DECAY_RATE * memory.days_since_seen(now))


def reinforced(strength: float) -> float:
    return min(strength + REINFORCEMENT_BOOST, MAX_STRENGTH)


def contradicted(strength: float) -> float:
    return strength * (1 - CONTRADICTION_PENALTY)


class MemoryService:
    """Long-term facts about people: extraction, decay, reinforcement, retrieval."""

    def __init__(self, store: MemoryStore, llm, *, model: Optional[str] = None):
        self.store = store
        self.llm = llm
        self.model = model

    async def extract_from_batch(self, conversation_batch: str) -> int:
        """Turn a batch of chat lines into memories. Returns how many facts were processed."""
        if not (conversation_batch or "").strip():
            log.debug("memory extraction skipped: empty batch")
            return 0
        try:
            result = await self.llm.chat_structured(
                [
                    {"role": "system", "content": EXTRACTION_SYSTEM},
                    {
                        "role": "user",
                        "content": f"Extract facts from this conversation:\n\n{conversation_batch}",
                    },
                ],
                schema=EXTRACTION_SCHEMA,
                schema_name="extractedFacts",
                model=self.model,
            )
        except ServiceError as exc:
            log.error("Failed to extract facts: %s", exc)
            return 0
        facts = [
            str(item.get("content", "")).strip()
            for item in result.get("facts") or []
            if isinstance(item, dict)
        ]
        facts = [fact for fact in facts if fact]
        if not facts:
            return 0
        for fact in facts:
            try:
                await self._process_observation(fact)
            except ServiceError as exc:
                log.error("Skipping observation %r: %s", fact[:80], exc)
            except Exception as exc:
                log.error("Memory store failed on observation %r: %s", fact[:80], exc)
        await self.purge_stale_memories()
        return len(facts)

    async def _process_observation(self, observation: str) -> None:
        embedding = await self.llm.embed(observation)
        similar = await self.store.find_similar(embedding, SIMILAR_CANDIDATES)
        if not similar:
            await self._create_memory(observation, embedding)
            return
        analysis = await self._analyse_relations(observation, similar)
        known = {memory.id for memory in similar}
        for memory_id in analysis["reinforces"]:
            if memory_id in known:
                await self._reinforce(memory_id)
        for memory_id in analysis["contradicts"]:
            if memory_id in known:
                await self._weaken(memory_id)
        if analysis["isNew"]:
            await self._create_memory(observation, embedding)

    async def _analyse_relations(self, observation: str, candidates: Sequence[Memory]) -> Dict:
        candidate_list = "\n".join(f"- [{m.id}]: {m.content}" for m in candidates)
        user_message = (
            f'New observation: "{observation}"\n\n'
            f"Existing memories:\n{candidate_list}\n\n"
            "Analyse how the new observation relates to these memories."
        )
        result = await self.llm.chat_structured(
            [
                {"role": "system", "content": RELATION_SYSTEM},
                {"role": "user", "content": user_message},
            ],
            schema=RELATION_SCHEMA,
            schema_name="memoryAnalysis",
            model=self.model,
        )
        return {
            "reinforces": [str(x) for x in result.get("reinforces") or []],
            "contradicts": [str(x) for x in result.get("contradicts") or []],
            "isNew": bool(result.get("isNew")),
        }

    async def _create_memory(self, content: str, embedding: List[float]) -> str:
        now = utcnow()
        memory_id = await self.store.insert(
            content=content,
            embedding=embedding,
            strength=INITIAL_STRENGTH,
            last_seen_at=now,
            created_at=now,
        )
        log.info("Created memory %s: %s", memory_id, content)
        return memory_id

    async def _reinforce(self, memory_id: str) -> None:
        for _ in range(UPDATE_ATTEMPTS):
            memory = await self.store.get(memory_id)
            if memory is None:
                return
            new_strength = reinforced(memory.strength)
            if await self.store.update_strength_if(
                memory_id, expected=memory.strength, strength=new_strength, last_seen_at=utcnow()
            ):
                log.info("Reinforced memory %s: %.2f -> %.2f", memory_id, memory.strength, new_strength)
                return
        log.warning("Gave up reinforcing memory %s after concurrent updates", memory_id)

    async def _weaken(self, memory_id: str) -> None:
        for _ in range(UPDATE_ATTEMPTS):
            memory = await self.store.get(memory_id)
            if memory is None:
                return
            new_strength = contradicted(memory.strength)
            if await self.store.update_strength_if(
                memory_id, expected=memory.strength, strength=new_strength
            ):
                log.info("Weakened memory %s: %.2f -> %.2f", memory_id, memory.strength, new_strength)
                return
        log.warning("Gave up weakening memory %s after concurrent updates", memory_id)

    async def get_relevant_memories(self, conversation_text: str, top_k: int) -> List[Memory]:
        return await self._retrieve(conversation_text, top_k, purpose="retrieval")

    async def search_memories(self, query: str, top_k: int) -> List[Memory]:
        return await self._retrieve(query, top_k, purpose="search")

    async def _retrieve(self, text: str, top_k: int, *, purpose: str) -> List[Memory]:
        if top_k <= 0 or not (text or "").strip():
            return []
        try:
            embedding = await self.llm.embed(text)
        except ServiceError as exc:
            log.error("Failed to embed text for memory %s: %s", purpose, exc)
            return []
        try:
            candidates = await self.store.find_similar(embedding, top_k * 2)
        except Exception as exc:
            log.error("Failed to find similar memories for %s: %s", purpose, exc)
            return []
        now = utcnow()
        scored = [(effective_strength(memory, now), memory) for memory in candidates]
        scored.sort(key=lambda item: item[0], reverse=True)
        return [memory for score, memory in scored if score >= PURGE_THRESHOLD][:top_k]

    async def purge_stale_memories(self) -> int:
        try:
            memories = await self.store.get_all()
        except Exception as exc:
            log.error("Failed to list memories for purge: %s", exc)
            return 0
        now = utcnow()
        purged = 0
        for memory in memories:
            score = effective_strength(memory, now)
            if score >= PURGE_THRESHOLD:
                continue
            try:
                await self.store.delete(memory.id)
            except Exception as exc:
                log.error("Failed to purge memory %s: %s", memory.id, exc)
                continue
            log.info("Purged memory %s (%.3f): %s", memory.id, score, memory.content)
            purged += 1
        return purged

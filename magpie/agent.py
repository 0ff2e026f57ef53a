import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .channel import ChannelAdapter
from .config import PersonaConfig
from .conversation import SILENT, relative_time
from .entities import EntityResolver
from .errors import ServiceError
from .memory import MemoryService
from .models import (
    AgentContext,
    AgentMessage,
    AgentResponse,
    ReferenceImage,
    ScrapbookMemory,
    ToolCall,
    ToolStepDone,
    now_ms,
    utcnow,
)
from .scrapbook import ScrapbookService
from .tools import TOOLS, TOOLS_BY_NAME, ToolEffect, validate_arguments

log = logging.getLogger(__name__)

MAX_TOOL_ITERATIONS = 10
FALLBACK_TEXT = "something broke, back in a bit"
TIMEOUT_TEXT = "got lost in my own head there, ask me again"
MEMORY_CONTEXT_LIMIT = 10
MEMORY_SEARCH_LIMIT = 10
SCRAPBOOK_SEARCH_LIMIT = 5
MAX_AUTO_REACTIONS = 3
GIF_FRAMES = 9
DATA_URI = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

GifAssembler = Callable[[bytes], Awaitable[bytes]]

AUTO_REACT_SCHEMA = {
    "type": "object",
    "properties": {
        "emojis": {
            "type": "array",
            "items": {"type": "string", "description": "Custom emoji name or Unicode emoji"},
            "description": "0-3 emoji to react with",
        },
    },
    "required": ["emojis"],
    "additionalProperties": False,
}

IMAGE_PROMPT_SCHEMA = {
    "type": "object",
    "properties": {"prompt": {"type": "string", "description": "The image generation prompt"}},
    "required": ["prompt"],
    "additionalProperties": False,
}

ILLUSTRATION_SYSTEM = """You write artistic image prompts based on chat conversations.
Given a chat quote and the conversation around it, write a whimsical, surreal prompt that captures the scene and mood of the moment rather than depicting it literally.
Keep it under 100 words.
Any reference images are for likeness only and must not be pasted into the output."""


@dataclass
class MessageReference:
    id: str
    role: str
    content: str
    author: Optional[str] = None


@dataclass
class ToolLoopState:
    """Transcript of one generate_response call plus the service's continuation handle."""

    transcript: List[Dict[str, Any]]
    continuation: Optional[str] = None
    sent: int = 0

    def outgoing(self) -> List[Dict[str, Any]]:
        if self.continuation is None:
            return list(self.transcript)
        return self.transcript[self.sent :]

    def advance(self, continuation: str) -> None:
        self.continuation = continuation
        self.sent = len(self.transcript)

    def add_tool_result(self, call: ToolCall, result: str) -> None:
        self.transcript.append({"role": "tool", "tool_call_id": call.id, "content": result})


@dataclass
class ToolExecution:
    context: AgentContext
    trigger_message_id: str
    known_message_ids: Set[str] = field(default_factory=set)

    @property
    def channel_id(self) -> str:
        return self.context.channel_id


def format_scrapbook_quote(memory: ScrapbookMemory) -> str:
    return f"> {memory.key_message}\n- {memory.author}"


def format_scrapbook_context(memory: ScrapbookMemory) -> str:
    lines = ScrapbookService.format_context(memory)
    return f'**context for "{memory.key_message}":**\n```\n{lines}\n```'


def gif_prompt(prompt: str, frames: int = GIF_FRAMES) -> str:
    grid = int(math.sqrt(frames))
    return (
        f"{prompt}\n\nDraw this as a {grid}x{grid} grid of {frames} equally sized animation frames, "
        "read left to right, top to bottom, forming a smooth loop. Plain flat background, "
        "no borders or gaps between frames, the subject in the same position in every cell."
    )


def conversation_images(context: AgentContext) -> List[ReferenceImage]:
    images = []
    for message in context.history:
        for uri in message.images:
            match = DATA_URI.match(uri)
            if match:
                images.append(ReferenceImage(data=match.group(2), mime_type=match.group(1)))
    return images


class Agent:
    def __init__(
        self,
        llm,
        memory: MemoryService,
        scrapbook: ScrapbookService,
        entities: EntityResolver,
        channel: ChannelAdapter,
        *,
        persona: PersonaConfig,
        gif_assembler: Optional[GifAssembler] = None,
        fast_model: Optional[str] = None,
        max_iterations: int = MAX_TOOL_ITERATIONS,
    ):
        self.llm = llm
        self.memory = memory
        self.scrapbook = scrapbook
        self.entities = entities
        self.channel = channel
        self.persona = persona
        self.gif_assembler = gif_assembler
        self.fast_model = fast_model
        self.max_iterations = max_iterations
        self._handlers: Dict[str, Callable[[Dict[str, Any], ToolExecution], Awaitable[str]]] = {
            "react": self._tool_react,
            "generate_image": self._tool_generate_image,
            "search_memory": self._tool_search_memory,
            "get_scrapbook_memory": self._tool_get_scrapbook_memory,
            "search_scrapbook": self._tool_search_scrapbook,
            "get_scrapbook_context": self._tool_get_scrapbook_context,
            "delete_scrapbook_memory": self._tool_delete_scrapbook_memory,
        }

    async def generate_response(self, context: AgentContext, trigger_message_id: str) -> AgentResponse:
        messages, references = await self.build_model_context(context)
        execution = ToolExecution(
            context=context,
            trigger_message_id=trigger_message_id,
            known_message_ids={ref.id for ref in references} | {trigger_message_id},
        )
        state = ToolLoopState(transcript=messages)
        tools = [tool.schema() for tool in TOOLS]
        calls_made: List[ToolCall] = []

        for iteration in range(self.max_iterations):
            try:
                step = await self.llm.chat_with_tools_step(
                    state.outgoing(), tools=tools, previous_response_id=state.continuation
                )
            except ServiceError as exc:
                log.error("Tool step failed on iteration %d: %s", iteration, exc)
                return AgentResponse(text=FALLBACK_TEXT, tool_calls_made=calls_made)

            if isinstance(step, ToolStepDone):
                return AgentResponse(text=step.text, tool_calls_made=calls_made)

            state.advance(step.response_id)
            log.info("Executing %d tool call(s) on iteration %d", len(step.tool_calls), iteration)
            for call in step.tool_calls:
                calls_made.append(call)
                result = await self.execute_tool_call(call, execution)
                state.add_tool_result(call, result)

        log.warning("Tool loop hit %d iterations without a final answer", self.max_iterations)
        return AgentResponse(text=None, tool_calls_made=calls_made, timed_out=True)

    async def execute_tool_call(self, call: ToolCall, execution: ToolExecution) -> str:
        spec = TOOLS_BY_NAME.get(call.name)
        handler = self._handlers.get(call.name)
        if spec is None or handler is None:
            return f"Unknown tool: {call.name}"
        problem = validate_arguments(spec, call.arguments)
        if problem:
            log.warning("Rejected %s call: %s", call.name, problem)
            return f"Invalid arguments for {call.name}: {problem}"
        try:
            return await handler(call.arguments, execution)
        except Exception as exc:
            log.exception("Tool %s failed: %s", call.name, exc)
            return f"{call.name} failed: {exc}"

    def format_context_with_ids(self, context: AgentContext) -> Tuple[str, List[MessageReference]]:
        now = now_ms()
        lines = []
        references = []
        for message in context.history:
            speaker = f"{message.author}: " if message.author else ""
            lines.append(
                f"[{relative_time(message.timestamp, now)}] [{message.id}] {message.role}: {speaker}{message.content}"
            )
            if message.role == "assistant" and message.content == SILENT:
                continue
            references.append(
                MessageReference(id=message.id, role=message.role, content=message.content, author=message.author)
            )
        return "\n".join(lines), references

    def _system_prompt(
        self,
        references: List[MessageReference],
        emoji: List[str],
        entities: List[str],
        memories: List[str],
    ) -> str:
        capabilities = []
        for tool in TOOLS:
            suffix = " (POSTS TO CHANNEL)" if tool.effect is ToolEffect.DIRECT else ""
            capabilities.append(f"- {tool.name}: {tool.description}{suffix}")
        direct = ", ".join(tool.name for tool in TOOLS if tool.effect is ToolEffect.DIRECT)
        reference_lines = "\n".join(
            f"- {ref.id}: {ref.role}{f' ({ref.author})' if ref.author else ''}: {ref.content}" for ref in references
        )
        sections = [
            self.persona.get_prompt(),
            f"Current date: {utcnow().isoformat()}\nRespond in lowercase only.",
            "You have these tools:\n" + "\n".join(capabilities),
            (
                f"IMPORTANT: {direct} post their results straight to the channel. Do not repeat or summarise "
                "what they showed. Your final text is sent as a message; an empty final text sends nothing, "
                "which is what you want after those tools unless someone asked for more."
            ),
            f"Message references in context (use these IDs when reacting):\n{reference_lines}",
        ]
        if emoji:
            sections.append(
                "Available custom emoji: " + ", ".join(emoji) + "\nYou can use standard Unicode emoji or custom emoji names."
            )
        if entities:
            sections.append(
                "When generating images you can feature these people/things (we have reference images): "
                + ", ".join(entities)
                + ". Name them in the prompt to use their likeness; references are for likeness, not to be pasted in."
            )
        if memories:
            sections.append(
                "Things you remember about the people in this conversation:\n" + "\n".join(f"- {m}" for m in memories)
            )
        return "\n\n".join(section for section in sections if section)

    async def build_model_context(self, context: AgentContext) -> Tuple[List[Dict[str, Any]], List[MessageReference]]:
        text, references = self.format_context_with_ids(context)
        relevant = await self.memory.get_relevant_memories(text, MEMORY_CONTEXT_LIMIT)
        system = self._system_prompt(
            references,
            self.channel.custom_emoji(),
            self.entities.list_entities(),
            [m.content for m in relevant],
        )
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system}]
        now = now_ms()
        for message in context.history:
            speaker = f"{message.author}: " if message.author else ""
            entry: Dict[str, Any] = {
                "role": "assistant" if message.role == "assistant" else "user",
                "content": f"[{relative_time(message.timestamp, now)}] [{message.id}] {speaker}{message.content}",
            }
            if message.role == "user" and message.images:
                entry["images"] = list(message.images)
            messages.append(entry)
        return messages, references

    async def _tool_react(self, args: Dict[str, Any], execution: ToolExecution) -> str:
        requested = str(args["messageId"])
        emoji_input = str(args["emoji"])
        target = requested if requested in execution.known_message_ids else execution.trigger_message_id
        emoji = self.channel.resolve_emoji(emoji_input)
        if not emoji:
            return f"Could not resolve emoji: {emoji_input}"
        result = await self.channel.react(execution.channel_id, target, emoji)
        if result.success:
            return f"Successfully reacted with {emoji_input}"
        return f"Failed to react with {emoji_input}: {result.error}"

    async def _tool_generate_image(self, args: Dict[str, Any], execution: ToolExecution) -> str:
        prompt = str(args["prompt"])
        is_gif = bool(args.get("isGif"))
        kind = "GIF" if is_gif else "image"
        if is_gif and self.gif_assembler is None:
            return "Animated GIFs are not available right now; offer a still image instead."

        effective_prompt = prompt
        references = conversation_images(execution.context)
        resolution = await self.entities.resolve(prompt)
        if resolution:
            effective_prompt, entity_images = self.entities.build_prompt_with_references(resolution)
            references.extend(entity_images)
        if is_gif:
            effective_prompt = gif_prompt(effective_prompt)

        channel_id = execution.channel_id
        placeholder = await self.channel.send_placeholder_message(channel_id, prompt)
        if placeholder:
            execution.known_message_ids.add(placeholder.message_id)

        async def report_failure(reason: str) -> str:
            if placeholder:
                await self.channel.edit_message(channel_id, placeholder.message_id, f"failed to generate {kind}: {reason}")
            return f"Failed to generate {kind}: {reason}"

        try:
            data = await self.llm.generate_image(
                effective_prompt,
                reference_images=references or None,
                aspect_ratio=args.get("aspectRatio"),
                resolution=args.get("imageSize"),
            )
        except ServiceError as exc:
            log.error("Image generation failed: %s", exc)
            return await report_failure(exc.message)

        if is_gif:
            try:
                data = await self.gif_assembler(data)
            except Exception as exc:
                log.error("Failed to assemble GIF: %s", exc)
                return await report_failure(str(exc))

        filename = f"magpie-image.{'gif' if is_gif else 'png'}"
        if placeholder:
            edited = await self.channel.edit_message_with_image(
                channel_id, placeholder.message_id, data, filename, prompt
            )
            if edited.success:
                return f"Successfully generated and sent {kind} for: {prompt}"
            log.error("Failed to swap placeholder for image: %s", edited.error)
        sent = await self.channel.send_image(channel_id, data, filename, prompt)
        if sent.success:
            if placeholder:
                await self.channel.edit_message(channel_id, placeholder.message_id, f"{kind} posted below")
            return f"Successfully generated and sent {kind} for: {prompt}"
        return await report_failure("could not post it")

    async def _tool_search_memory(self, args: Dict[str, Any], execution: ToolExecution) -> str:
        hits = await self.memory.search_memories(str(args["query"]), MEMORY_SEARCH_LIMIT)
        if not hits:
            return "No relevant memories found for that query."
        return "Found memories:\n" + "\n".join(f"- {m.content}" for m in hits)

    async def _tool_get_scrapbook_memory(self, args: Dict[str, Any], execution: ToolExecution) -> str:
        memory = await self.scrapbook.get_random_memory()
        if memory is None:
            return "No scrapbook memories found."
        await self.channel.send_message(execution.channel_id, format_scrapbook_quote(memory))
        execution.context.last_scrapbook_memory_id = memory.id
        await self.illustrate_scrapbook_memory(execution.channel_id, memory)
        return f'Posted scrapbook memory to channel [{memory.id}]: "{memory.key_message}" by {memory.author}'

    async def _tool_search_scrapbook(self, args: Dict[str, Any], execution: ToolExecution) -> str:
        results = await self.scrapbook.search_memories(str(args["query"]), SCRAPBOOK_SEARCH_LIMIT)
        if not results:
            return "No matching scrapbook memories found."
        await self.channel.send_message(
            execution.channel_id, "\n\n".join(format_scrapbook_quote(m) for m in results)
        )
        execution.context.last_scrapbook_memory_id = results[0].id
        for memory in results:
            await self.illustrate_scrapbook_memory(execution.channel_id, memory)
        summary = "; ".join(f'[{m.id}]: "{m.key_message}" by {m.author}' for m in results)
        return f"Posted {len(results)} scrapbook memories to channel: {summary}"

    async def _find_scrapbook_memory(self, quote: str, context: AgentContext) -> Optional[ScrapbookMemory]:
        quote = quote.strip()
        if quote:
            memory = await self.scrapbook.get_memory_by_quote(quote)
            if memory is None:
                memory = await self.scrapbook.get_memory_by_id(quote)
            if memory is not None:
                return memory
        if context.last_scrapbook_memory_id:
            return await self.scrapbook.get_memory_by_id(context.last_scrapbook_memory_id)
        return None

    async def _tool_get_scrapbook_context(self, args: Dict[str, Any], execution: ToolExecution) -> str:
        memory = await self._find_scrapbook_memory(str(args["quote"]), execution.context)
        if memory is None:
            return "Could not find that scrapbook memory."
        sent = await self.channel.send_message(execution.channel_id, format_scrapbook_context(memory))
        if not sent.success:
            log.error("Failed to post scrapbook context: %s", sent.error)
            return "Failed to post context to channel."
        execution.context.last_scrapbook_memory_id = memory.id
        return f'Posted context for "{memory.key_message}" to channel'

    async def _tool_delete_scrapbook_memory(self, args: Dict[str, Any], execution: ToolExecution) -> str:
        memory = await self._find_scrapbook_memory(str(args["quote"]), execution.context)
        if memory is None:
            return "Could not find that scrapbook memory."
        if not await self.scrapbook.delete_memory(memory.id):
            return "Found but could not delete that scrapbook memory."
        if execution.context.last_scrapbook_memory_id == memory.id:
            execution.context.last_scrapbook_memory_id = None
        return "Deleted the scrapbook memory."

    async def illustration_prompt(self, memory: ScrapbookMemory) -> Optional[Tuple[str, List[ReferenceImage]]]:
        context_text = ScrapbookService.format_context(memory)
        authors = [memory.author] + [m.author for m in memory.context]
        base = (
            "Create an image prompt from this conversation, using all of it to capture the scene:\n\n"
            f"Conversation context:\n{context_text}\n\nKey quote: \"{memory.key_message}\" - {memory.author}"
        )
        references: List[ReferenceImage] = []
        resolution = await self.entities.resolve(" ".join(dict.fromkeys(authors)))
        if resolution:
            preamble, references = self.entities.build_prompt_with_references(resolution)
            base = f"{preamble}\n\n{base}"
        try:
            result = await self.llm.chat_structured(
                [
                    {"role": "system", "content": ILLUSTRATION_SYSTEM},
                    {"role": "user", "content": base},
                ],
                schema=IMAGE_PROMPT_SCHEMA,
                schema_name="imagePrompt",
                model=self.fast_model,
            )
        except ServiceError as exc:
            log.warning("Failed to write illustration prompt for %s: %s", memory.id, exc)
            return None
        prompt = str(result.get("prompt") or "").strip()
        if not prompt:
            return None
        return prompt, references

    async def illustrate_scrapbook_memory(self, channel_id: str, memory: ScrapbookMemory) -> bool:
        built = await self.illustration_prompt(memory)
        if built is None:
            return False
        prompt, references = built
        try:
            data = await self.llm.generate_image(prompt, reference_images=references or None, aspect_ratio="16:9")
        except ServiceError as exc:
            log.warning("Failed to illustrate scrapbook memory %s: %s", memory.id, exc)
            return False
        result = await self.channel.send_image(channel_id, data, "scrapbook-memory.png", prompt)
        return result.success

    async def post_scrapbook_memory(self, channel_id: str, memory: ScrapbookMemory) -> None:
        await self.channel.send_message(channel_id, format_scrapbook_quote(memory))
        await self.illustrate_scrapbook_memory(channel_id, memory)

    async def generate_auto_react(self, context: AgentContext, latest_content: str) -> List[str]:
        text, _ = self.format_context_with_ids(context)
        emoji = self.channel.custom_emoji()
        system = (
            f"{self.persona.get_prompt()}\n"
            "You are deciding whether to react to a message with emoji.\n\n"
            f"Available custom emoji: {', '.join(emoji) or 'none'}\n"
            "You can also use any standard Unicode emoji.\n\n"
            "Return 0 to 3 emoji that would make good, fun reactions, or an empty array if nothing fits. "
            "For custom emoji use just the name; for Unicode use the character."
        )
        try:
            result = await self.llm.chat_structured(
                [
                    {"role": "system", "content": system},
                    {
                        "role": "user",
                        "content": f"Conversation context:\n{text}\n\nMost recent message:\n{latest_content}",
                    },
                ],
                schema=AUTO_REACT_SCHEMA,
                schema_name="autoReact",
                model=self.fast_model,
            )
        except ServiceError as exc:
            log.warning("Failed to pick auto-react emoji: %s", exc)
            return []
        return [str(e) for e in result.get("emojis") or [] if str(e).strip()][:MAX_AUTO_REACTIONS]

    async def auto_react(self, context: AgentContext, message: AgentMessage) -> int:
        applied = 0
        for emoji_input in await self.generate_auto_react(context, message.content):
            emoji = self.channel.resolve_emoji(emoji_input)
            if not emoji:
                continue
            result = await self.channel.react(context.channel_id, message.id, emoji)
            if result.success:
                applied += 1
        return applied

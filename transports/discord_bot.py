import asyncio
import base64
import io
import logging
import re
from typing import List, Optional

import aiohttp
import discord
from discord.ext import commands

from magpie.channel import ChannelAdapter
from magpie.conversation import HISTORY_LIMIT, SILENT
from magpie.models import AgentMessage, IncomingMessage, SentMessage, ToolResult
from magpie.pipeline import MessagePipeline

log = logging.getLogger(__name__)

CUSTOM_EMOJI = re.compile(r"^<a?:\w+:\d+>$")
EMOJI_NAME = re.compile(r"^:?([\w~-]+):?$")
MAX_IMAGE_BYTES = 8 * 1024 * 1024


def _timestamp_ms(message: discord.Message) -> int:
    return int(message.created_at.timestamp() * 1000)


class DiscordChannel(ChannelAdapter):
    def __init__(self, client: discord.Client):
        self.client = client

    async def _messageable(self, channel_id: str):
        channel = self.client.get_channel(int(channel_id))
        if channel is None:
            channel = await self.client.fetch_channel(int(channel_id))
        return channel

    async def _message(self, channel_id: str, message_id: str) -> discord.Message:
        channel = await self._messageable(channel_id)
        return await channel.fetch_message(int(message_id))

    async def send_message(self, channel_id: str, content: str) -> ToolResult:
        try:
            channel = await self._messageable(channel_id)
            sent = await channel.send(content)
        except (discord.DiscordException, ValueError) as exc:
            log.warning("Failed to send message to %s: %s", channel_id, exc)
            return ToolResult.fail(str(exc))
        return ToolResult.ok(str(sent.id))

    async def send_image(
        self, channel_id: str, data: bytes, filename: str, description: Optional[str] = None
    ) -> ToolResult:
        try:
            channel = await self._messageable(channel_id)
            sent = await channel.send(file=discord.File(io.BytesIO(data), filename=filename, description=description))
        except (discord.DiscordException, ValueError) as exc:
            log.warning("Failed to send image to %s: %s", channel_id, exc)
            return ToolResult.fail(str(exc))
        return ToolResult.ok(str(sent.id))

    async def send_placeholder_message(self, channel_id: str, prompt: str) -> Optional[SentMessage]:
        try:
            channel = await self._messageable(channel_id)
            sent = await channel.send(f"working on it... `{prompt[:80]}`")
        except (discord.DiscordException, ValueError) as exc:
            log.warning("Failed to send placeholder to %s: %s", channel_id, exc)
            return None
        return SentMessage(message_id=str(sent.id))

    async def edit_message(self, channel_id: str, message_id: str, content: str) -> ToolResult:
        try:
            message = await self._message(channel_id, message_id)
            await message.edit(content=content)
        except (discord.DiscordException, ValueError) as exc:
            log.warning("Failed to edit message %s: %s", message_id, exc)
            return ToolResult.fail(str(exc))
        return ToolResult.ok(message_id)

    async def edit_message_with_image(
        self,
        channel_id: str,
        message_id: str,
        data: bytes,
        filename: str,
        description: Optional[str] = None,
    ) -> ToolResult:
        try:
            message = await self._message(channel_id, message_id)
            await message.edit(
                content=None,
                attachments=[discord.File(io.BytesIO(data), filename=filename, description=description)],
            )
        except (discord.DiscordException, ValueError) as exc:
            log.warning("Failed to attach image to message %s: %s", message_id, exc)
            return ToolResult.fail(str(exc))
        return ToolResult.ok(message_id)

    async def react(self, channel_id: str, message_id: str, emoji: str) -> ToolResult:
        try:
            message = await self._message(channel_id, message_id)
            await message.add_reaction(emoji)
        except (discord.DiscordException, ValueError) as exc:
            log.warning("Failed to react to %s with %s: %s", message_id, emoji, exc)
            return ToolResult.fail(str(exc))
        return ToolResult.ok(emoji)

    def resolve_emoji(self, emoji: str) -> Optional[str]:
        emoji = (emoji or "").strip()
        if not emoji:
            return None
        if CUSTOM_EMOJI.match(emoji):
            return emoji
        match = EMOJI_NAME.match(emoji)
        if match:
            name = match.group(1).lower()
            for custom in self.client.emojis:
                if custom.name.lower() == name:
                    return str(custom)
            return None
        return emoji

    def custom_emoji(self) -> List[str]:
        return sorted({e.name for e in self.client.emojis})


class DiscordTransport(commands.Bot):
    def __init__(self, pipeline_factory, *, guild_id: Optional[int] = None):
        intents = discord.Intents.default()
        intents.message_content = True
        intents.members = True
        super().__init__(command_prefix="!", intents=intents)
        self.guild_id = guild_id
        self.channel_adapter = DiscordChannel(self)
        self.pipeline: MessagePipeline = pipeline_factory(self.channel_adapter)
        self._session: Optional[aiohttp.ClientSession] = None
        self._starter_task: Optional[asyncio.Task] = None

    async def setup_hook(self) -> None:
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
        self._starter_task = asyncio.create_task(self.pipeline.run_conversation_starter(), name="conversation-starter")

    async def close(self) -> None:
        if self._starter_task:
            self._starter_task.cancel()
        await self.pipeline.drain()
        if self._session:
            await self._session.close()
        await super().close()

    async def on_ready(self):
        log.info("Discord bot ready as %s", self.user)

    def _readable_content(self, message: discord.Message) -> str:
        content = message.content or ""
        for user in message.mentions:
            name = self.user.display_name if self.user and user.id == self.user.id else user.display_name
            for variant in (f"<@{user.id}>", f"<@!{user.id}>"):
                content = content.replace(variant, f"@{name}")
        for role in message.role_mentions:
            content = content.replace(f"<@&{role.id}>", f"@{role.name}")
        for channel in message.channel_mentions:
            content = content.replace(f"<#{channel.id}>", f"#{channel.name}")
        return content.strip() or SILENT

    async def _fetch_images(self, message: discord.Message) -> List[str]:
        images: List[str] = []
        if self._session is None:
            return images
        for attachment in message.attachments:
            mime = attachment.content_type or ""
            if not mime.startswith("image/") or attachment.size > MAX_IMAGE_BYTES:
                continue
            try:
                async with self._session.get(attachment.url) as resp:
                    resp.raise_for_status()
                    data = await resp.read()
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                log.warning("Failed to download attachment %s: %s", attachment.filename, exc)
                continue
            images.append(f"data:{mime.split(';')[0]};base64,{base64.b64encode(data).decode('ascii')}")
        return images

    async def to_agent_message(self, message: discord.Message) -> AgentMessage:
        from_bot = self.user is not None and message.author.id == self.user.id
        return AgentMessage(
            id=str(message.id),
            role="assistant" if from_bot else "user",
            content=self._readable_content(message),
            timestamp=_timestamp_ms(message),
            author=None if from_bot else message.author.display_name,
            images=[] if from_bot else await self._fetch_images(message),
        )

    async def _backfill(self, before: discord.Message) -> List[AgentMessage]:
        earlier = []
        async for past in before.channel.history(limit=HISTORY_LIMIT, before=before):
            earlier.append(await self.to_agent_message(past))
        earlier.reverse()
        return earlier

    async def on_message(self, message: discord.Message):
        if not message or message.author.bot:
            return
        if self.guild_id and message.guild is not None and message.guild.id != self.guild_id:
            return
        is_dm = message.guild is None
        mentions_bot = self.user is not None and any(user.id == self.user.id for user in message.mentions)
        incoming = IncomingMessage(
            id=str(message.id),
            content=self._readable_content(message),
            author_id=str(message.author.id),
            author_name=message.author.display_name,
            channel_id=str(message.channel.id),
            timestamp=_timestamp_ms(message),
            images=await self._fetch_images(message),
            is_dm=is_dm,
            mentions_bot=mentions_bot,
        )

        async def backfill(_channel_id: str) -> List[AgentMessage]:
            return await self._backfill(message)

        try:
            reply = await self.pipeline.handle(incoming, backfill=backfill)
        except Exception as exc:
            log.exception("Failed to handle message %s: %s", message.id, exc)
            return
        if not reply:
            return
        try:
            sent = await message.channel.send(reply)
        except discord.DiscordException as exc:
            log.warning("Failed to send reply in %s: %s", message.channel.id, exc)
            return
        await self.pipeline.record_reply(incoming.channel_id, str(sent.id), reply)


async def run_discord_bot(pipeline_factory, token: str, guild_id: Optional[int] = None):
    bot = DiscordTransport(pipeline_factory, guild_id=guild_id)
    try:
        await bot.start(token)
    finally:
        await bot.close()

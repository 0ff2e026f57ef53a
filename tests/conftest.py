"""Shared fakes and factories for magpie tests."""

from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from magpie.channel import ChannelAdapter
from magpie.models import AgentContext, AgentMessage, IncomingMessage, SentMessage, ToolResult


class FakeChannel(ChannelAdapter):
    """Records every outbound call in order."""

    def __init__(self, emoji: Optional[List[str]] = None):
        self.emoji = emoji or ["partyparrot"]
        self.calls: List[tuple] = []
        self._next_id = 1000
        self.fail_edits = False

    def _new_id(self) -> str:
        self._next_id += 1
        return str(self._next_id)

    async def send_message(self, channel_id, content):
        self.calls.append(("send_message", channel_id, content))
        return ToolResult.ok(self._new_id())

    async def send_image(self, channel_id, data, filename, description=None):
        self.calls.append(("send_image", channel_id, filename))
        return ToolResult.ok(self._new_id())

    async def send_placeholder_message(self, channel_id, prompt):
        message_id = self._new_id()
        self.calls.append(("placeholder", channel_id, message_id))
        return SentMessage(message_id=message_id)

    async def edit_message(self, channel_id, message_id, content):
        self.calls.append(("edit_message", message_id, content))
        return ToolResult.ok(message_id)

    async def edit_message_with_image(self, channel_id, message_id, data, filename, description=None):
        self.calls.append(("edit_message_with_image", message_id, filename))
        if self.fail_edits:
            return ToolResult.fail("edit failed")
        return ToolResult.ok(message_id)

    async def react(self, channel_id, message_id, emoji):
        self.calls.append(("react", message_id, emoji))
        return ToolResult.ok(emoji)

    def resolve_emoji(self, emoji):
        name = emoji.strip(":")
        if name in self.emoji:
            return f"<:{name}:1>"
        if name.isascii() and name.isalnum():
            return None
        return emoji

    def custom_emoji(self):
        return list(self.emoji)

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_llm():
    llm = MagicMock()
    llm.chat_structured = AsyncMock()
    llm.chat_with_tools_step = AsyncMock()
    llm.embed = AsyncMock(return_value=[1.0, 0.0, 0.0])
    llm.generate_image = AsyncMock(return_value=b"png-bytes")
    llm.chat = AsyncMock(return_value="ok")
    return llm


@pytest.fixture
def fake_channel() -> FakeChannel:
    return FakeChannel()


def user_msg(msg_id: str, content: str, *, author: str = "dave", ts: int = 1_000_000, images=None) -> AgentMessage:
    return AgentMessage(id=msg_id, role="user", content=content, timestamp=ts, author=author, images=images or [])


def bot_msg(msg_id: str, content: str, *, ts: int = 1_000_000) -> AgentMessage:
    return AgentMessage(id=msg_id, role="assistant", content=content, timestamp=ts)


def incoming(
    msg_id: str,
    content: str,
    *,
    channel_id: str = "chan",
    is_dm: bool = False,
    mentions_bot: bool = False,
    author: str = "dave",
    ts: int = 1_000_000,
) -> IncomingMessage:
    return IncomingMessage(
        id=msg_id,
        content=content,
        author_id=f"id-{author}",
        author_name=author,
        channel_id=channel_id,
        timestamp=ts,
        is_dm=is_dm,
        mentions_bot=mentions_bot,
    )


def context_with(*messages: AgentMessage, channel_id: str = "chan", is_dm: bool = False) -> AgentContext:
    return AgentContext(channel_id=channel_id, is_dm=is_dm, history=list(messages))

from abc import ABC, abstractmethod
from typing import List, Optional

from .models import SentMessage, ToolResult


class ChannelAdapter(ABC):
    """Outbound side effects the agent's tools may cause. Implementations never raise."""

    @abstractmethod
    async def send_message(self, channel_id: str, content: str) -> ToolResult: ...

    @abstractmethod
    async def send_image(
        self, channel_id: str, data: bytes, filename: str, description: Optional[str] = None
    ) -> ToolResult: ...

    @abstractmethod
    async def send_placeholder_message(self, channel_id: str, prompt: str) -> Optional[SentMessage]: ...

    @abstractmethod
    async def edit_message(self, channel_id: str, message_id: str, content: str) -> ToolResult: ...

    @abstractmethod
    async def edit_message_with_image(
        self,
        channel_id: str,
        message_id: str,
        data: bytes,
        filename: str,
        description: Optional[str] = None,
    ) -> ToolResult: ...

    @abstractmethod
    async def react(self, channel_id: str, message_id: str, emoji: str) -> ToolResult: ...

    @abstractmethod
    def resolve_emoji(self, emoji: str) -> Optional[str]:
        """Unicode passes through; custom names map to the platform's emoji markup."""

    @abstractmethod
    def custom_emoji(self) -> List[str]:
        """Human-readable inventory of custom emoji, for the system prompt."""

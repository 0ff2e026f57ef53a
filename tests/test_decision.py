"""Tests for the response decision gate."""

import pytest

from conftest import bot_msg, context_with, incoming, user_msg
from magpie.decision import ResponseDecisionGate
from magpie.errors import ServiceError


@pytest.fixture
def gate(fake_llm):
    return ResponseDecisionGate(fake_llm, wake_word="magpie")


class TestShortCircuits:
    @pytest.mark.asyncio
    async def test_dm_always_responds(self, gate, fake_llm):
        ctx = context_with(is_dm=True)
        assert await gate.should_respond(incoming("1", "hey", is_dm=True), ctx)
        fake_llm.chat_structured.assert_not_called()

    @pytest.mark.asyncio
    async def test_wake_word_any_case(self, gate, fake_llm):
        ctx = context_with(user_msg("1", "MagPie what's up"))
        assert await gate.should_respond(incoming("1", "MagPie what's up"), ctx)
        fake_llm.chat_structured.assert_not_called()

    @pytest.mark.asyncio
    async def test_mention(self, gate, fake_llm):
        ctx = context_with(user_msg("1", "@bot hi"))
        assert await gate.should_respond(incoming("1", "@bot hi", mentions_bot=True), ctx)
        fake_llm.chat_structured.assert_not_called()

    @pytest.mark.asyncio
    async def test_not_our_thread(self, gate, fake_llm):
        ctx = context_with(user_msg("1", "anyone up?", author="sam"), user_msg("2", "yeah"))
        assert not await gate.should_respond(incoming("2", "yeah"), ctx)
        fake_llm.chat_structured.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_message_history(self, gate, fake_llm):
        ctx = context_with(user_msg("1", "hello"))
        assert not await gate.should_respond(incoming("1", "hello"), ctx)
        fake_llm.chat_structured.assert_not_called()


class TestModelFallback:
    @pytest.mark.asyncio
    async def test_follows_model_after_our_turn(self, gate, fake_llm):
        ctx = context_with(bot_msg("1", "that's grim"), user_msg("2", "why is it grim"))
        fake_llm.chat_structured.return_value = {"shouldRespond": True}
        assert await gate.should_respond(incoming("2", "why is it grim"), ctx)
        fake_llm.chat_structured.return_value = {"shouldRespond": False}
        assert not await gate.should_respond(incoming("2", "why is it grim"), ctx)

    @pytest.mark.asyncio
    async def test_fails_closed(self, gate, fake_llm):
        ctx = context_with(bot_msg("1", "sure"), user_msg("2", "ok then"))
        fake_llm.chat_structured.side_effect = ServiceError("openai", "down")
        assert not await gate.should_respond(incoming("2", "ok then"), ctx)

    @pytest.mark.asyncio
    async def test_prompt_carries_relative_times(self, gate, fake_llm):
        ctx = context_with(bot_msg("1", "sure"), user_msg("2", "ok then"))
        fake_llm.chat_structured.return_value = {"shouldRespond": False}
        await gate.should_respond(incoming("2", "ok then"), ctx)
        messages = fake_llm.chat_structured.call_args.args[0]
        assert "ago]" in messages[1]["content"]
        assert "Latest message: ok then" in messages[1]["content"]

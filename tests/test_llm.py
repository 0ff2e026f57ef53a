"""Tests for the OpenAI-backed LLM client, with the SDK replaced by mocks."""

import base64
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from magpie.errors import ServiceError, ValidationError
from magpie.llm import LLMClient
from magpie.models import ReferenceImage, ToolStepContinue, ToolStepDone


@pytest.fixture
def sdk():
    client = MagicMock()
    client.responses.create = AsyncMock()
    client.embeddings.create = AsyncMock()
    client.images.generate = AsyncMock()
    client.images.edit = AsyncMock()
    client.close = AsyncMock()
    return client


@pytest.fixture
def llm(sdk):
    return LLMClient(api_key="test", client=sdk)


def _response(output_text="", output=None, response_id="resp_1"):
    return SimpleNamespace(output_text=output_text, output=output or [], id=response_id)


class TestToolStep:
    @pytest.mark.asyncio
    async def test_done_when_no_function_calls(self, llm, sdk):
        sdk.responses.create.return_value = _response(" hello ")
        step = await llm.chat_with_tools_step(
            [{"role": "user", "content": "hi"}], tools=[{"name": "react", "parameters": {}}]
        )
        assert step == ToolStepDone(text="hello")
        kwargs = sdk.responses.create.call_args.kwargs
        assert "previous_response_id" not in kwargs
        assert kwargs["tools"][0]["strict"] is True
        assert kwargs["tools"][-1] == {"type": "web_search"}

    @pytest.mark.asyncio
    async def test_function_calls_and_continuation(self, llm, sdk):
        call = SimpleNamespace(type="function_call", call_id="c1", name="react", arguments='{"emoji": "x"}')
        sdk.responses.create.return_value = _response(output=[call], response_id="resp_9")
        step = await llm.chat_with_tools_step(
            [{"role": "tool", "tool_call_id": "c0", "content": "done"}],
            tools=[],
            previous_response_id="resp_8",
        )
        assert isinstance(step, ToolStepContinue)
        assert step.response_id == "resp_9"
        assert step.tool_calls[0].arguments == {"emoji": "x"}
        kwargs = sdk.responses.create.call_args.kwargs
        assert kwargs["previous_response_id"] == "resp_8"
        assert kwargs["input"] == [{"type": "function_call_output", "call_id": "c0", "output": "done"}]

    @pytest.mark.asyncio
    async def test_sdk_errors_become_service_errors(self, llm, sdk):
        sdk.responses.create.side_effect = RuntimeError("network")
        with pytest.raises(ServiceError) as info:
            await llm.chat_with_tools_step([], tools=[])
        assert info.value.kind == "openai"

    @pytest.mark.asyncio
    async def test_user_images_become_input_parts(self, llm, sdk):
        sdk.responses.create.return_value = _response("ok")
        await llm.chat_with_tools_step(
            [{"role": "user", "content": "look", "images": ["data:image/png;base64,AAA"]}], tools=[], allow_search=False
        )
        sent = sdk.responses.create.call_args.kwargs["input"][0]
        assert sent["content"][1] == {"type": "input_image", "image_url": "data:image/png;base64,AAA"}


class TestStructured:
    @pytest.mark.asyncio
    async def test_parses_json(self, llm, sdk):
        sdk.responses.create.return_value = _response('{"shouldRespond": true}')
        schema = {"type": "object", "required": ["shouldRespond"]}
        assert await llm.chat_structured([], schema=schema, schema_name="x") == {"shouldRespond": True}
        assert sdk.responses.create.call_args.kwargs["model"] == "gpt-5-mini"

    @pytest.mark.asyncio
    async def test_bad_json(self, llm, sdk):
        sdk.responses.create.return_value = _response("not json")
        with pytest.raises(ValidationError):
            await llm.chat_structured([], schema={}, schema_name="x")

    @pytest.mark.asyncio
    async def test_missing_required(self, llm, sdk):
        sdk.responses.create.return_value = _response("{}")
        with pytest.raises(ValidationError):
            await llm.chat_structured([], schema={"required": ["facts"]}, schema_name="x")


class TestEmbeddingsAndImages:
    @pytest.mark.asyncio
    async def test_embed_requests_dimensions(self, llm, sdk):
        sdk.embeddings.create.return_value = SimpleNamespace(data=[SimpleNamespace(embedding=[0.1, 0.2])])
        assert await llm.embed("hi") == [0.1, 0.2]
        assert sdk.embeddings.create.call_args.kwargs["dimensions"] == 768

    @pytest.mark.asyncio
    async def test_generate_without_references(self, llm, sdk):
        sdk.images.generate.return_value = SimpleNamespace(
            data=[SimpleNamespace(b64_json=base64.b64encode(b"img").decode())]
        )
        assert await llm.generate_image("a goose", aspect_ratio="16:9") == b"img"
        assert sdk.images.generate.call_args.kwargs["size"] == "1536x1024"

    @pytest.mark.asyncio
    async def test_references_use_edit(self, llm, sdk):
        sdk.images.edit.return_value = SimpleNamespace(
            data=[SimpleNamespace(b64_json=base64.b64encode(b"img").decode())]
        )
        ref = ReferenceImage(data=base64.b64encode(b"ref").decode(), mime_type="image/png")
        await llm.generate_image("dave", reference_images=[ref])
        files = sdk.images.edit.call_args.kwargs["image"]
        assert files == [("reference-0.png", b"ref", "image/png")]
        sdk.images.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_empty_image_response(self, llm, sdk):
        sdk.images.generate.return_value = SimpleNamespace(data=[])
        with pytest.raises(ServiceError):
            await llm.generate_image("a goose")

import base64
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from openai import AsyncOpenAI

from .errors import ServiceError, ValidationError
from .models import ReferenceImage, ToolCall, ToolStep, ToolStepContinue, ToolStepDone

log = logging.getLogger(__name__)

ASPECT_SIZES = {
    "1:1": "1024x1024",
    "2:3": "1024x1536",
    "3:4": "1024x1536",
    "9:16": "1024x1536",
    "3:2": "1536x1024",
    "4:3": "1536x1024",
    "16:9": "1536x1024",
    "21:9": "1536x1024",
}
RESOLUTION_QUALITY = {"1K": "medium", "2K": "high", "4K": "high"}


def _message_to_input(message: Dict[str, Any]) -> Dict[str, Any]:
    role = message.get("role")
    if role == "tool":
        return {
            "type": "function_call_output",
            "call_id": message["tool_call_id"],
            "output": message.get("content", ""),
        }
    content = message.get("content", "")
    images = message.get("images") or []
    if role == "user" and images:
        parts: List[Dict[str, Any]] = [{"type": "input_text", "text": content}]
        parts.extend({"type": "input_image", "image_url": uri} for uri in images)
        return {"role": role, "content": parts}
    return {"role": role, "content": content}


def _tool_to_function(tool: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": tool["name"],
        "description": tool.get("description", ""),
        "parameters": tool["parameters"],
        "strict": True,
    }


class LLMClient:
    """Text generation, tool steps, embeddings and images over the OpenAI SDK.

    Every SDK failure surfaces as ``ServiceError`` so callers only ever catch one type.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-5.1",
        fast_model: str = "gpt-5-mini",
        embedding_model: str = "text-embedding-3-small",
        embedding_dimensions: Optional[int] = 768,
        image_model: str = "gpt-image-1",
        client: Optional[AsyncOpenAI] = None,
    ):
        self.client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.fast_model = fast_model
        self.embedding_model = embedding_model
        self.embedding_dimensions = embedding_dimensions
        self.image_model = image_model

    async def close(self) -> None:
        await self.client.close()

    async def chat(self, messages: Sequence[Dict[str, Any]], *, allow_search: bool = False) -> str:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "input": [_message_to_input(m) for m in messages],
        }
        if allow_search:
            kwargs["tools"] = [{"type": "web_search"}]
        try:
            response = await self.client.responses.create(**kwargs)
        except Exception as exc:
            log.error("OpenAI chat failed: %s", exc)
            raise ServiceError("openai", str(exc), cause=exc) from exc
        text = (response.output_text or "").strip()
        if not text:
            raise ServiceError("openai", "OpenAI returned no text")
        return text

    async def chat_structured(
        self,
        messages: Sequence[Dict[str, Any]],
        *,
        schema: Dict[str, Any],
        schema_name: str,
        model: Optional[str] = None,
    ) -> Dict[str, Any]:
        try:
            response = await self.client.responses.create(
                model=model or self.fast_model,
                input=[_message_to_input(m) for m in messages],
                text={
                    "format": {
                        "type": "json_schema",
                        "name": schema_name,
                        "schema": schema,
                        "strict": True,
                    }
                },
            )
        except Exception as exc:
            log.error("OpenAI structured chat %s failed: %s", schema_name, exc)
            raise ServiceError("openai", str(exc), cause=exc) from exc
        raw = response.output_text or ""
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValidationError(f"{schema_name}: could not decode {raw[:120]!r}", cause=exc) from exc
        if not isinstance(payload, dict):
            raise ValidationError(f"{schema_name}: expected an object")
        missing = [key for key in schema.get("required", []) if key not in payload]
        if missing:
            raise ValidationError(f"{schema_name}: missing {', '.join(missing)}")
        return payload

    async def chat_with_tools_step(
        self,
        messages: Sequence[Dict[str, Any]],
        *,
        tools: Sequence[Dict[str, Any]],
        previous_response_id: Optional[str] = None,
        allow_search: bool = True,
    ) -> ToolStep:
        """One round trip of the tool loop.

        With ``previous_response_id`` only the messages the service has not yet
        seen should be passed in; the handle carries the rest.
        """
        function_tools: List[Dict[str, Any]] = [_tool_to_function(tool) for tool in tools]
        if allow_search:
            function_tools.append({"type": "web_search"})
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "input": [_message_to_input(m) for m in messages],
            "tools": function_tools,
        }
        if previous_response_id is not None:
            kwargs["previous_response_id"] = previous_response_id
        try:
            response = await self.client.responses.create(**kwargs)
        except Exception as exc:
            log.error("OpenAI tool step failed: %s", exc)
            raise ServiceError("openai", str(exc), cause=exc) from exc

        calls: List[ToolCall] = []
        for item in response.output or []:
            if getattr(item, "type", None) != "function_call":
                continue
            try:
                arguments = json.loads(item.arguments or "{}")
            except json.JSONDecodeError as exc:
                raise ValidationError(f"bad arguments for {item.name}", cause=exc) from exc
            calls.append(ToolCall(id=item.call_id, name=item.name, arguments=arguments))
        if not calls:
            return ToolStepDone(text=(response.output_text or "").strip())
        return ToolStepContinue(tool_calls=calls, response_id=response.id)

    async def embed(self, text: str) -> List[float]:
        kwargs: Dict[str, Any] = {"model": self.embedding_model, "input": text}
        if self.embedding_dimensions:
            kwargs["dimensions"] = self.embedding_dimensions
        try:
            response = await self.client.embeddings.create(**kwargs)
        except Exception as exc:
            log.error("Embedding request failed: %s", exc)
            raise ServiceError("embedding", str(exc), cause=exc) from exc
        if not response.data:
            raise ServiceError("embedding", "embedding response was empty")
        return list(response.data[0].embedding)

    async def generate_image(
        self,
        prompt: str,
        *,
        reference_images: Optional[Sequence[ReferenceImage]] = None,
        aspect_ratio: Optional[str] = None,
        resolution: Optional[str] = None,
    ) -> bytes:
        size = ASPECT_SIZES.get(aspect_ratio or "1:1", "1024x1024")
        quality = RESOLUTION_QUALITY.get(resolution or "1K", "medium")
        try:
            if reference_images:
                files = [
                    (f"reference-{idx}.{ref.mime_type.split('/')[-1]}", base64.b64decode(ref.data), ref.mime_type)
                    for idx, ref in enumerate(reference_images)
                ]
                response = await self.client.images.edit(
                    model=self.image_model,
                    image=files,
                    prompt=prompt,
                    size=size,
                    quality=quality,
                )
            else:
                response = await self.client.images.generate(
                    model=self.image_model,
                    prompt=prompt,
                    size=size,
                    quality=quality,
                )
        except Exception as exc:
            log.error("Image generation failed: %s", exc)
            raise ServiceError("image", str(exc), cause=exc) from exc
        image_data = response.data[0].b64_json if response.data else None
        if not image_data:
            raise ServiceError("image", "Image generation returned no data")
        return base64.b64decode(image_data)

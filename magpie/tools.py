from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

ASPECT_RATIOS = ["1:1", "2:3", "3:2", "3:4", "4:3", "9:16", "16:9", "21:9"]
IMAGE_SIZES = ["1K", "2K", "4K"]
DIRECT_EFFECT_NOTE = "POSTS DIRECTLY TO CHANNEL - the result is immediately visible to everyone. "


class ToolEffect(Enum):
    # model narrates the returned text
    NARRATED = "narrated"
    # tool posts to the channel itself; the model should not repeat it
    DIRECT = "direct"


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any]
    effect: ToolEffect = ToolEffect.NARRATED

    def schema(self) -> Dict[str, Any]:
        description = self.description
        if self.effect is ToolEffect.DIRECT:
            description = DIRECT_EFFECT_NOTE + description
        return {"name": self.name, "description": description, "parameters": self.parameters}


def _object(properties: Dict[str, Any], required: Optional[List[str]] = None) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": properties,
        "required": list(properties) if required is None else required,
        "additionalProperties": False,
    }


TOOLS: List[ToolSpec] = [
    ToolSpec(
        name="react",
        description="React to a message in the conversation with an emoji.",
        parameters=_object(
            {
                "messageId": {"type": "string", "description": "The ID of the message to react to"},
                "emoji": {
                    "type": "string",
                    "description": "A Unicode emoji or the name of a custom emoji",
                },
            }
        ),
    ),
    ToolSpec(
        name="generate_image",
        description=(
            "Generate an image from a text prompt. Use when asked to create, draw or generate images. "
            "Set isGif to true for a short animated GIF instead of a still image."
        ),
        parameters=_object(
            {
                "prompt": {"type": "string", "description": "A detailed description of the image"},
                "aspectRatio": {
                    "type": ["string", "null"],
                    "enum": ASPECT_RATIOS + [None],
                    "description": "Aspect ratio (defaults to 1:1)",
                },
                "imageSize": {
                    "type": ["string", "null"],
                    "enum": IMAGE_SIZES + [None],
                    "description": "Resolution (defaults to 1K)",
                },
                "isGif": {"type": "boolean", "description": "Animated GIF instead of a still image"},
            }
        ),
    ),
    ToolSpec(
        name="search_memory",
        description=(
            "Search your long-term memory about someone or something you don't have in the current context."
        ),
        parameters=_object({"query": {"type": "string", "description": "What to look for"}}),
    ),
    ToolSpec(
        name="get_scrapbook_memory",
        description="Post a random memorable quote from the scrapbook. Use when someone asks for a memory or story.",
        parameters=_object({}),
        effect=ToolEffect.DIRECT,
    ),
    ToolSpec(
        name="search_scrapbook",
        description="Search the scrapbook for memorable quotes and post them. Use for 'remember when...'.",
        parameters=_object({"query": {"type": "string", "description": "Words from the quote to find"}}),
        effect=ToolEffect.DIRECT,
    ),
    ToolSpec(
        name="get_scrapbook_context",
        description=(
            "Post the conversation around a scrapbook quote. Use when someone asks for context or reacts "
            "with confusion ('what?', 'huh?') to a quote."
        ),
        parameters=_object(
            {"quote": {"type": "string", "description": "The exact quote text of the scrapbook memory"}}
        ),
        effect=ToolEffect.DIRECT,
    ),
    ToolSpec(
        name="delete_scrapbook_memory",
        description="Delete a scrapbook memory, e.g. when someone says 'bad memory' or asks to forget a quote.",
        parameters=_object(
            {"quote": {"type": "string", "description": "The exact quote text of the scrapbook memory"}}
        ),
    ),
]

TOOLS_BY_NAME: Dict[str, ToolSpec] = {tool.name: tool for tool in TOOLS}

_JSON_TYPES = {
    "string": str,
    "boolean": bool,
    "number": (int, float),
    "integer": int,
    "object": dict,
    "array": list,
}


def _matches_type(value: Any, declared: Any) -> bool:
    names = declared if isinstance(declared, list) else [declared]
    for name in names:
        if name == "null" and value is None:
            return True
        expected = _JSON_TYPES.get(name)
        if expected is None:
            continue
        if name in ("number", "integer") and isinstance(value, bool):
            continue
        if isinstance(value, expected):
            return True
    return False


def validate_arguments(spec: ToolSpec, arguments: Any) -> Optional[str]:
    """Return a problem description, or None when ``arguments`` fit the declared schema."""
    if not isinstance(arguments, dict):
        return "arguments must be an object"
    properties = spec.parameters.get("properties", {})
    for key in spec.parameters.get("required", []):
        if key not in arguments:
            return f"missing {key}"
    for key, value in arguments.items():
        declared = properties.get(key)
        if declared is None:
            return f"unexpected {key}"
        if "type" in declared and not _matches_type(value, declared["type"]):
            return f"{key} has the wrong type"
        if "enum" in declared and value not in declared["enum"]:
            return f"{key} must be one of {declared['enum']}"
    return None

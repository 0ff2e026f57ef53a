import logging
from typing import Optional

from .conversation import SILENT, format_timeline
from .models import AgentContext, IncomingMessage

log = logging.getLogger(__name__)

GATE_HISTORY = 12

DECISION_SCHEMA = {
    "type": "object",
    "properties": {
        "shouldRespond": {
            "type": "boolean",
            "description": "Whether the bot should respond to the latest message",
        },
    },
    "required": ["shouldRespond"],
    "additionalProperties": False,
}


def decision_system_prompt(name: str) -> str:
    return f"""You are analysing a chat conversation to decide whether {name} (a bot) should respond to the latest message.

Be CONSERVATIVE. Only return true if:
- It is clearly obvious the user is talking TO {name} or expecting a response FROM {name}
- The message is a direct question or statement directed at {name}
- There is clear context that {name} is part of the conversation

Do NOT return true if:
- Users are just talking to each other
- The message is ambiguous about who it is directed to
- It is general conversation that happens to touch something {name} might know about
- The message is clearly not directed at {name}

Return false when in doubt."""


class ResponseDecisionGate:
    """Decides whether the bot speaks. Pure apart from the fallback model call."""

    def __init__(self, llm, *, wake_word: str = "magpie", model: Optional[str] = None):
        self.llm = llm
        self.wake_word = wake_word.lower()
        self.model = model

    async def should_respond(self, message: IncomingMessage, context: AgentContext) -> bool:
        if context.is_dm or message.is_dm:
            log.debug("Responding: direct conversation")
            return True
        if self.wake_word and self.wake_word in (message.content or "").lower():
            log.debug("Responding: wake word in message")
            return True
        if message.mentions_bot:
            log.debug("Responding: bot was mentioned")
            return True

        history = context.history
        previous = history[-2] if len(history) >= 2 else None
        if previous is None or previous.role != "assistant":
            log.debug("Not responding: previous turn was not ours")
            return False

        timeline = format_timeline(history[-GATE_HISTORY:])
        latest = message.content or SILENT
        try:
            result = await self.llm.chat_structured(
                [
                    {"role": "system", "content": decision_system_prompt(self.wake_word)},
                    {
                        "role": "user",
                        "content": (
                            f"Recent conversation context:\n{timeline}\n\n"
                            f"Latest message: {latest}\n\n"
                            f"Should {self.wake_word} respond to the latest message?"
                        ),
                    },
                ],
                schema=DECISION_SCHEMA,
                schema_name="responseDecision",
                model=self.model,
            )
        except Exception as exc:
            log.debug("Not responding: decision call failed: %s", exc)
            return False
        decision = result.get("shouldRespond") is True
        log.debug("Responding: %s (model decision)", decision)
        return decision

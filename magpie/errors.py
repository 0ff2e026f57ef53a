from typing import Optional


class MagpieError(Exception):
    """Base class for everything the bot raises on purpose."""


class ServiceError(MagpieError):
    """An upstream service (text, embedding, image, storage, chat) failed."""

    def __init__(self, kind: str, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(f"{kind}: {message}")
        self.kind = kind
        self.message = message
        self.cause = cause


class ValidationError(ServiceError):
    """Structured output came back in a shape we cannot use."""

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__("openai", message, cause=cause)

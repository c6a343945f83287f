"""Error taxonomy shared by the completion client, the orchestrator and the API.

Every error carries a short ``title`` suitable for a user-facing notification;
``str(error)`` is the longer description.
"""


class LanguageMateError(Exception):
    title = "Something went wrong"

    def user_message(self) -> str:
        return str(self)


class ConfigurationError(LanguageMateError):
    """A required prompt variable, template or credential is missing."""

    title = "Configuration error"


class UpstreamError(LanguageMateError):
    """The completion endpoint answered with a non-2xx status or an unusable body."""

    title = "AI service error"

    def __init__(self, status: int, body: str, message: str | None = None):
        self.status = status
        self.body = body
        super().__init__(message or f"Upstream request failed with status {status}: {body}")

    def user_message(self) -> str:
        if self.status == 401:
            return "Invalid API key. Check your OpenRouter key in settings."
        if self.status == 402:
            return "Insufficient credits on the API account."
        if self.status == 429:
            return "Rate limit exceeded. Wait a moment and try again."
        if self.status >= 500:
            return "The AI service is temporarily unavailable. Try again later."
        return str(self)


class ModelCapabilityError(LanguageMateError):
    """The selected model positively does not accept image input."""

    title = "Model cannot read images"

    def __init__(self, model: str):
        self.model = model
        super().__init__(
            f"The model '{model}' does not support image input. "
            "Pick a vision-capable model or remove the attachments."
        )


class StreamDecodeError(LanguageMateError):
    """One malformed SSE payload line. Collected by the decoder, never raised."""

    title = "Malformed stream event"

    def __init__(self, line: str, reason: str):
        self.line = line
        self.reason = reason
        super().__init__(f"{reason}: {line[:200]!r}")


class TurnCancelledError(LanguageMateError):
    """The user cancelled the running turn."""

    title = "Generation cancelled"

    def __init__(self, message: str = "The request was cancelled."):
        super().__init__(message)


class StorageError(LanguageMateError):
    title = "Storage error"


class TurnInProgressError(LanguageMateError):
    title = "Please wait"

    def __init__(self, message: str = "Another response is still being generated."):
        super().__init__(message)


class MessageNotFoundError(LanguageMateError):
    title = "Message not found"

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message '{message_id}' does not exist in this conversation")


class InvalidMessageError(LanguageMateError):
    title = "Invalid message"


class InvalidImageError(LanguageMateError):
    title = "Unsupported image"


class ConversationNotFoundError(LanguageMateError):
    title = "Conversation not found"

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' does not exist")

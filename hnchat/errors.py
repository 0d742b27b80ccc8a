from typing import List, Optional

from .schemas import ValidationError


class ConversationError(Exception):
    """Base class for failures raised by the conversation engine."""

    conversation_id: Optional[str] = None


class LLMProviderError(ConversationError):
    """Prompt call failed or returned an unusable response."""


class ToolExecutionError(ConversationError):
    def __init__(self, tool_name: str, message: str):
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.message = message


class UnknownTool(ConversationError):
    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class InvalidToolCall(ConversationError):
    def __init__(self, tool_name: str, errors: List[ValidationError]):
        details = "; ".join(f"{err.field}: {err.message}" for err in errors)
        super().__init__(f"Invalid parameters for {tool_name}: {details}")
        self.tool_name = tool_name
        self.errors = errors


class ConversationTimeout(ConversationError):
    """An LLM step timed out or the conversation ran out of steps."""


class ContextTooLarge(ConversationError):
    def __init__(self, size: int, limit: int):
        super().__init__(f"Context size {size} bytes exceeds limit of {limit} bytes after compression")
        self.size = size
        self.limit = limit


class PlanningFailed(ConversationError):
    """The plan could not be parsed or validated."""


class UserInterventionRequired(ConversationError):
    def __init__(self, question: str):
        super().__init__(question)
        self.question = question


class ConversationFinished(ConversationError):
    """Raised when continuing a conversation that already reached a terminal state."""


class StorageError(ConversationError):
    """Conversation store read or write failed."""


class ConversationNotFound(StorageError):
    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class SerializationError(ConversationError):
    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

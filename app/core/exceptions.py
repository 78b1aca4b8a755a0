"""Exception hierarchy for chat processing.

Everything the orchestrator raises to its caller inherits from
ChatProcessingError. Degraded-path failures (knowledge retrieval, lock store,
conversation tracking) are logged and absorbed, never raised.
"""

GENERIC_ERROR_MESSAGE = "Sorry, I encountered an error processing your request."


class ChatProcessingError(Exception):
    """Base exception for all chat processing errors."""

    user_message: str = GENERIC_ERROR_MESSAGE


class BotNotFoundError(ChatProcessingError):
    """The requested bot does not exist or is inactive."""


class ModelNotFoundError(ChatProcessingError):
    """The requested model is not in the catalog."""


class UnsupportedProviderError(ChatProcessingError):
    """The model's provider has no client wired up."""


class SubscriptionRequiredError(ChatProcessingError):
    """The tenant's subscription is not in an allowed status."""


class InsufficientCreditsError(ChatProcessingError):
    """The tenant cannot afford a query on the requested model."""


class ConversationPausedError(ChatProcessingError):
    """Bot responses are disabled for this conversation."""


class GenerationError(ChatProcessingError):
    """The language model call failed."""


class ToolSynthesisError(ChatProcessingError):
    """A stored custom tool could not be turned into a tool definition."""

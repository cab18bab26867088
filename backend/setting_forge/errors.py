"""Exception types raised across the setting generation engine."""
import asyncio

import openai


MAX_ERROR_MESSAGE_LENGTH = 200

_TRANSIENT_MARKERS = (
    "429",
    "quota",
    "rate limit",
    "rate_limit",
    "retry",
    "resource_exhausted",
    "interrupted",
    "timed out",
    "timeout",
)


class SettingForgeError(Exception):
    """Base class for all engine errors."""


class ValidationFailed(SettingForgeError):
    """A candidate node broke a structural rule. Recoverable."""

    def __init__(self, errors: list[str], node_id: str | None = None):
        self.errors = errors
        self.node_id = node_id
        super().__init__(", ".join(errors))


class ToolResultParseError(SettingForgeError):
    """An extraction result could not be interpreted."""


class TransientProviderError(SettingForgeError):
    """Rate limiting or an interrupted stream; worth retrying."""


class ModelConfigError(SettingForgeError):
    """The requested model configuration cannot be resolved."""


class InsufficientCreditsError(SettingForgeError):
    """The shared pool preflight found the balance too low."""

    def __init__(self, user_id: str, required: float, available: float):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient credits for user {user_id}: "
            f"required {required:.2f}, available {available:.2f}"
        )


class GenerationFailed(SettingForgeError):
    """Unexpected failure with no usable partial output."""


class SessionNotFoundError(SettingForgeError):
    """No live session with the given id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session not found: {session_id}")


class NodeNotFoundError(SettingForgeError):
    """The session has no node with the given id."""

    def __init__(self, session_id: str, node_id: str):
        self.session_id = session_id
        self.node_id = node_id
        super().__init__(f"Node not found: {node_id} (session {session_id})")


class HistoryNotFoundError(SettingForgeError):
    """No saved setting history with the given id."""

    def __init__(self, history_id: str):
        self.history_id = history_id
        super().__init__(f"History not found: {history_id}")


class InvalidSessionStateError(SettingForgeError):
    """The operation is not allowed in the session's current status."""


def is_transient_error(error: BaseException) -> bool:
    """Return True for provider errors that are worth a retry."""
    if isinstance(error, TransientProviderError):
        return True
    if isinstance(error, (openai.RateLimitError, openai.APITimeoutError, openai.APIConnectionError)):
        return True
    if isinstance(error, asyncio.TimeoutError):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def safe_error_message(error: BaseException | str | None) -> str:
    """Short, single-line error text suitable for an event payload."""
    if error is None:
        return "Unknown error"
    text = str(error).strip() or error.__class__.__name__
    text = " ".join(text.split())
    if len(text) > MAX_ERROR_MESSAGE_LENGTH:
        return text[:MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return text

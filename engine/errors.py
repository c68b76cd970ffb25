from __future__ import annotations


class ConversationError(Exception):
    """Base for every failure the conversation engine reports."""


class ModelLoadFailure(ConversationError):
    """Model path missing, unreadable, or rejected by the backend."""


class InferenceError(ConversationError):
    """A first-attempt completion failure; recovered by reload-and-retry."""
    reason = "inference_failed"


class InferenceTimeout(InferenceError):
    reason = "timeout"


class SilentContextOverflow(InferenceError):
    """Engine returned blank text — it rejected the context without raising."""
    reason = "context_limit"


class EngineCallFailure(InferenceError):
    reason = "engine_error"


class RecoveryExhausted(ConversationError):
    """Reload-and-retry failed too. Terminal for the turn."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.cause = cause


class PersistenceFailure(ConversationError):
    pass


class TurnInFlight(ConversationError):
    pass

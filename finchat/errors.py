"""Error taxonomy surfaced to chat clients."""

from __future__ import annotations

from typing import Any

AUTH_REQUIRED = "AUTH_REQUIRED"
MODEL_COMPATIBILITY_ERROR = "MODEL_COMPATIBILITY_ERROR"
CHAT_ERROR = "CHAT_ERROR"


class ChatError(Exception):
    code = CHAT_ERROR
    status_code = 500

    def __init__(self, message: str, *, extra: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra or {}

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, **self.extra}


class AuthRequiredError(ChatError):
    code = AUTH_REQUIRED
    status_code = 401


class ModelCompatibilityError(ChatError):
    code = MODEL_COMPATIBILITY_ERROR
    status_code = 400

    def __init__(self, message: str, *, issue: str) -> None:
        super().__init__(message, extra={"compatibilityIssue": issue})
        self.issue = issue


class ProviderUnavailableError(ChatError):
    """No completion engine could be selected for the turn."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503


def classify_engine_error(exc: Exception) -> ChatError:
    if isinstance(exc, ChatError):
        return exc
    message = str(exc) or exc.__class__.__name__
    lowered = message.lower()
    if "tool" in lowered or "function" in lowered:
        return ModelCompatibilityError(
            "The selected model does not support tool calling. Choose a different model or provider.",
            issue="tools",
        )
    if "thinking" in lowered:
        return ModelCompatibilityError(
            "The selected model does not support reasoning mode. Choose a different model or provider.",
            issue="thinking",
        )
    return ChatError(message)


class InvalidRequestError(ChatError):
    code = "INVALID_REQUEST"
    status_code = 400


class SessionNotFoundError(ChatError):
    code = "SESSION_NOT_FOUND"
    status_code = 404

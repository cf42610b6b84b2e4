from __future__ import annotations

from typing import Any, Dict

CONFIGURATION_APOLOGY = (
    "I'm sorry, our support assistant isn't available right now because of a setup problem on our side. "
    "Please contact support@cozy-cart.store and we'll be happy to help."
)
TRANSIENT_APOLOGY = (
    "I'm having trouble connecting to the AI service right now. Please try again in a moment."
)
UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred. Please try again."


class ChatError(Exception):
    """Base class for failures that map onto a client-facing JSON error body."""

    status_code = 500
    code: str | None = None

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.session_id = session_id

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.message}
        if self.session_id:
            payload["sessionId"] = self.session_id
        if self.code:
            payload["code"] = self.code
        return payload


class ValidationError(ChatError):
    status_code = 400


class NotFoundError(ChatError):
    status_code = 404


class GenerationError(ChatError):
    """The model could not produce a reply; ``message`` is safe to show the user."""


class ConfigurationError(GenerationError):
    code = "configuration_error"

    def __init__(self, detail: str = "", *, session_id: str | None = None) -> None:
        super().__init__(CONFIGURATION_APOLOGY, session_id=session_id)
        self.detail = detail


class TransientServiceError(GenerationError):
    code = "service_unavailable"

    def __init__(self, detail: str = "", *, session_id: str | None = None) -> None:
        super().__init__(TRANSIENT_APOLOGY, session_id=session_id)
        self.detail = detail

from __future__ import annotations

from typing import Any, Dict, List, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from support_chat.utils.env import get_float_env, get_int_env, get_str_env
from support_chat.utils.logging import get_logger

log = get_logger(__name__)

_DEFAULT_BASE = "https://api.groq.com/openai/v1"
_DEFAULT_CHAT_MODEL = "llama-3.3-70b-versatile"
_RETRYABLE_STATUS = {408, 409, 429}

ChatMessages = Sequence[Dict[str, str]]


class ChatClientConfigError(RuntimeError):
    """Raised when the model credential or endpoint configuration is missing."""


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status in _RETRYABLE_STATUS or status >= 500
    return isinstance(exc, httpx.TransportError)


def _first_choice_text(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    message = choices[0].get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, str):
        return None
    return content.strip() or None


class ChatCompletionClient:
    """Client for an OpenAI-compatible ``/chat/completions`` endpoint.

    Built once per process and handed to whoever needs it. The credential is
    checked here, at construction, so a misconfigured deployment is visible at
    start-up instead of on the first user message.
    """

    def __init__(
        self,
        api_key: str | None,
        *,
        base_url: str = _DEFAULT_BASE,
        model: str = _DEFAULT_CHAT_MODEL,
        timeout_seconds: float = 30.0,
        max_attempts: int = 2,
        backoff_min_seconds: float = 0.5,
        backoff_max_seconds: float = 4.0,
    ) -> None:
        if not api_key or not api_key.strip():
            raise ChatClientConfigError("GROQ_API_KEY is not configured")
        self._api_key = api_key.strip()
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(max_attempts, 1)
        self.backoff_min_seconds = backoff_min_seconds
        self.backoff_max_seconds = backoff_max_seconds

    @classmethod
    def from_env(cls) -> "ChatCompletionClient":
        return cls(
            get_str_env("GROQ_API_KEY"),
            base_url=get_str_env("GROQ_BASE_URL", _DEFAULT_BASE) or _DEFAULT_BASE,
            model=get_str_env("GROQ_MODEL", _DEFAULT_CHAT_MODEL) or _DEFAULT_CHAT_MODEL,
            timeout_seconds=get_float_env("LLM_TIMEOUT_SECONDS", 30.0) or 30.0,
            max_attempts=get_int_env("LLM_MAX_ATTEMPTS", 2),
            backoff_min_seconds=get_float_env("LLM_BACKOFF_MIN_SECONDS", 0.5) or 0.5,
            backoff_max_seconds=get_float_env("LLM_BACKOFF_MAX_SECONDS", 4.0) or 4.0,
        )

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}", "Content-Type": "application/json"}

    async def _post(self, payload: Dict[str, Any]) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            response = await client.post(f"{self.base_url}/chat/completions", headers=self._headers(), json=payload)
            response.raise_for_status()
            return response.json()

    async def complete(
        self,
        messages: ChatMessages,
        *,
        max_tokens: int,
        temperature: float,
    ) -> str | None:
        """Return the first completion's text, or ``None`` when the model sent nothing usable."""
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": [dict(message) for message in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        data: Any = None
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=self.backoff_min_seconds, max=self.backoff_max_seconds),
            retry=retry_if_exception(_is_retryable),
            reraise=True,
        ):
            with attempt:
                attempt_number = attempt.retry_state.attempt_number
                if attempt_number > 1:
                    log.warning("llm_retry", attempt=attempt_number, model=self.model)
                data = await self._post(payload)
        return _first_choice_text(data)


def build_chat_client() -> ChatCompletionClient | None:
    """Construct the process-wide client, or ``None`` when no credential is configured."""
    try:
        return ChatCompletionClient.from_env()
    except ChatClientConfigError as exc:
        log.error("llm_client_unconfigured", error=str(exc))
        return None


def describe_messages(messages: ChatMessages) -> List[str]:
    """Role sequence of a prompt, for logs that must not carry message text."""
    return [message.get("role", "?") for message in messages]

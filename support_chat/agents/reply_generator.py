from __future__ import annotations

from typing import Dict, List, Sequence

import httpx

from support_chat.utils.errors import ConfigurationError, GenerationError, TransientServiceError
from support_chat.utils.history import HistoryEntry
from support_chat.utils.llm_client import ChatClientConfigError, ChatCompletionClient, describe_messages
from support_chat.utils.logging import get_logger
from support_chat.utils.observability import RequestMetrics, get_metrics, time_phase

log = get_logger(__name__)

FALLBACK_REPLY = "I apologize, but I couldn't generate a response. Please try again."
DEFAULT_MAX_TOKENS = 500
DEFAULT_TEMPERATURE = 0.7

_ROLE_BY_SENDER = {"user": "user", "ai": "assistant"}
_REJECTED_CREDENTIAL_STATUS = {401, 403}


class ReplyGenerator:
    """Builds the prompt for one turn and asks the model for a reply.

    ``client`` is ``None`` when the deployment has no model credential; every
    call then fails fast with :class:`ConfigurationError`.
    """

    def __init__(
        self,
        client: ChatCompletionClient | None,
        *,
        preamble: str,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        temperature: float = DEFAULT_TEMPERATURE,
        metrics: RequestMetrics | None = None,
    ) -> None:
        self.client = client
        self.preamble = preamble
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.metrics = metrics or get_metrics()

    def build_messages(self, history: Sequence[HistoryEntry], current_message: str) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self.preamble}]
        for entry in history:
            messages.append({"role": _ROLE_BY_SENDER[entry.sender], "content": entry.content})
        messages.append({"role": "user", "content": current_message})
        return messages

    def _fail(self, error: GenerationError) -> GenerationError:
        self.metrics.increment_counter(f"generation_failure::{error.code}")
        return error

    async def generate(self, history: Sequence[HistoryEntry], current_message: str) -> str:
        if self.client is None:
            log.error("llm_configuration_error", reason="missing_credential")
            raise self._fail(ConfigurationError("model credential is not configured"))

        messages = self.build_messages(history, current_message)
        log.debug("llm_prompt_built", roles=describe_messages(messages), history_size=len(history))
        try:
            with time_phase(self.metrics, "generation"):
                text = await self.client.complete(
                    messages,
                    max_tokens=self.max_tokens,
                    temperature=self.temperature,
                )
        except ChatClientConfigError as exc:
            log.error("llm_configuration_error", reason="client_config", error=str(exc))
            raise self._fail(ConfigurationError(str(exc))) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in _REJECTED_CREDENTIAL_STATUS:
                log.error("llm_configuration_error", reason="credential_rejected", status=status)
                raise self._fail(ConfigurationError(f"credential rejected with HTTP {status}")) from exc
            log.warning("llm_service_error", status=status)
            raise self._fail(TransientServiceError(f"upstream returned HTTP {status}")) from exc
        except httpx.TimeoutException as exc:
            log.warning("llm_timeout", error_type=type(exc).__name__)
            raise self._fail(TransientServiceError("model call timed out")) from exc
        except Exception as exc:
            log.warning("llm_call_failed", error_type=type(exc).__name__, error=str(exc))
            raise self._fail(TransientServiceError(str(exc))) from exc

        if not text:
            self.metrics.increment_counter("generation_fallback::empty")
            log.warning("llm_empty_reply")
            return FALLBACK_REPLY
        return text

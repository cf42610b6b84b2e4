import asyncio

import httpx
import pytest

from support_chat.agents.reply_generator import FALLBACK_REPLY, ReplyGenerator
from support_chat.utils.errors import (
    CONFIGURATION_APOLOGY,
    TRANSIENT_APOLOGY,
    ConfigurationError,
    TransientServiceError,
)
from support_chat.utils.history import HistoryEntry
from support_chat.utils.observability import RequestMetrics


class FakeChatClient:
    def __init__(self, *results: object) -> None:
        self.results = list(results)
        self.calls: list[dict] = []

    async def complete(self, messages, *, max_tokens, temperature):
        self.calls.append({"messages": list(messages), "max_tokens": max_tokens, "temperature": temperature})
        result = self.results.pop(0) if self.results else "ok"
        if isinstance(result, BaseException):
            raise result
        return result


def _status_error(status: int) -> httpx.HTTPStatusError:
    return httpx.HTTPStatusError(
        "upstream",
        request=httpx.Request("POST", "https://mock"),
        response=httpx.Response(status),
    )


def test_build_messages_maps_roles_in_order():
    generator = ReplyGenerator(None, preamble="KNOWLEDGE")
    history = [
        HistoryEntry("user", "Where is my order?"),
        HistoryEntry("ai", "Could you share the order number?"),
        HistoryEntry("user", "#1234"),
    ]
    messages = generator.build_messages(history, "Any update?")
    assert messages == [
        {"role": "system", "content": "KNOWLEDGE"},
        {"role": "user", "content": "Where is my order?"},
        {"role": "assistant", "content": "Could you share the order number?"},
        {"role": "user", "content": "#1234"},
        {"role": "user", "content": "Any update?"},
    ]


def test_generate_uses_fixed_parameters():
    client = FakeChatClient("Orders ship within one business day.")
    metrics = RequestMetrics()
    generator = ReplyGenerator(client, preamble="KB", metrics=metrics)

    reply = asyncio.run(generator.generate([], "When will it ship?"))

    assert reply == "Orders ship within one business day."
    assert client.calls[0]["max_tokens"] == 500
    assert client.calls[0]["temperature"] == 0.7
    assert client.calls[0]["messages"][-1] == {"role": "user", "content": "When will it ship?"}
    assert metrics.snapshot()["phases"]["generation"]["count"] == 1


@pytest.mark.parametrize("empty", [None, ""])
def test_generate_falls_back_when_model_returns_nothing(empty):
    metrics = RequestMetrics()
    generator = ReplyGenerator(FakeChatClient(empty), preamble="KB", metrics=metrics)
    assert asyncio.run(generator.generate([], "hello")) == FALLBACK_REPLY
    assert metrics.snapshot()["counters"]["generation_fallback::empty"] == 1


def test_missing_client_is_configuration_error():
    metrics = RequestMetrics()
    generator = ReplyGenerator(None, preamble="KB", metrics=metrics)
    with pytest.raises(ConfigurationError) as excinfo:
        asyncio.run(generator.generate([], "hello"))
    assert excinfo.value.message == CONFIGURATION_APOLOGY
    assert excinfo.value.code == "configuration_error"
    assert metrics.snapshot()["counters"]["generation_failure::configuration_error"] == 1


@pytest.mark.parametrize("status", [401, 403])
def test_rejected_credential_is_configuration_error(status):
    generator = ReplyGenerator(FakeChatClient(_status_error(status)), preamble="KB", metrics=RequestMetrics())
    with pytest.raises(ConfigurationError):
        asyncio.run(generator.generate([], "hello"))


@pytest.mark.parametrize(
    "failure",
    [
        _status_error(500),
        _status_error(429),
        httpx.ReadTimeout("slow", request=httpx.Request("POST", "https://mock")),
        httpx.ConnectError("down", request=httpx.Request("POST", "https://mock")),
        ValueError("Expecting value: line 1 column 1"),
    ],
)
def test_other_failures_are_transient(failure):
    metrics = RequestMetrics()
    generator = ReplyGenerator(FakeChatClient(failure), preamble="KB", metrics=metrics)
    with pytest.raises(TransientServiceError) as excinfo:
        asyncio.run(generator.generate([], "hello"))
    assert excinfo.value.message == TRANSIENT_APOLOGY
    assert "Expecting value" not in excinfo.value.to_payload()["error"]
    assert metrics.snapshot()["counters"]["generation_failure::service_unavailable"] == 1

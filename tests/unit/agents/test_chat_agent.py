import asyncio

import pytest

from support_chat.agents.chat_agent import ChatAgent, validate_message
from support_chat.agents.reply_generator import ReplyGenerator
from support_chat.utils.conversation_store import ConversationStore, build_engine
from support_chat.utils.errors import (
    CONFIGURATION_APOLOGY,
    TRANSIENT_APOLOGY,
    ConfigurationError,
    NotFoundError,
    TransientServiceError,
    ValidationError,
)
from support_chat.utils.observability import RequestMetrics


class RecordingGenerator(ReplyGenerator):
    def __init__(self, reply: str = "Happy to help!", error: Exception | None = None) -> None:
        super().__init__(None, preamble="KB", metrics=RequestMetrics())
        self.reply = reply
        self.error = error
        self.calls: list[tuple[list, str]] = []

    async def generate(self, history, current_message):
        self.calls.append((list(history), current_message))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def store(tmp_path):
    store = ConversationStore(build_engine(str(tmp_path / "chat.sqlite")))
    yield store
    store.close()


def test_validate_message():
    assert validate_message("  hello  ") == "hello"
    assert len(validate_message("a" * 2500)) == 2000
    for bad in (None, "", "   \n\t", 42, ["hi"], {"text": "hi"}):
        with pytest.raises(ValidationError):
            validate_message(bad)


def test_successful_turn_persists_user_then_ai(store):
    generator = RecordingGenerator(reply="We ship to Canada.")
    agent = ChatAgent(store, generator)

    turn = asyncio.run(agent.send_message("  Do you ship to Canada?  "))

    assert turn.reply == "We ship to Canada."
    assert turn.created_session is True
    messages = store.list_messages(turn.session_id)
    assert [(m.sender, m.content) for m in messages] == [
        ("user", "Do you ship to Canada?"),
        ("ai", "We ship to Canada."),
    ]
    history, current = generator.calls[0]
    assert history == []
    assert current == "Do you ship to Canada?"


def test_follow_up_reuses_session_and_sends_prior_turns(store):
    generator = RecordingGenerator()
    agent = ChatAgent(store, generator)

    first = asyncio.run(agent.send_message("hi"))
    second = asyncio.run(agent.send_message("what about returns?", first.session_id))

    assert second.session_id == first.session_id
    assert second.created_session is False
    history, current = generator.calls[1]
    assert [(h.sender, h.content) for h in history] == [("user", "hi"), ("ai", "Happy to help!")]
    assert current == "what about returns?"
    assert store.count_messages(first.session_id) == 4


def test_unknown_session_gets_fresh_conversation(store):
    agent = ChatAgent(store, RecordingGenerator())
    stale = "2f1c7e0e-5d8b-4b7c-9a51-0d6a0c8e2f11"
    turn = asyncio.run(agent.send_message("hello", stale))
    assert turn.session_id != stale
    assert turn.created_session is True
    assert store.count_messages(turn.session_id) == 2


def test_long_message_truncated_before_storage_and_prompt(store):
    generator = RecordingGenerator()
    agent = ChatAgent(store, generator)
    turn = asyncio.run(agent.send_message("b" * 3000))
    stored = store.list_messages(turn.session_id)[0]
    assert len(stored.content) == 2000
    assert len(generator.calls[0][1]) == 2000


def test_window_caps_history_at_twenty(store):
    conversation_id = store.create_conversation()
    for i in range(25):
        store.append_message(conversation_id, "user" if i % 2 == 0 else "ai", f"m{i}")
    generator = RecordingGenerator()
    agent = ChatAgent(store, generator)

    asyncio.run(agent.send_message("26th", conversation_id))

    history, current = generator.calls[0]
    assert len(history) == 20
    assert [h.content for h in history] == [f"m{i}" for i in range(5, 25)]
    assert current == "26th"


def test_invalid_message_has_no_side_effects(store):
    agent = ChatAgent(store, RecordingGenerator())
    with pytest.raises(ValidationError):
        asyncio.run(agent.send_message("   "))
    assert store.list_conversations() == []


@pytest.mark.parametrize(
    "error, apology",
    [
        (ConfigurationError("missing key"), CONFIGURATION_APOLOGY),
        (TransientServiceError("timeout"), TRANSIENT_APOLOGY),
    ],
)
def test_generation_failure_persists_apology_and_keeps_session(store, error, apology):
    agent = ChatAgent(store, RecordingGenerator(error=error))

    with pytest.raises(type(error)) as excinfo:
        asyncio.run(agent.send_message("hello"))

    session_id = excinfo.value.session_id
    assert session_id
    messages = store.list_messages(session_id)
    assert [(m.sender, m.content) for m in messages] == [("user", "hello"), ("ai", apology)]
    assert excinfo.value.to_payload()["sessionId"] == session_id


def test_missing_credential_end_to_end(store):
    agent = ChatAgent(store, ReplyGenerator(None, preamble="KB", metrics=RequestMetrics()))
    with pytest.raises(ConfigurationError) as excinfo:
        asyncio.run(agent.send_message("hello"))
    ai_messages = [m for m in store.list_messages(excinfo.value.session_id) if m.sender == "ai"]
    assert [m.content for m in ai_messages] == [CONFIGURATION_APOLOGY]


def test_storage_failure_propagates_unchanged(store):
    agent = ChatAgent(store, RecordingGenerator())

    def broken_append(*args, **kwargs):
        raise RuntimeError("disk full")

    agent.store.append_message = broken_append  # type: ignore[method-assign]
    with pytest.raises(RuntimeError, match="disk full"):
        asyncio.run(agent.send_message("hello"))


def test_concurrent_turns_on_one_session_do_not_interleave(store):
    class SlowGenerator(RecordingGenerator):
        async def generate(self, history, current_message):
            self.calls.append((list(history), current_message))
            await asyncio.sleep(0.01)
            return f"re: {current_message}"

    generator = SlowGenerator()
    agent = ChatAgent(store, generator)
    conversation_id = store.create_conversation()

    async def run() -> None:
        await asyncio.gather(
            agent.send_message("one", conversation_id),
            agent.send_message("two", conversation_id),
        )

    asyncio.run(run())
    senders = [m.sender for m in store.list_messages(conversation_id)]
    assert senders == ["user", "ai", "user", "ai"]
    second_history, _ = generator.calls[1]
    assert len(second_history) == 2


def test_history_lookup(store):
    agent = ChatAgent(store, RecordingGenerator())
    turn = asyncio.run(agent.send_message("hello"))

    history = agent.get_history(turn.session_id)
    assert history.sessionId == turn.session_id
    assert [(m.sender, m.content) for m in history.messages] == [("user", "hello"), ("ai", "Happy to help!")]

    with pytest.raises(NotFoundError):
        agent.get_history("2f1c7e0e-5d8b-4b7c-9a51-0d6a0c8e2f11")
    with pytest.raises(NotFoundError):
        agent.get_history("nope")
    with pytest.raises(ValidationError):
        agent.get_history("  ")

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from support_chat.agents.reply_generator import ReplyGenerator
from support_chat.schemas.models import HistoryMessage, HistoryResponse
from support_chat.utils.conversation_store import MAX_CONTENT_CHARS, ConversationStore
from support_chat.utils.env import get_int_env
from support_chat.utils.errors import GenerationError, NotFoundError, ValidationError
from support_chat.utils.history import DEFAULT_HISTORY_WINDOW, HistoryLoader
from support_chat.utils.knowledge import load_knowledge_preamble
from support_chat.utils.llm_client import build_chat_client
from support_chat.utils.logging import get_logger
from support_chat.utils.session import SessionLocks, SessionResolver

log = get_logger(__name__)


@dataclass(frozen=True)
class ChatTurn:
    reply: str
    session_id: str
    created_session: bool = False


def validate_message(raw: Any) -> str:
    """Trimmed message text capped at the storage bound, or ``ValidationError``."""
    if raw is None or not isinstance(raw, str):
        raise ValidationError("Message is required and must be a string")
    trimmed = raw.strip()
    if not trimmed:
        raise ValidationError("Message cannot be empty")
    return trimmed[:MAX_CONTENT_CHARS]


class ChatAgent:
    """Runs one chat turn end to end: session, persistence, context, reply."""

    def __init__(
        self,
        store: ConversationStore,
        generator: ReplyGenerator,
        *,
        history_window: int = DEFAULT_HISTORY_WINDOW,
        locks: SessionLocks | None = None,
    ) -> None:
        self.store = store
        self.generator = generator
        self.resolver = SessionResolver(store)
        self.history = HistoryLoader(store, window_size=history_window)
        self.locks = locks or SessionLocks()

    @classmethod
    def from_env(cls) -> "ChatAgent":
        store = ConversationStore.from_env()
        generator = ReplyGenerator(build_chat_client(), preamble=load_knowledge_preamble())
        return cls(store, generator, history_window=get_int_env("HISTORY_WINDOW", DEFAULT_HISTORY_WINDOW))

    def close(self) -> None:
        self.store.close()

    async def send_message(self, message: Any, session_id: Any = None) -> ChatTurn:
        """Answer ``message`` within the conversation named by ``session_id``.

        The user's message is stored before the model is called. If generation
        fails, the apology shown to the user is stored as the ``ai`` turn and
        the raised :class:`GenerationError` carries the session id.
        """
        text = validate_message(message)
        resolution = self.resolver.resolve(session_id)
        conversation_id = resolution.conversation_id

        async with self.locks.hold(conversation_id):
            user_message = self.store.append_message(conversation_id, "user", text)
            window = self.history.window(conversation_id, exclude_message_id=user_message.id)
            log.info(
                "chat_message_received",
                session_id=conversation_id,
                new_session=resolution.created,
                message_length=len(text),
                window_size=len(window),
            )
            try:
                reply = await self.generator.generate(window, text)
            except GenerationError as exc:
                self.store.append_message(conversation_id, "ai", exc.message)
                exc.session_id = conversation_id
                log.warning("chat_reply_failed", session_id=conversation_id, code=exc.code)
                raise
            stored = self.store.append_message(conversation_id, "ai", reply)

        log.info("chat_reply_sent", session_id=conversation_id, reply_length=len(stored.content))
        return ChatTurn(reply=stored.content, session_id=conversation_id, created_session=resolution.created)

    def get_history(self, session_id: str | None) -> HistoryResponse:
        if not session_id or not session_id.strip():
            raise ValidationError("Session ID is required")
        conversation = self.store.get_conversation(session_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")
        messages = self.history.load(conversation.id)
        return HistoryResponse(
            sessionId=conversation.id,
            messages=[
                HistoryMessage(id=m.id, sender=m.sender, content=m.content, timestamp=m.created_at)
                for m in messages
            ],
        )

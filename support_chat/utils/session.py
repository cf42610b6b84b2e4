from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict

from support_chat.utils.conversation_store import ConversationStore
from support_chat.utils.logging import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class SessionResolution:
    conversation_id: str
    created: bool


class SessionResolver:
    """Map an optional client session token onto a usable conversation.

    Anything other than a string naming a stored conversation (absent, not a
    string, unknown, malformed, deleted) is treated as no token: a fresh
    conversation is created and its id returned. Callers never see an
    "invalid session" error.
    """

    def __init__(self, store: ConversationStore) -> None:
        self.store = store

    def resolve(self, session_id: Any) -> SessionResolution:
        if isinstance(session_id, str) and session_id.strip():
            conversation = self.store.get_conversation(session_id)
            if conversation is not None:
                return SessionResolution(conversation_id=conversation.id, created=False)
            log.info("session_unknown_replaced", supplied_length=len(session_id))
        conversation_id = self.store.create_conversation()
        log.info("conversation_created", session_id=conversation_id)
        return SessionResolution(conversation_id=conversation_id, created=True)


class SessionLocks:
    """Per-conversation asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, conversation_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        self._users[conversation_id] = self._users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._users[conversation_id] - 1
            if remaining:
                self._users[conversation_id] = remaining
            else:
                self._users.pop(conversation_id, None)
                self._locks.pop(conversation_id, None)

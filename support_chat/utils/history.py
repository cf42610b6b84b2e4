from __future__ import annotations

from dataclasses import dataclass
from typing import List

from support_chat.utils.conversation_store import ConversationStore, Message

DEFAULT_HISTORY_WINDOW = 20


@dataclass(frozen=True)
class HistoryEntry:
    sender: str
    content: str


class HistoryLoader:
    def __init__(self, store: ConversationStore, *, window_size: int = DEFAULT_HISTORY_WINDOW) -> None:
        self.store = store
        self.window_size = max(window_size, 0)

    def load(self, conversation_id: str) -> List[Message]:
        return self.store.list_messages(conversation_id)

    def window(self, conversation_id: str, *, exclude_message_id: str | None = None) -> List[HistoryEntry]:
        """Most recent ``window_size`` messages, oldest first.

        ``exclude_message_id`` drops the turn currently being answered so it is
        only ever passed to the model once, as the current message.
        """
        messages = [m for m in self.load(conversation_id) if m.id != exclude_message_id]
        if self.window_size == 0:
            return []
        recent = messages[-self.window_size:]
        return [HistoryEntry(sender=m.sender, content=m.content) for m in recent]

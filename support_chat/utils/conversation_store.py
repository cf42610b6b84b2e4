from __future__ import annotations

import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List

from sqlalchemy import (
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    String,
    Text,
    create_engine,
    event,
    func,
    literal_column,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, declarative_base
from sqlalchemy.pool import QueuePool, StaticPool

from support_chat.utils.env import get_float_env, get_int_env, get_str_env
from support_chat.utils.logging import get_logger

log = get_logger(__name__)

SENDERS = frozenset({"user", "ai"})
MAX_CONTENT_CHARS = 2000
DEFAULT_DATABASE_URL = "sqlite:///assets/data/chat.sqlite"
DEFAULT_POOL_SIZE = 5
DEFAULT_POOL_TIMEOUT_SECONDS = 30.0

_SQLITE_PREFIXES = ("sqlite:///", "sqlite://")

Base = declarative_base()


class ConversationModel(Base):
    __tablename__ = "conversations"

    id = Column(String, primary_key=True)
    created_at = Column(String, nullable=False)
    updated_at = Column(String, nullable=False)
    meta = Column("metadata", Text, nullable=False, server_default="{}")


class MessageModel(Base):
    __tablename__ = "messages"
    __table_args__ = (
        CheckConstraint("sender IN ('user', 'ai')", name="ck_messages_sender"),
        Index("idx_messages_conversation_id", "conversation_id"),
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
    )

    id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    sender = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)


# ties on created_at fall back to insertion order
_INSERTION_ORDER = literal_column("messages.rowid")


@dataclass(frozen=True)
class Conversation:
    id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_db(cls, row: ConversationModel) -> "Conversation":
        return cls(
            id=row.id,
            created_at=_from_db_time(row.created_at),
            updated_at=_from_db_time(row.updated_at),
        )


@dataclass(frozen=True)
class Message:
    id: str
    conversation_id: str
    sender: str
    content: str
    created_at: datetime

    @classmethod
    def from_db(cls, row: MessageModel) -> "Message":
        return cls(
            id=row.id,
            conversation_id=row.conversation_id,
            sender=row.sender,
            content=row.content,
            created_at=_from_db_time(row.created_at),
        )


def _now() -> datetime:
    return datetime.now(UTC)


def _to_db_time(value: datetime) -> str:
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _from_db_time(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _normalize_id(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError:
        return None


def resolve_database_path(url: str) -> str:
    """Turn ``DATABASE_URL`` into a SQLite file path (or ``:memory:``)."""
    raw = url.strip()
    for prefix in _SQLITE_PREFIXES:
        if raw.startswith(prefix):
            raw = raw[len(prefix):]
            break
    else:
        if "://" in raw:
            raise ValueError(f"Unsupported database URL: {url!r} (only sqlite is supported)")
    if not raw:
        raise ValueError("DATABASE_URL does not name a database file")
    return raw


def _enable_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def build_engine(
    database: str,
    *,
    pool_size: int = DEFAULT_POOL_SIZE,
    pool_timeout: float = DEFAULT_POOL_TIMEOUT_SECONDS,
) -> Engine:
    """SQLite engine whose pool caps concurrent connections at ``pool_size``.

    A checkout that finds the pool exhausted waits up to ``pool_timeout``
    seconds and then raises ``sqlalchemy.exc.TimeoutError``.
    """
    connect_args = {"check_same_thread": False, "timeout": 30.0}
    if database == ":memory:":
        # every in-memory connection is a separate database
        engine = create_engine("sqlite://", connect_args=connect_args, poolclass=StaticPool)
    else:
        Path(database).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            f"sqlite:///{database}",
            connect_args=connect_args,
            poolclass=QueuePool,
            pool_size=max(pool_size, 1),
            max_overflow=0,
            pool_timeout=pool_timeout,
        )
    event.listen(engine, "connect", _enable_foreign_keys)
    return engine


class ConversationStore:
    """SQLite-backed conversations and their messages."""

    def __init__(
        self,
        engine: Engine,
        *,
        clock: Callable[[], datetime] = _now,
        create_schema: bool = True,
    ) -> None:
        self.engine = engine
        self._clock = clock
        if create_schema:
            self.ensure_schema()

    @classmethod
    def from_env(cls) -> "ConversationStore":
        url = get_str_env("DATABASE_URL", DEFAULT_DATABASE_URL) or DEFAULT_DATABASE_URL
        database = resolve_database_path(url)
        pool_size = get_int_env("DATABASE_POOL_SIZE", DEFAULT_POOL_SIZE)
        engine = build_engine(
            database,
            pool_size=pool_size,
            pool_timeout=get_float_env("DATABASE_POOL_TIMEOUT_SECONDS", DEFAULT_POOL_TIMEOUT_SECONDS),
        )
        log.info("conversation_store_open", database=database, pool_size=pool_size)
        return cls(engine)

    @property
    def database(self) -> str:
        return self.engine.url.database or ":memory:"

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session, session.begin():
                yield session
        except PoolTimeoutError:
            log.error("store_pool_exhausted", pool=self.engine.pool.status())
            raise

    def ensure_schema(self) -> None:
        Base.metadata.create_all(self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def create_conversation(self) -> str:
        conversation_id = str(uuid.uuid4())
        now = _to_db_time(self._clock())
        with self._session() as session:
            session.add(ConversationModel(id=conversation_id, created_at=now, updated_at=now))
        return conversation_id

    def get_conversation(self, conversation_id: str | None) -> Conversation | None:
        normalized = _normalize_id(conversation_id)
        if normalized is None:
            return None
        with self._session() as session:
            row = session.get(ConversationModel, normalized)
            return Conversation.from_db(row) if row else None

    def append_message(self, conversation_id: str, sender: str, content: str) -> Message:
        """Insert a message and touch its conversation in one transaction."""
        if sender not in SENDERS:
            raise ValueError(f"Unknown sender {sender!r}; expected one of {sorted(SENDERS)}")
        normalized = _normalize_id(conversation_id)
        if normalized is None:
            raise LookupError(f"Conversation {conversation_id!r} does not exist")
        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=normalized,
            sender=sender,
            content=content[:MAX_CONTENT_CHARS],
            created_at=self._clock(),
        )
        stamp = _to_db_time(message.created_at)
        with self._session() as session:
            if session.get(ConversationModel, normalized) is None:
                raise LookupError(f"Conversation {conversation_id!r} does not exist")
            session.add(
                MessageModel(
                    id=message.id,
                    conversation_id=normalized,
                    sender=sender,
                    content=message.content,
                    created_at=stamp,
                )
            )
            session.flush()
            session.execute(
                update(ConversationModel)
                .where(ConversationModel.id == normalized)
                .values(updated_at=func.max(ConversationModel.updated_at, stamp)),
                execution_options={"synchronize_session": False},
            )
        return message

    def list_messages(self, conversation_id: str) -> List[Message]:
        normalized = _normalize_id(conversation_id)
        if normalized is None:
            return []
        with self._session() as session:
            rows = session.scalars(
                select(MessageModel)
                .where(MessageModel.conversation_id == normalized)
                .order_by(MessageModel.created_at.asc(), _INSERTION_ORDER.asc())
            ).all()
            return [Message.from_db(row) for row in rows]

    def count_messages(self, conversation_id: str) -> int:
        normalized = _normalize_id(conversation_id)
        if normalized is None:
            return 0
        with self._session() as session:
            count = session.scalar(
                select(func.count(MessageModel.id)).where(MessageModel.conversation_id == normalized)
            )
        return int(count or 0)

    def list_conversations(self, limit: int | None = None) -> List[Dict[str, Any]]:
        query = (
            select(
                ConversationModel.id,
                ConversationModel.created_at,
                ConversationModel.updated_at,
                func.count(MessageModel.id).label("message_count"),
            )
            .outerjoin(MessageModel, MessageModel.conversation_id == ConversationModel.id)
            .group_by(ConversationModel.id)
            .order_by(ConversationModel.updated_at.desc())
        )
        if limit is not None and limit > 0:
            query = query.limit(limit)
        with self._session() as session:
            rows = session.execute(query).all()
        return [
            {
                "id": row.id,
                "created_at": _from_db_time(row.created_at),
                "updated_at": _from_db_time(row.updated_at),
                "message_count": int(row.message_count or 0),
            }
            for row in rows
        ]

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


def _now_utc() -> datetime:
    return datetime.now(UTC)


class ChatMessageRequest(BaseModel):
    """Inbound widget payload; both fields are checked by the handler, not by pydantic."""

    message: Any = None
    sessionId: Any = None


class ChatMessageResponse(BaseModel):
    reply: str
    sessionId: str


class ErrorResponse(BaseModel):
    error: str
    sessionId: Optional[str] = None
    code: Optional[str] = None


class HistoryMessage(BaseModel):
    id: str
    sender: Literal["user", "ai"]
    content: str
    timestamp: datetime


class HistoryResponse(BaseModel):
    sessionId: str
    messages: List[HistoryMessage] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str = "ok"
    timestamp: datetime = Field(default_factory=_now_utc)


class MetricsResponse(BaseModel):
    metrics: Dict[str, Any] = Field(default_factory=dict)
    generated_at: datetime = Field(default_factory=_now_utc)

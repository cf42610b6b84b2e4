from __future__ import annotations

import os
import time
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.middleware import Middleware

from support_chat.agents.chat_agent import ChatAgent
from support_chat.schemas.models import (
    ChatMessageRequest,
    ChatMessageResponse,
    ErrorResponse,
    HealthResponse,
    HistoryResponse,
    MetricsResponse,
)
from support_chat.utils.env import load_env_file
from support_chat.utils.errors import UNEXPECTED_ERROR_MESSAGE, ChatError
from support_chat.utils.logging import bind_request_context, clear_request_context, get_logger
from support_chat.utils.observability import UNMATCHED_ROUTE, get_metrics

load_env_file()

log = get_logger(__name__)

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}

router = APIRouter()


def _cors_middleware() -> Middleware:
    raw_origins = os.getenv("CORS_ALLOW_ORIGINS", "*")
    if raw_origins.strip() == "*":
        origins = ["*"]
    else:
        origins = [entry.strip() for entry in raw_origins.split(",") if entry.strip()]
    return Middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _error_response(exc: ChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def _chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return _error_response(exc)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    log.info("request_body_invalid", path=request.url.path, errors=len(exc.errors()))
    return JSONResponse(status_code=400, content={"error": "Request body must be a JSON object with a 'message' string"})


def _route_key(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or UNMATCHED_ROUTE


async def observability_middleware(request: Request, call_next):
    metrics = get_metrics()
    request_id = uuid.uuid4().hex
    bind_request_context(request_id=request_id)
    start = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        duration_ms = (time.perf_counter() - start) * 1000
        route_key = _route_key(request)
        metrics.record(route_key, duration_ms)
        log.error(
            "api_request_failed",
            method=request.method,
            path=route_key,
            duration_ms=duration_ms,
            error=str(exc),
        )
        clear_request_context()
        raise
    duration_ms = (time.perf_counter() - start) * 1000
    route_key = _route_key(request)
    metrics.record(route_key, duration_ms)
    log.info(
        "api_request",
        method=request.method,
        path=route_key,
        status=response.status_code,
        duration_ms=duration_ms,
    )
    response.headers["X-Request-ID"] = request_id
    clear_request_context()
    return response


def get_chat_agent(request: Request) -> ChatAgent:
    agent = getattr(request.app.state, "chat_agent", None)
    if agent is None:
        raise RuntimeError("Chat agent is not initialised; run the app through its lifespan")
    return agent


@router.post("/chat/message", response_model=ChatMessageResponse, responses=_ERROR_RESPONSES)
async def chat_message(payload: ChatMessageRequest, agent: ChatAgent = Depends(get_chat_agent)):
    try:
        turn = await agent.send_message(payload.message, payload.sessionId)
    except ChatError as exc:
        return _error_response(exc)
    except Exception:
        log.exception("chat_unexpected_error")
        return JSONResponse(status_code=500, content={"error": UNEXPECTED_ERROR_MESSAGE})
    return ChatMessageResponse(reply=turn.reply, sessionId=turn.session_id)


@router.get("/chat/history", response_model=ErrorResponse, status_code=400, include_in_schema=False)
@router.get("/chat/history/", response_model=ErrorResponse, status_code=400, include_in_schema=False)
def chat_history_missing_id() -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "Session ID is required"})


@router.get("/chat/history/{session_id}", response_model=HistoryResponse, responses=_ERROR_RESPONSES)
def chat_history(session_id: str, agent: ChatAgent = Depends(get_chat_agent)):
    try:
        return agent.get_history(session_id)
    except ChatError as exc:
        return _error_response(exc)
    except Exception:
        log.exception("history_unexpected_error")
        return JSONResponse(status_code=500, content={"error": "Failed to fetch conversation history"})


@router.get("/health", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok", timestamp=datetime.now(UTC))


@router.get("/ping", response_class=HTMLResponse)
def ping() -> str:
    return "<html><body><h1>pong</h1></body></html>"


@router.get("/metrics", response_model=MetricsResponse)
def metrics_snapshot() -> MetricsResponse:
    return MetricsResponse(metrics=get_metrics().snapshot())


def create_app(agent: ChatAgent | None = None) -> FastAPI:
    """Build the ASGI app.

    When ``agent`` is omitted one is constructed from the environment during
    start-up and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned: ChatAgent | None = None
        if getattr(app.state, "chat_agent", None) is None:
            owned = ChatAgent.from_env()
            app.state.chat_agent = owned
            log.info("chat_agent_started", model_configured=owned.generator.client is not None)
        try:
            yield
        finally:
            if owned is not None:
                owned.close()
                app.state.chat_agent = None

    app = FastAPI(
        title="Support Chat API",
        version="0.1.0",
        middleware=[_cors_middleware()],
        lifespan=lifespan,
    )
    app.state.chat_agent = agent
    app.add_exception_handler(ChatError, _chat_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.middleware("http")(observability_middleware)
    app.include_router(router)
    return app


app = create_app()

from __future__ import annotations

import argparse
import asyncio
import os
from pathlib import Path
from typing import Any, Dict

import uvicorn
import yaml

from support_chat.agents.chat_agent import ChatAgent
from support_chat.utils.conversation_store import ConversationStore
from support_chat.utils.env import get_int_env, load_env_file
from support_chat.utils.errors import ChatError
from support_chat.utils.logging import get_logger

load_env_file()
log = get_logger(__name__)

_CONFIG_ENV_MAP: Dict[str, Dict[str, str]] = {
    "database": {
        "url": "DATABASE_URL",
        "pool_size": "DATABASE_POOL_SIZE",
        "pool_timeout_seconds": "DATABASE_POOL_TIMEOUT_SECONDS",
    },
    "llm": {
        "base_url": "GROQ_BASE_URL",
        "model": "GROQ_MODEL",
        "timeout_seconds": "LLM_TIMEOUT_SECONDS",
        "max_attempts": "LLM_MAX_ATTEMPTS",
    },
    "chat": {
        "history_window": "HISTORY_WINDOW",
        "knowledge_path": "KNOWLEDGE_PATH",
    },
}


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise SystemExit(f"Config file must contain a mapping: {path}")
    return data


def _apply_config(config: Dict[str, Any]) -> None:
    for section, env_map in _CONFIG_ENV_MAP.items():
        values = config.get(section) or {}
        for key, env_var in env_map.items():
            value = values.get(key)
            if value is not None and value != "":
                os.environ[env_var] = str(value)

    llm_cfg = config.get("llm") or {}
    if "api_key" in llm_cfg:
        log.warning("config_api_key_ignored", msg="Use .env or the environment for GROQ_API_KEY")


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    app_path = args.app
    host = args.host
    port = args.port
    reload = args.reload
    log.info("api_serve_start", app=app_path, host=host, port=port, reload=reload)
    uvicorn.run(app_path, host=host, port=port, reload=reload)


def cmd_init_db(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    store = ConversationStore.from_env()
    try:
        store.ensure_schema()
    finally:
        store.close()
    print(f"Schema ready in {store.database}")


def cmd_conversations(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    store = ConversationStore.from_env()
    try:
        rows = store.list_conversations(limit=args.limit)
    finally:
        store.close()
    if not rows:
        print("No conversations.")
        return
    for row in rows:
        print(f"{row['id']} | messages={row['message_count']} | updated={row['updated_at'].isoformat()}")


def cmd_history(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    store = ConversationStore.from_env()
    try:
        conversation = store.get_conversation(args.session_id)
        if conversation is None:
            print("Conversation not found.")
            return
        messages = store.list_messages(conversation.id)
    finally:
        store.close()
    print(f"Conversation: {conversation.id}")
    print(f"Created: {conversation.created_at.isoformat()}")
    print(f"Updated: {conversation.updated_at.isoformat()}")
    if not messages:
        print("(no messages)")
        return
    for message in messages:
        print(f"[{message.created_at.isoformat()}] {message.sender}: {message.content}")


def cmd_send(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    agent = ChatAgent.from_env()

    async def run() -> None:
        try:
            turn = await agent.send_message(args.message, args.session_id)
        except ChatError as exc:
            print(f"Error: {exc.message}")
            if exc.session_id:
                print(f"Session: {exc.session_id}")
            return
        print(turn.reply)
        print(f"Session: {turn.session_id}")

    try:
        asyncio.run(run())
    finally:
        agent.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Customer-support chat service CLI")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Run the HTTP API server")
    p_serve.add_argument("--app", default="support_chat.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=get_int_env("PORT", 3001))
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    p_init = sub.add_parser("init-db", help="Create the conversations/messages tables")
    p_init.set_defaults(func=cmd_init_db)

    p_list = sub.add_parser("conversations", help="List conversations, most recently active first")
    p_list.add_argument("--limit", type=int, default=20)
    p_list.set_defaults(func=cmd_conversations)

    p_history = sub.add_parser("history", help="Print the transcript of a conversation")
    p_history.add_argument("session_id", help="Conversation/session identifier")
    p_history.set_defaults(func=cmd_history)

    p_send = sub.add_parser("send", help="Send one message through the chat pipeline")
    p_send.add_argument("message", help="Message text")
    p_send.add_argument("--session-id")
    p_send.set_defaults(func=cmd_send)

    args = parser.parse_args()
    config = _load_config(args.config)
    _apply_config(config)
    args.func(args, config)


if __name__ == "__main__":
    main()

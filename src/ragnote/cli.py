"""ragnote CLI, main entry point.

Commands:
  init      Initialize a vault
  chat      Start interactive chat session
  ask       Ask a single question and print the answer
  models    List configured and local models
  chats     List chats in this vault
  config    View and update vault settings
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="ragnote",
        description="ragnote: chat with your notes, grounded in your own vault",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command")

    # init
    init_parser = subparsers.add_parser("init", help="Initialize a vault")
    init_parser.add_argument("path", nargs="?", default=".", help="Vault directory")

    # chat
    chat_parser = subparsers.add_parser("chat", help="Start interactive chat session")
    chat_parser.add_argument("--chat", dest="chat_id", help="Chat ID to resume")
    chat_parser.add_argument("--agent", help="Agent to seed new chats with")

    # ask
    ask_parser = subparsers.add_parser("ask", help="Ask a single question")
    ask_parser.add_argument("question", help="The question to ask")
    ask_parser.add_argument("--agent", help="Agent to seed the chat with")
    ask_parser.add_argument("--model", help="Model to use instead of the default")

    # models
    models_parser = subparsers.add_parser("models", help="List configured and local models")
    models_parser.add_argument("--set-default", metavar="MODEL", help="Set the default model")

    # chats
    subparsers.add_parser("chats", help="List chats in this vault")

    # config
    config_parser = subparsers.add_parser("config", help="View and update vault settings")
    config_parser.add_argument(
        "action", choices=["show", "get", "set"], help="Action to perform"
    )
    config_parser.add_argument("key", nargs="?", help="Setting key (for get/set)")
    config_parser.add_argument("value", nargs="?", help="Setting value (for set)")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.command is None:
        # Default to chat if no command given
        args.command = "chat"
        args.chat_id = None
        args.agent = None

    from ragnote.core.errors import RagnoteError

    try:
        if args.command == "init":
            return cmd_init(args)
        elif args.command == "chat":
            return cmd_chat(args)
        elif args.command == "ask":
            return cmd_ask(args)
        elif args.command == "models":
            return cmd_models(args)
        elif args.command == "chats":
            return cmd_chats(args)
        elif args.command == "config":
            return cmd_config(args)
        else:
            parser.print_help()
            return 1
    except KeyboardInterrupt:
        print("\nInterrupted.")
        return 130
    except (RagnoteError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


def _vault_root_or_none() -> Path | None:
    from ragnote.utils.paths import find_vault_root

    root = find_vault_root()
    if root is None:
        print("No ragnote vault found. Run 'ragnote init' first.", file=sys.stderr)
    return root


def cmd_init(args: argparse.Namespace) -> int:
    """Initialize a vault."""
    from ragnote.config import RagnoteSettings, save_settings
    from ragnote.utils.paths import get_vault_settings_path

    vault_root = Path(args.path).resolve()
    vault_root.mkdir(parents=True, exist_ok=True)
    (vault_root / ".ragnote" / "agents").mkdir(parents=True, exist_ok=True)

    settings_path = get_vault_settings_path(vault_root)
    if not settings_path.exists():
        save_settings(RagnoteSettings(), settings_path)

    gitignore = vault_root / ".ragnote" / ".gitignore"
    if not gitignore.exists():
        gitignore.write_text("lance/\nhistory\n")

    print(f"Initialized ragnote vault at {vault_root}")
    return 0


def cmd_chat(args: argparse.Namespace) -> int:
    """Start interactive chat session."""
    from ragnote.chat.repl import run_repl

    vault_root = _vault_root_or_none()
    if vault_root is None:
        return 1
    run_repl(vault_root, chat_id=args.chat_id, agent_name=args.agent)
    return 0


def cmd_ask(args: argparse.Namespace) -> int:
    """Run a single turn and print the assistant's answer."""
    from ragnote.chat.renderer import ChatRenderer
    from ragnote.chat.repl import ReplState, run_turn_with_events
    from ragnote.core.agents import DEFAULT_AGENT, get_agent_config
    from ragnote.core.chat import Chat
    from ragnote.core.events import ChatEvent
    from ragnote.core.runtime import create_orchestrator

    vault_root = _vault_root_or_none()
    if vault_root is None:
        return 1

    agent = DEFAULT_AGENT
    if args.agent:
        agent = get_agent_config(args.agent, vault_root)
        if agent is None:
            print(f"Unknown agent: {args.agent}", file=sys.stderr)
            return 1

    async def run() -> int:
        event_queue: asyncio.Queue[ChatEvent] = asyncio.Queue()
        orchestrator = create_orchestrator(vault_root, event_queue=event_queue)
        state = ReplState(agent, Chat(model_name=args.model) if args.model else None)
        await run_turn_with_events(orchestrator, ChatRenderer(), state, args.question)
        return 0 if orchestrator.state.value == "idle" else 1

    return asyncio.run(run())


def cmd_models(args: argparse.Namespace) -> int:
    """List models, or set the default one."""
    from ragnote.chat.renderer import ChatRenderer
    from ragnote.core.runtime import create_registry
    from ragnote.core.store import JsonChatStore

    vault_root = _vault_root_or_none()
    if vault_root is None:
        return 1

    registry = create_registry(JsonChatStore(vault_root))
    if args.set_default:
        if registry.get_llm_config(args.set_default) is None:
            print(f"LLM {args.set_default} not found.", file=sys.stderr)
            return 1
        registry.set_default_llm(args.set_default)
        print(f"default_llm = {args.set_default}")
        return 0

    ChatRenderer().render_model_list(registry.all_llm_configs(), registry.get_default_llm())
    return 0


def cmd_chats(args: argparse.Namespace) -> int:
    """List chats, most recent first."""
    from ragnote.chat.renderer import ChatRenderer
    from ragnote.core.store import JsonChatStore

    vault_root = _vault_root_or_none()
    if vault_root is None:
        return 1

    ChatRenderer().render_chat_list(JsonChatStore(vault_root).list_chat_metadata())
    return 0


ALLOWED_CONFIG_KEYS = {
    "default_llm", "max_tokens", "temperature", "max_tool_iterations",
    "embedding_model", "ollama_url", "search_mode",
}
INT_KEYS = {"max_tokens", "max_tool_iterations"}
FLOAT_KEYS = {"temperature"}


def cmd_config(args: argparse.Namespace) -> int:
    """View and update vault settings."""
    from ragnote.config import load_json_file, load_settings, validate_settings
    from ragnote.utils.paths import get_vault_settings_path

    vault_root = _vault_root_or_none()
    if vault_root is None:
        return 1

    action = args.action

    if action == "show":
        settings = load_settings(vault_root)
        print(json.dumps(settings.to_dict(), indent=2))
        return 0

    if args.key not in ALLOWED_CONFIG_KEYS:
        if not args.key:
            print(f"Usage: ragnote config {action} <key>", file=sys.stderr)
        else:
            print(
                f"Unknown key: {args.key}. "
                f"Allowed keys: {', '.join(sorted(ALLOWED_CONFIG_KEYS))}",
                file=sys.stderr,
            )
        return 1

    if action == "get":
        value = getattr(load_settings(vault_root), args.key)
        print(value if value is not None else "")
        return 0

    if action == "set":
        if args.value is None:
            print("Usage: ragnote config set <key> <value>", file=sys.stderr)
            return 1

        # Parse typed values
        value: str | int | float = args.value
        try:
            if args.key in INT_KEYS:
                value = int(args.value)
            elif args.key in FLOAT_KEYS:
                value = float(args.value)
        except ValueError:
            print(f"{args.key} must be a number", file=sys.stderr)
            return 1

        # Validate by building a settings object from merged data
        test_settings = load_settings(vault_root)
        setattr(test_settings, args.key, value)
        errors = validate_settings(test_settings)
        if errors:
            for err in errors:
                print(f"Validation error: {err}", file=sys.stderr)
            return 1

        settings_path = get_vault_settings_path(vault_root)
        data = load_json_file(settings_path)
        data[args.key] = value
        settings_path.parent.mkdir(parents=True, exist_ok=True)
        settings_path.write_text(
            json.dumps(data, indent=2) + "\n", encoding="utf-8"
        )
        print(f"{args.key} = {value}")
        return 0

    return 1


if __name__ == "__main__":
    sys.exit(main())

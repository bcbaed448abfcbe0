"""
agentrelay terminal client.

Runs conversations against the integrated agent providers and renders the
same event stream a remote client would receive.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import uuid

from agentrelay.config.settings import Settings, load_settings
from agentrelay.core.ai.factory import ProviderRegistry, default_registry
from agentrelay.core.chat_service import ChatService
from agentrelay.core.errors import ProviderNotConfiguredError, UnknownProviderError
from agentrelay.core.execution_mode import ExecutionMode, apply_execution_mode
from agentrelay.core.models import Conversation
from agentrelay.ui.colors import BOLD, ERROR_FG, MUTED_FG, RESET, SUCCESS_FG, USER_FG, color_enabled
from agentrelay.ui.console import EventPrinter

logger = logging.getLogger(__name__)

EXIT_WORDS = {"exit", "quit", ":q"}


def _configure_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _paint(text: str, color: str) -> str:
    return f"{color}{text}{RESET}" if color_enabled() else text


# ═══════════════════════════════════════════════════════════════
# chat
# ═══════════════════════════════════════════════════════════════

def _build_conversation(args) -> Conversation:
    conv = Conversation(
        id=str(uuid.uuid4()),
        cwd=os.path.abspath(args.cwd or os.getcwd()),
        model=args.model,
        provider=args.provider,
        sandboxed=not args.no_sandbox,
    )
    if args.mode:
        apply_execution_mode(conv, ExecutionMode(args.mode))
    return conv


async def _chat_session(args, settings: Settings, registry: ProviderRegistry) -> int:
    printer = EventPrinter(show_stderr=args.show_stderr)
    conv = _build_conversation(args)
    service = ChatService(
        registry,
        send=printer.send,
        on_save=lambda cid: logger.debug(f"Conversation {cid} now has {len(conv.messages)} messages"),
        broadcast_status=printer.broadcast_status,
        upload_dir=settings.upload_dir,
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(service.cancel(conv)))
    except (NotImplementedError, RuntimeError):
        logger.debug("SIGINT handler unavailable; Ctrl-C will exit instead of cancelling")

    prompt = " ".join(args.prompt).strip()
    if prompt:
        await service.send_message(conv, prompt)
        return 1 if printer.errors else 0

    print(_paint(f"agentrelay · {args.provider} · {conv.cwd}  (exit to quit)", MUTED_FG))
    while True:
        try:
            text = await asyncio.to_thread(input, _paint("\n› ", USER_FG))
        except EOFError:
            break
        text = text.strip()
        if not text:
            continue
        if text.lower() in EXIT_WORDS:
            break
        if text == "/regenerate":
            await service.regenerate(conv)
        else:
            await service.send_message(conv, text)
    return 0


def cmd_chat(args, settings: Settings) -> int:
    registry = default_registry(settings)
    if not registry.has(args.provider):
        print(_paint(f"Unknown provider: {args.provider}", ERROR_FG))
        return 2
    return asyncio.run(_chat_session(args, settings, registry))


# ═══════════════════════════════════════════════════════════════
# models
# ═══════════════════════════════════════════════════════════════

def cmd_models(args, settings: Settings) -> int:
    registry = default_registry(settings)
    try:
        provider = registry.get(args.provider)
    except UnknownProviderError as e:
        print(_paint(str(e), ERROR_FG))
        return 2

    models = asyncio.run(provider.get_models())
    print(_paint(f"{provider.display_name} models", BOLD))
    for model in models:
        price = ""
        if model.input_price or model.output_price:
            price = f"  ${model.input_price}/${model.output_price} per 1M tokens"
        print(f"  {model.id:<20} {model.name:<16} {model.context:>7} ctx{price}")
    return 0


# ═══════════════════════════════════════════════════════════════
# doctor
# ═══════════════════════════════════════════════════════════════

def cmd_doctor(args, settings: Settings) -> int:
    """Check that at least one provider can run."""
    ok = _paint("✓", SUCCESS_FG)
    bad = _paint("✗", ERROR_FG)
    optional = _paint("○", MUTED_FG)

    print(_paint("agentrelay doctor", BOLD))
    print(f"{ok} Python {sys.version.split()[0]}")

    available = 0
    for provider in default_registry(settings).providers():
        try:
            location = provider.check_available()
        except ProviderNotConfiguredError as e:
            print(f"{optional} {e}")
            continue
        available += 1
        print(f"{ok} {provider.display_name} available at {location}")

    print(f"{ok} Process timeout {settings.process_timeout:g}s, tool output cap {settings.tool_result_max_length} chars")

    if not available:
        print(f"\n{bad} No agent providers available")
        return 1
    print(f"\n{ok} {available} provider(s) available")
    return 0


# ═══════════════════════════════════════════════════════════════
# entry point
# ═══════════════════════════════════════════════════════════════

def _create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Stream conversations with command-line AI agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  agentrelay chat                          # interactive session with Claude
  agentrelay chat -p codex "fix the tests" # one turn with Codex
  agentrelay models -p ollama              # list local Ollama models
  agentrelay doctor                        # check which providers can run
        """,
    )
    parser.add_argument("--version", action="version", version="agentrelay 0.1.0")
    parser.add_argument("--debug", action="store_true", help="Verbose logging (also AGENTRELAY_DEBUG=1)")
    parser.add_argument("--config", type=str, help="Path to config.json")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat = subparsers.add_parser("chat", help="Chat with an agent")
    chat.add_argument("prompt", nargs="*", help="Run a single turn with this prompt")
    chat.add_argument("-p", "--provider", default=None, help="claude, codex or ollama")
    chat.add_argument("-m", "--model", default=None, help="Model id")
    chat.add_argument("--cwd", default=None, help="Working directory for the agent")
    chat.add_argument(
        "--mode",
        choices=[m.value for m in ExecutionMode],
        default=None,
        help="Execution mode (default: patch)",
    )
    chat.add_argument("--no-sandbox", action="store_true", help="Run the agent without the sandbox")
    chat.add_argument("--show-stderr", action="store_true", help="Print agent diagnostics")

    models = subparsers.add_parser("models", help="List a provider's models")
    models.add_argument("-p", "--provider", default=None, help="claude, codex or ollama")

    subparsers.add_parser("doctor", help="Check which providers are available")
    return parser


def main(argv=None) -> int:
    parser = _create_parser()
    args = parser.parse_args(argv)

    settings = load_settings(args.config)
    _configure_logging(args.debug or settings.debug)

    if getattr(args, "provider", None) is None and args.command in ("chat", "models"):
        args.provider = settings.default_provider

    if args.command == "chat":
        return cmd_chat(args, settings)
    if args.command == "models":
        return cmd_models(args, settings)
    if args.command == "doctor":
        return cmd_doctor(args, settings)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main() or 0)

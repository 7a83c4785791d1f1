"""
Command line entry point.

    live-engine voice [--config PATH] [--log-level LEVEL] [--no-mic]

Connects a voice session: microphone audio streams to the model, replies play
on the default output device, and typed lines are sent as text turns.
Ctrl-C (or EOF on stdin) disconnects.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from structlog import get_logger

from .config import load_config
from .core.errors import LiveEngineError
from .logging_config import configure_logging
from .providers.gemini_live import LiveSessionEngine
from .tools.base import ConfirmationProvider

logger = get_logger(__name__)


class ConsoleConfirmer(ConfirmationProvider):
    """Asks on the terminal; anything but y/yes declines."""

    async def confirm(self, description: str, *, tool_name: str = "") -> bool:
        prompt = f"\n[confirm {tool_name}] {description}\nProceed? [y/N] "
        answer = await asyncio.to_thread(input, prompt)
        return answer.strip().lower() in ("y", "yes")


def _print_event(event: Dict[str, Any]) -> None:
    etype = event.get("type")
    if etype == "Text":
        print(event["text"], end="", flush=True)
    elif etype == "TurnComplete":
        print()
        for source in event.get("sources") or []:
            print(f"  [{source.title}] {source.uri}")
    elif etype == "Error":
        print(f"\n! {event['message']}", file=sys.stderr)
    elif etype in ("Ready", "SessionRenewed", "Closed"):
        logger.info("Session event", **event)
    elif etype == "ToolCall":
        call = event["tool_call"]
        logger.info("Tool call", tool=call["name"], status=call["status"])


async def _read_lines(engine: LiveSessionEngine) -> None:
    while True:
        line = await asyncio.to_thread(sys.stdin.readline)
        if not line:
            return
        text = line.strip()
        if text and not await engine.send_text(text):
            print("! session not ready; message dropped", file=sys.stderr)


async def run_voice(config_path: Optional[str], use_mic: bool) -> int:
    config = load_config(config_path)
    engine = LiveSessionEngine(config, on_event=_print_event, confirmer=ConsoleConfirmer())
    try:
        await engine.connect()
    except (LiveEngineError, ValueError) as exc:
        logger.error("Could not start live session", error=str(exc))
        await engine.disconnect()
        return 1
    try:
        if use_mic:
            await engine.start_microphone()
        await _read_lines(engine)
    finally:
        await engine.disconnect()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="live-engine",
        description="Realtime duplex voice session with the Gemini Live API",
    )
    parser.add_argument("--config", default=None, help="YAML config (default: config/live_engine.yaml)")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)
    voice = sub.add_parser("voice", help="Start a voice session")
    voice.add_argument("--no-mic", action="store_true", help="Text input only; do not open the microphone")
    return parser


def main(argv: Optional[list] = None) -> int:
    env_path = Path.cwd() / ".env"
    if env_path.exists():
        load_dotenv(env_path)

    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)

    if args.command == "voice":
        try:
            return asyncio.run(run_voice(args.config, use_mic=not args.no_mic))
        except KeyboardInterrupt:
            return 130
    return 2


__all__ = ["ConsoleConfirmer", "build_parser", "main", "run_voice"]

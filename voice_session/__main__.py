"""
Run one voice session from the command line.

Usage:
    python -m voice_session --client-id demo
    python -m voice_session --client-id demo --kind ecos_simulation --scenario-id 12
    python -m voice_session --client-id demo --text   # typed turns via TEXT_CHAT_URL

Speaks through the default input/output devices until interrupted (or for
--duration seconds). Transcript lines are printed as they are admitted.
"""
import argparse
import asyncio
import sys
from typing import List, Optional

from logging_setup import setup_logging
from .config import VoiceSessionConfig, load_env_files
from .credentials import SessionContext, SessionKind
from .errors import VoiceSessionError, user_message
from .session import VoiceSession
from .transcript import TranscriptEntry


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="voice_session", description="Realtime voice session client")
    parser.add_argument("--client-id", required=True, help="Client identifier sent to the token server")
    parser.add_argument("--scenario-id", default=None, help="Simulation scenario identifier")
    parser.add_argument(
        "--kind",
        choices=[k.value for k in SessionKind],
        default=SessionKind.CHAT.value,
        help="Session kind",
    )
    parser.add_argument("--duration", type=float, default=None, help="Stop after this many seconds")
    parser.add_argument("--text", action="store_true", help="Type turns instead of speaking")
    parser.add_argument("--log-level", default="INFO")
    return parser


def context_from_args(args: argparse.Namespace) -> SessionContext:
    return SessionContext(
        client_id=args.client_id,
        scenario_id=args.scenario_id,
        session_kind=SessionKind(args.kind),
    )


def _print_entry(entry: TranscriptEntry) -> None:
    print(f"[{entry.speaker.value}] {entry.text}", flush=True)


async def _run_voice(session: VoiceSession, duration: Optional[float]) -> int:
    try:
        await session.start()
    except VoiceSessionError as e:
        print(user_message(e), file=sys.stderr)
        await session.stop()
        return 1

    try:
        if duration is not None:
            await asyncio.sleep(duration)
        else:
            await asyncio.Event().wait()
    finally:
        await session.stop()
    return 0


async def _run_text(session: VoiceSession) -> int:
    loop = asyncio.get_running_loop()
    while True:
        line = await loop.run_in_executor(None, sys.stdin.readline)
        if not line:
            return 0
        try:
            await session.send_text(line)
        except VoiceSessionError as e:
            print(user_message(e), file=sys.stderr)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level, use_json=True)
    load_env_files()

    config = VoiceSessionConfig.from_env()
    session = VoiceSession(context_from_args(args), config=config, on_transcript=_print_entry)

    if args.text:
        return asyncio.run(_run_text(session))
    return asyncio.run(_run_voice(session, args.duration))


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Voice Link terminal client.

Talk to the live model from a terminal: mic in, speech out, transcripts printed
as they arrive. Ctrl-C ends the session.
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

from event_bus import EventBus
from gemini_live import is_available
from link_settings import (
    CONFIG_FILE, ConversationMode, VoiceLinkSettings, VoiceName, load_config, save_config,
)
from voice_link import VoiceLinkSession

log = logging.getLogger("voice_link_cli")


def print_transcription(text, role):
    label = "You" if role == "user" else "AI"
    print(f"\r{label}: {text}", end="", flush=True)


def print_turn(user_text, assistant_text):
    print("", flush=True)
    if user_text:
        print(f"  > {user_text}", flush=True)
    if assistant_text:
        print(f"  < {assistant_text}", flush=True)


def print_log(message, level="info"):
    print(f"[{level}] {message}", flush=True)


async def run(settings: VoiceLinkSettings, session_dir=None) -> int:
    """Run one session until Ctrl-C, SIGTERM, or the server ends it."""
    finished = asyncio.Event()

    bus = None
    if session_dir:
        sid = time.strftime("%Y%m%d_%H%M%S")
        bus = EventBus(Path(session_dir).expanduser() / sid, sid)
        bus.open()
        log.info("Logging session events to %s", bus.path)

    def on_state_change(active):
        if not active:
            finished.set()

    session = VoiceLinkSession(
        on_transcription=print_transcription,
        on_turn_complete=print_turn,
        on_log=print_log,
        on_state_change=on_state_change,
        bus=bus,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, finished.set)

    try:
        await session.start(settings)
        if not session.is_active:
            return 1
        print(f"Voice link open ({settings.voice.value}, {settings.mode.value}). Ctrl-C to stop.",
              flush=True)
        await finished.wait()
        return 0
    finally:
        print("\nShutting down...", flush=True)
        await session.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        if bus:
            bus.close()


def main():
    parser = argparse.ArgumentParser(description="Realtime voice link to the live model")
    parser.add_argument("--voice", choices=[v.value for v in VoiceName], help="Prebuilt voice")
    parser.add_argument("--mode", choices=[m.value for m in ConversationMode], help="Conversation mode")
    parser.add_argument("--save", action="store_true", help="Remember --voice/--mode for next time")
    parser.add_argument("--config", type=Path, default=CONFIG_FILE, help=f"Config file (default: {CONFIG_FILE})")
    parser.add_argument("--session-dir", help="Directory for per-session JSONL event logs")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args()

    config = load_config(args.config)
    if args.voice:
        config["voice"] = args.voice
    if args.mode:
        config["mode"] = args.mode

    logging.basicConfig(
        level=logging.DEBUG if (args.debug or config.get("debug_mode")) else logging.INFO,
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.save:
        save_config(config, args.config)

    if not is_available():
        print("No Gemini API key found. Set GEMINI_API_KEY or write ~/.config/gemini/api_key",
              file=sys.stderr, flush=True)
        sys.exit(1)

    settings = VoiceLinkSettings.from_dict(config)
    sys.exit(asyncio.run(run(settings, args.session_dir)))


if __name__ == '__main__':
    main()

#!/usr/bin/env python3
"""
Gemini Live API connection for the voice link.
Opens the BidiGenerateContent WebSocket, sends the session setup, streams
realtime mic input and yields parsed server messages.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from urllib.parse import quote

import websockets
import websockets.exceptions

from capture_pipeline import SendError
from link_settings import ConversationMode, VoiceLinkSettings

logger = logging.getLogger(__name__)

# Gemini Live API endpoint and model
LIVE_URL = ("wss://generativelanguage.googleapis.com/ws/"
            "google.ai.generativelanguage.v1beta.GenerativeService.BidiGenerateContent")
LIVE_MODEL = "models/gemini-2.5-flash-native-audio-preview-12-2025"

OPEN_TIMEOUT = 10.0    # seconds for the WebSocket handshake
SETUP_TIMEOUT = 10.0   # seconds to wait for setupComplete

DEFAULT_TEMPERATURE = 0.7
TRANSLATOR_TEMPERATURE = 0.1
TRANSLATOR_THINKING_BUDGET = 4096

CORE_INSTRUCTIONS = """You are Refuge AI Help, a humanitarian voice assistant connected to live news and humanitarian resources.
You ONLY state verified, confirmed information, never rumors or unverified claims.
If something is not confirmed by reputable sources, say that it is unverified.
Be concise, professional, and empathetic. Always prioritize human safety."""

MODE_INSTRUCTIONS = {
    ConversationMode.STANDARD: "",
    ConversationMode.TRANSLATOR: (
        "\nMODE: TRANSLATOR. Focus exclusively on deep-reasoning, high-accuracy translation "
        "between languages. Maintain the nuance and sentiment perfectly."
    ),
    ConversationMode.CRISIS_SUPPORT: (
        "\nMODE: CRISIS SUPPORT. Be deeply empathetic, slow, clear, and prioritize safety protocols."
    ),
}

# API key locations, checked in order after the environment
API_KEY_ENV_VARS = ("GEMINI_API_KEY", "GOOGLE_API_KEY", "API_KEY")
API_KEY_FILES = (
    Path.home() / ".config" / "gemini" / "api_key",
)


def build_setup(settings: VoiceLinkSettings, model=LIVE_MODEL,
                instructions=CORE_INSTRUCTIONS) -> dict:
    """Build the `setup` payload for a session with the given voice and mode.

    Translator mode trades latency for accuracy: near-deterministic sampling
    plus a thinking budget. Crisis support only changes the instructions.
    """
    generation_config = {
        "responseModalities": ["AUDIO"],
        "temperature": DEFAULT_TEMPERATURE,
        "speechConfig": {
            "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": settings.voice.value}}
        },
    }
    if settings.mode is ConversationMode.TRANSLATOR:
        generation_config["temperature"] = TRANSLATOR_TEMPERATURE
        generation_config["thinkingConfig"] = {"thinkingBudget": TRANSLATOR_THINKING_BUDGET}

    return {
        "model": model,
        "generationConfig": generation_config,
        "systemInstruction": {
            "parts": [{"text": instructions + MODE_INSTRUCTIONS[settings.mode]}]
        },
        "inputAudioTranscription": {},
        "outputAudioTranscription": {},
    }


def parse_server_message(raw):
    """Decode one server frame (text or binary JSON). Returns None if unreadable."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode('utf-8')
        except UnicodeDecodeError as e:
            logger.debug("Dropping non-UTF-8 server frame: %s", e)
            return None
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.debug("Dropping non-JSON server frame: %s", e)
        return None
    return message if isinstance(message, dict) else None


class LiveConnection:
    """An open Gemini Live session.

    Iterating yields server messages as dicts. Iteration ends when the server
    closes normally and raises ConnectionError when the link drops.
    """

    def __init__(self, ws):
        self._ws = ws
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_realtime_input(self, blob: dict):
        """Send one audio blob ({data, mimeType}).

        Raises:
            SendError: the frame could not be sent
        """
        if self._closed:
            raise SendError("Session is closed")
        try:
            await self._ws.send(json.dumps({"realtimeInput": {"audio": blob}}))
        except websockets.exceptions.ConnectionClosed as e:
            raise SendError(f"Connection closed: {e}") from e

    async def __aiter__(self):
        try:
            async for raw in self._ws:
                message = parse_server_message(raw)
                if message is not None:
                    yield message
        except websockets.exceptions.ConnectionClosedOK:
            return
        except websockets.exceptions.ConnectionClosedError as e:
            raise ConnectionError(f"Live session dropped: {e}") from e

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self._ws.close()
        logger.info("Gemini Live: Disconnected")


async def connect(api_key: str, setup: dict, url=LIVE_URL,
                  open_timeout=OPEN_TIMEOUT, setup_timeout=SETUP_TIMEOUT) -> LiveConnection:
    """Open a live session and wait for the server to confirm the setup.

    Raises:
        ConnectionError: handshake failed, timed out, or setup was rejected
    """
    try:
        ws = await websockets.connect(
            f"{url}?key={quote(api_key)}",
            open_timeout=open_timeout,
            ping_interval=20,
            max_size=None,
        )
    except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
        raise ConnectionError(f"Could not reach Gemini Live: {e}") from e

    try:
        await ws.send(json.dumps({"setup": setup}))
        reply = parse_server_message(await asyncio.wait_for(ws.recv(), setup_timeout))
    except (asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
        await ws.close()
        raise ConnectionError(f"Session setup failed: {e}") from e
    except asyncio.CancelledError:
        await ws.close()
        raise

    if not reply or "setupComplete" not in reply:
        await ws.close()
        raise ConnectionError(f"Unexpected setup reply: {reply!r}")

    logger.info("Gemini Live: Connected (%s)", setup.get("model", LIVE_MODEL))
    return LiveConnection(ws)


def get_api_key():
    """Get the Gemini API key from the environment or a key file."""
    for name in API_KEY_ENV_VARS:
        key = os.environ.get(name)
        if key:
            return key
    for path in API_KEY_FILES:
        if path.exists():
            return path.read_text().strip()
    return None


def is_available():
    """Check if a live session can be opened."""
    return get_api_key() is not None

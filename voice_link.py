#!/usr/bin/env python3
"""
Realtime voice link session: mic -> Gemini Live -> speaker, with live transcripts.

VoiceLinkSession is the only owner of the network session and of the audio
resources (contexts, mic stream, frame processor). Lifecycle:

    IDLE -> STARTING -> ACTIVE -> STOPPING -> IDLE

start() always finishes tearing down the previous session before acquiring
anything new. stop() is guarded so overlapping calls (caller, server close,
a start() cleaning up) collapse into one teardown. A start() that is still
waiting on the mic or the network when stop() runs notices on resume and
releases whatever it just got.
"""

import asyncio
import logging
from contextlib import contextmanager
from enum import Enum

from audio_io import AudioBackend, OUTPUT_SAMPLE_RATE
from capture_pipeline import CapturePipeline
from event_bus import EventType
from gemini_live import build_setup, connect, get_api_key
from link_settings import VoiceLinkSettings
from pcm_codec import DecodeError, decode_binary, pcm_to_float
from playback_scheduler import PlaybackScheduler
from turn_aggregator import TurnAggregator

logger = logging.getLogger(__name__)

# Model audio is 24kHz mono PCM16 by protocol contract
OUTPUT_CHANNELS = 1

_LOG_LEVELS = {"info": logging.INFO, "success": logging.INFO, "error": logging.ERROR}


class LinkState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"


class TeardownGuard:
    """Scoped re-entrancy guard for stop().

    `with guard.hold() as acquired:` yields False when a teardown is already
    running; the guard is released on every exit path.
    """

    def __init__(self):
        self._held = False
        self._released = asyncio.Event()
        self._released.set()

    @property
    def held(self) -> bool:
        return self._held

    @contextmanager
    def hold(self):
        if self._held:
            yield False
            return
        self._held = True
        self._released.clear()
        try:
            yield True
        finally:
            self._held = False
            self._released.set()

    async def wait_released(self):
        while self._held:
            await self._released.wait()


class AudioResourceBundle:
    """Everything audio one session owns. Released as a unit."""

    def __init__(self):
        self.input = None
        self.output = None
        self.stream = None
        self.capture = None

    @property
    def empty(self) -> bool:
        return self.input is None and self.output is None and self.stream is None and self.capture is None

    async def release(self):
        """Detach capture, stop the mic, close both contexts. Each step isolated."""
        capture, self.capture = self.capture, None
        stream, self.stream = self.stream, None
        if capture is not None:
            if stream is capture.stream:
                stream = None  # detach() stops it
            try:
                await capture.detach()
            except Exception as e:
                logger.debug("Failed to detach capture: %s", e)

        if stream is not None:
            try:
                stream.stop()
            except Exception as e:
                logger.debug("Failed to stop microphone: %s", e)

        for name in ("input", "output"):
            context = getattr(self, name)
            setattr(self, name, None)
            if context is None or getattr(context, "state", None) == "closed":
                continue
            try:
                await context.close()
            except Exception as e:
                logger.debug("Failed to close %s context: %s", name, e)


class VoiceLinkSession:
    """Realtime voice session with the live model.

    Callbacks (all optional, all called on the event loop):
        on_transcription(text, role)   running transcript, role "user"/"assistant"
        on_turn_complete(user, assistant)
        on_log(message, level)         level "info" / "error" / "success"
        on_state_change(active)        once per transition into/out of ACTIVE

    Args:
        api_key: Gemini API key (default: get_api_key())
        connector: async callable(setup) -> connection, replaces gemini_live.connect
        audio_backend: opens contexts and the mic (default: PyAudio AudioBackend)
        bus: optional EventBus receiving session events
    """

    def __init__(self, on_transcription=None, on_turn_complete=None, on_log=None,
                 on_state_change=None, api_key=None, connector=None,
                 audio_backend=None, bus=None):
        self.on_transcription = on_transcription or (lambda text, role: None)
        self.on_turn_complete = on_turn_complete or (lambda user_text, assistant_text: None)
        self.on_log = on_log or (lambda message, level="info": None)
        self.on_state_change = on_state_change or (lambda active: None)

        self._api_key = api_key
        self._connector = connector
        self._backend = audio_backend or AudioBackend()
        self._bus = bus

        self._state = LinkState.IDLE
        self._settings = None
        self._connection = None
        self._bundle = None
        self._scheduler = None
        self._receiver = None
        self._turns = TurnAggregator()
        self._guard = TeardownGuard()
        # on_state_change(False) is only owed after an on_state_change(True)
        self._announced = False

        # Bumped by every stop() and start(); a start() whose epoch is stale
        # has been superseded and must release what it acquired.
        self._epoch = 0

    # ── State ──────────────────────────────────────────────────────

    @property
    def state(self) -> LinkState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is LinkState.ACTIVE

    @property
    def settings(self):
        return self._settings

    @property
    def scheduler(self):
        return self._scheduler

    @property
    def turns(self) -> TurnAggregator:
        return self._turns

    def _set_state(self, state: LinkState):
        if state is self._state:
            return
        logger.debug("Voice link: %s -> %s", self._state.value, state.value)
        self._state = state
        self._emit(EventType.STATE, state=state.value)

    def _superseded(self, epoch) -> bool:
        return epoch != self._epoch

    def _can_forward(self) -> bool:
        return self._state is LinkState.ACTIVE and not self._guard.held

    # ── Caller notifications ───────────────────────────────────────

    def _notify(self, callback, *args):
        try:
            callback(*args)
        except Exception as e:
            logger.error("Voice link callback %s failed: %s",
                         getattr(callback, "__name__", callback), e)

    def _log(self, message, level="info"):
        logger.log(_LOG_LEVELS.get(level, logging.INFO), "Voice link: %s", message)
        self._notify(self.on_log, message, level)
        self._emit(EventType.LOG, message=message, level=level)

    def _emit(self, event_type, ephemeral=False, **payload):
        if self._bus is None:
            return
        if ephemeral:
            self._bus.emit_ephemeral(event_type, **payload)
        else:
            self._bus.emit(event_type, **payload)

    # ── Start ──────────────────────────────────────────────────────

    def _resolve_connector(self):
        if self._connector is not None:
            return self._connector
        api_key = self._api_key or get_api_key()
        if not api_key:
            raise ConnectionError("API key missing")
        return lambda setup: connect(api_key, setup)

    async def start(self, settings):
        """Open a voice link. Failures are reported through on_log, not raised.

        Raises:
            ValueError: `settings` names an unknown voice or mode
        """
        if not isinstance(settings, VoiceLinkSettings):
            settings = VoiceLinkSettings.from_dict(settings)

        await self._guard.wait_released()
        await self.stop()

        self._epoch += 1
        epoch = self._epoch
        self._settings = settings
        self._set_state(LinkState.STARTING)
        bundle = AudioResourceBundle()
        self._bundle = bundle

        try:
            open_session = self._resolve_connector()

            bundle.input = self._backend.open_input_context()
            bundle.output = self._backend.open_output_context()
            bundle.capture = CapturePipeline(self._backend, bundle.input, self._can_forward)
            bundle.stream = await bundle.capture.acquire()
            if self._superseded(epoch):
                await bundle.release()
                return

            connection = await open_session(build_setup(settings))
            if self._superseded(epoch):
                await self._close_connection(connection)
                await bundle.release()
                return

            self._connection = connection
            await self._activate(epoch, bundle, connection, settings)
        except asyncio.CancelledError:
            if self._superseded(epoch):
                await bundle.release()
            else:
                await self.stop()
            raise
        except Exception as e:
            if self._superseded(epoch):
                await bundle.release()
                return
            self._log(f"Uplink failed: {e}", "error")
            self._emit(EventType.ERROR, stage="start", error=str(e))
            await self.stop()

    async def _activate(self, epoch, bundle, connection, settings):
        self._scheduler = PlaybackScheduler(bundle.output)
        self._turns.reset()

        await bundle.capture.attach(connection)
        if self._superseded(epoch):
            return
        self._set_state(LinkState.ACTIVE)

        self._receiver = asyncio.create_task(self._receive(connection, epoch))
        self._emit(EventType.SESSION_START, voice=settings.voice.value, mode=settings.mode.value)
        self._announced = True
        self._notify(self.on_state_change, True)
        self._log(f"Voice Link established: {settings.voice.value}", "success")

    async def _receive(self, connection, epoch):
        """Feed server messages to dispatch() until the link ends."""
        try:
            async for message in connection:
                if self._superseded(epoch):
                    return
                self.dispatch(message)
        except Exception as e:
            if self._superseded(epoch):
                return
            logger.error("Live session error: %s", e)
            self._log("Session sync error.", "error")
            self._emit(EventType.ERROR, stage="receive", error=str(e))
        else:
            if self._superseded(epoch):
                return
            logger.info("Voice link: closed by server")
        await self.stop()

    # ── Server messages ────────────────────────────────────────────

    def dispatch(self, message: dict):
        """Handle one server message. Ignored unless ACTIVE and not stopping."""
        if not self._can_forward():
            return

        go_away = message.get("goAway")
        if go_away is not None:
            self._log(f"Server closing link (time left: {go_away.get('timeLeft', 'unknown')})")

        content = message.get("serverContent")
        if not content:
            return

        text = (content.get("inputTranscription") or {}).get("text")
        if text:
            total = self._turns.append_user(text)
            self._notify(self.on_transcription, total, "user")
            self._emit(EventType.TRANSCRIPTION, ephemeral=True, role="user", text=total)

        text = (content.get("outputTranscription") or {}).get("text")
        if text:
            total = self._turns.append_assistant(text)
            self._notify(self.on_transcription, total, "assistant")
            self._emit(EventType.TRANSCRIPTION, ephemeral=True, role="assistant", text=total)

        for part in (content.get("modelTurn") or {}).get("parts") or []:
            data = (part.get("inlineData") or {}).get("data")
            if data:
                self._play_audio(data)

        if content.get("turnComplete"):
            record = self._turns.complete_turn()
            self._notify(self.on_turn_complete, record.user_text, record.assistant_text)
            self._emit(EventType.TURN_COMPLETE, user_text=record.user_text,
                       assistant_text=record.assistant_text)

        if content.get("interrupted"):
            if self._scheduler is not None:
                self._scheduler.interrupt()
            self._emit(EventType.INTERRUPTED)

    def _play_audio(self, data: str):
        try:
            buffer = pcm_to_float(decode_binary(data), OUTPUT_SAMPLE_RATE, OUTPUT_CHANNELS)
        except DecodeError as e:
            logger.debug("Dropping undecodable audio chunk: %s", e)
            return
        if self._scheduler is None:
            return
        try:
            self._scheduler.schedule(buffer)
        except Exception as e:
            logger.debug("Audio playback error: %s", e)

    # ── Stop ───────────────────────────────────────────────────────

    async def stop(self):
        """Tear down the session. Concurrent calls collapse into one teardown."""
        with self._guard.hold() as acquired:
            if not acquired:
                return
            self._epoch += 1
            try:
                await self._teardown()
            except Exception as e:
                logger.error("Error during voice link disconnect: %s", e)

    async def _close_connection(self, connection):
        try:
            await connection.close()
        except Exception as e:
            logger.debug("Failed to close session gracefully: %s", e)

    async def _teardown(self):
        previous = self._state
        if previous is LinkState.IDLE and self._bundle is None and self._connection is None:
            return
        self._set_state(LinkState.STOPPING)

        receiver, self._receiver = self._receiver, None
        if receiver is not None and receiver is not asyncio.current_task() and not receiver.done():
            receiver.cancel()
            try:
                await receiver
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug("Receiver ended with error: %s", e)

        # 1. Network session
        connection, self._connection = self._connection, None
        if connection is not None:
            await self._close_connection(connection)

        # 2. Audio resources
        bundle, self._bundle = self._bundle, None
        if bundle is not None:
            await bundle.release()

        # 3. Scheduled playback
        scheduler, self._scheduler = self._scheduler, None
        if scheduler is not None:
            scheduler.interrupt()

        # 4. Transcripts
        self._turns.reset()

        self._set_state(LinkState.IDLE)
        announced, self._announced = self._announced, False
        if announced:
            self._emit(EventType.SESSION_END)
            self._notify(self.on_state_change, False)
        self._log("Voice Link disconnected.")

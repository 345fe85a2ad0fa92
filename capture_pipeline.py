"""Microphone capture -> realtime input frames for the live session.

Mic frames arrive on the PortAudio thread, hop onto the event loop, get
converted to PCM16 + base64, and go into a bounded queue. A single writer task
drains the queue and sends each frame to the session, so send order matches
capture order and a slow link shows up as dropped frames instead of an
unbounded backlog.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

import numpy as np

from audio_io import FRAME_SIZE
from pcm_codec import encode_binary, float_to_pcm16

logger = logging.getLogger(__name__)

INPUT_MIME_TYPE = "audio/pcm;rate=16000"
SEND_QUEUE_SIZE = 32


class SendError(ConnectionError):
    """A single realtime input frame failed to transmit."""


@dataclass
class RealtimeFrame:
    """One encoded mic frame ready for the wire."""
    data: str
    mime_type: str = INPUT_MIME_TYPE

    def to_blob(self) -> dict:
        return {"data": self.data, "mimeType": self.mime_type}


class FrameProcessor:
    """Hands fixed-size float32 mic frames from the device thread to the loop."""

    def __init__(self, loop, on_frame: Callable[[np.ndarray], None]):
        self._loop = loop
        self._on_frame = on_frame
        self._stream = None

    def connect(self, stream):
        self._stream = stream
        stream.on_frame = self._from_device

    def _from_device(self, data: bytes):
        samples = np.frombuffer(data, dtype=np.float32).copy()
        try:
            self._loop.call_soon_threadsafe(self._deliver, samples)
        except RuntimeError:
            pass  # loop closed during shutdown

    def _deliver(self, samples):
        handler = self._on_frame
        if handler is not None:
            handler(samples)

    def disconnect(self):
        stream = self._stream
        self._stream = None
        self._on_frame = None
        if stream is not None and stream.on_frame == self._from_device:
            stream.on_frame = None


class CapturePipeline:
    """Owns the mic stream and frame processor for one session.

    Args:
        backend: AudioBackend used to open the microphone
        context: InputContext the microphone is opened on
        is_open: returns True while frames may be forwarded
        queue_size: max frames waiting for the writer
        frame_size: samples per frame
    """

    def __init__(self, backend, context, is_open: Callable[[], bool],
                 queue_size=SEND_QUEUE_SIZE, frame_size=FRAME_SIZE):
        self._backend = backend
        self._context = context
        self._is_open = is_open
        self._queue_size = queue_size
        self.frame_size = frame_size

        self._stream = None
        self._session = None
        self._processor = None
        self._queue = None
        self._writer = None

        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def stream(self):
        return self._stream

    @property
    def attached(self) -> bool:
        return self._processor is not None

    async def acquire(self):
        """Open the microphone if it is not open yet.

        Raises:
            PermissionError: microphone access denied
            DeviceError: no usable microphone
        """
        if self._stream is None:
            self._stream = await self._backend.open_microphone(self._context, self.frame_size)
        return self._stream

    async def attach(self, session):
        """Start forwarding mic frames to `session`."""
        if self.attached:
            return
        await self.acquire()
        self._session = session
        self._queue = asyncio.Queue(maxsize=self._queue_size)
        self._processor = FrameProcessor(asyncio.get_running_loop(), self._on_frame)
        self._processor.connect(self._stream)
        self._writer = asyncio.create_task(self._drain(self._queue, session))
        logger.info("Audio capture started (%d-sample frames)", self.frame_size)

    def _on_frame(self, samples):
        if self._queue is None or not self._is_open():
            return
        frame = RealtimeFrame(data=encode_binary(float_to_pcm16(samples)))
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            self.frames_dropped += 1
            logger.debug("Send queue full, dropped frame (%d dropped)", self.frames_dropped)

    async def _drain(self, queue, session):
        while True:
            frame = await queue.get()
            if not self._is_open():
                self.frames_dropped += 1
                continue
            try:
                await session.send_realtime_input(frame.to_blob())
            except SendError as e:
                self.frames_dropped += 1
                logger.debug("Failed to send realtime input: %s", e)
            except Exception as e:
                self.frames_dropped += 1
                logger.debug("Realtime input send error: %s", e)
            else:
                self.frames_sent += 1
                if self.frames_sent % 100 == 0:
                    logger.debug("Sent %d audio frames", self.frames_sent)

    async def detach(self):
        """Stop forwarding and release the microphone. Safe to call twice."""
        if self._processor is not None:
            self._processor.disconnect()
            self._processor = None

        writer = self._writer
        self._writer = None
        if writer is not None and not writer.done():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

        if self._queue is not None:
            while not self._queue.empty():
                self._queue.get_nowait()
            self._queue = None
        self._session = None

        stream = self._stream
        self._stream = None
        if stream is not None:
            try:
                stream.stop()
            except Exception as e:
                logger.debug("Failed to stop microphone: %s", e)
            logger.info("Audio capture stopped (sent %d frames, dropped %d)",
                        self.frames_sent, self.frames_dropped)

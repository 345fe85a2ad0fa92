"""PyAudio device layer for the voice link.

Provides the device-side pieces of a session's audio resources:
- InputContext: PortAudio handle for 16kHz capture; opens MicrophoneStream
- MicrophoneStream: live mic input delivering fixed-size float32 frames
- OutputContext: 24kHz playback clock that mixes scheduled PlaybackSources
- PlaybackSource: one decoded segment queued to start at a context time
- AudioBackend: factory the session manager uses to open all of the above

PortAudio calls the stream callbacks on its own thread. Anything that touches
session state is handed back to the asyncio loop with call_soon_threadsafe;
the only state shared with the device thread is the output mixer's source
list, which sits behind a threading.Lock.
"""

import asyncio
import errno
import logging
from threading import Lock

import numpy as np

from pcm_codec import AudioBuffer

logger = logging.getLogger(__name__)

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
CHANNELS = 1
FRAME_SIZE = 4096          # samples per captured frame
OUTPUT_BLOCK_SIZE = 1024   # samples per playback callback

# PortAudio error codes (pa_errorCode) that mean "the OS refused us"
_PA_DEVICE_UNAVAILABLE = -9985
_PA_HOST_ERROR = -9999


class DeviceError(OSError):
    """Audio hardware missing, busy, or failed to open."""


def _translate_device_error(e: OSError, what: str) -> OSError:
    """Map a PyAudio OSError to PermissionError or DeviceError."""
    message = str(e).lower()
    code = e.errno if e.errno is not None else (e.args[0] if e.args else None)
    if code in (errno.EACCES, errno.EPERM) or "permission" in message or "denied" in message:
        return PermissionError(f"{what}: access denied ({e})")
    if code in (_PA_DEVICE_UNAVAILABLE, _PA_HOST_ERROR):
        return DeviceError(f"{what}: device unavailable ({e})")
    return DeviceError(f"{what}: {e}")


class MicrophoneStream:
    """Open microphone input. Frames go to `on_frame` while it is set."""

    def __init__(self, pa, pyaudio_mod, sample_rate=INPUT_SAMPLE_RATE, frame_size=FRAME_SIZE):
        self._pyaudio = pyaudio_mod
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.on_frame = None
        self._stopped = False
        self._stream = pa.open(
            format=pyaudio_mod.paFloat32,
            channels=CHANNELS,
            rate=sample_rate,
            input=True,
            frames_per_buffer=frame_size,
            stream_callback=self._callback,
        )

    def _callback(self, in_data, frame_count, time_info, status):
        handler = self.on_frame
        if handler is not None and in_data:
            try:
                handler(in_data)
            except Exception as e:
                logger.debug("Mic frame handler failed: %s", e)
        return (None, self._pyaudio.paContinue)

    @property
    def active(self) -> bool:
        return not self._stopped

    def stop(self):
        """Stop capture and release the hardware. Safe to call twice."""
        if self._stopped:
            return
        self._stopped = True
        self.on_frame = None
        try:
            self._stream.stop_stream()
        finally:
            self._stream.close()


class InputContext:
    """PortAudio handle used for capture."""

    def __init__(self, sample_rate=INPUT_SAMPLE_RATE):
        import pyaudio
        self._pyaudio = pyaudio
        self.sample_rate = sample_rate
        self.state = "running"
        self._pa = pyaudio.PyAudio()

    async def open_microphone(self, frame_size=FRAME_SIZE) -> MicrophoneStream:
        """Open the default input device without blocking the event loop.

        Raises:
            PermissionError: the OS refused access to the microphone
            DeviceError: no usable input device
        """
        loop = asyncio.get_running_loop()

        def _open():
            try:
                self._pa.get_default_input_device_info()
            except OSError as e:
                raise DeviceError(f"No microphone found: {e}") from e
            try:
                return MicrophoneStream(self._pa, self._pyaudio, self.sample_rate, frame_size)
            except OSError as e:
                raise _translate_device_error(e, "Microphone") from e

        return await loop.run_in_executor(None, _open)

    async def close(self):
        if self.state == "closed":
            return
        self.state = "closed"
        await asyncio.get_running_loop().run_in_executor(None, self._pa.terminate)


class PlaybackSource:
    """A decoded segment bound to an OutputContext."""

    def __init__(self, context: "OutputContext", buffer: AudioBuffer):
        self.context = context
        self.buffer = buffer
        self.samples = buffer.mixdown()
        self.start_time = None
        self.on_ended = None
        self._stopped = False

    @property
    def duration(self) -> float:
        return self.buffer.duration

    def start(self, when: float):
        self.start_time = when
        self.context._add_source(self, int(round(when * self.context.sample_rate)))

    def stop(self):
        self._stopped = True
        self.on_ended = None
        self.context._remove_source(self)

    def _ended(self):
        callback = self.on_ended
        if not self._stopped and callback is not None:
            callback(self)


class OutputContext:
    """24kHz mono playback with a sample-accurate clock.

    The clock (`current_time`) advances as PortAudio consumes output blocks.
    Sources are mixed into whichever blocks overlap their start frame.
    """

    def __init__(self, sample_rate=OUTPUT_SAMPLE_RATE, block_size=OUTPUT_BLOCK_SIZE):
        import pyaudio
        self._pyaudio = pyaudio
        self.sample_rate = sample_rate
        self.state = "running"
        self._loop = asyncio.get_running_loop()
        self._lock = Lock()
        self._playing = {}  # PlaybackSource -> start frame
        self._frames_rendered = 0
        self._pa = pyaudio.PyAudio()
        try:
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=sample_rate,
                output=True,
                frames_per_buffer=block_size,
                stream_callback=self._render,
            )
        except OSError as e:
            self._pa.terminate()
            raise _translate_device_error(e, "Speaker") from e

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    def create_source(self, buffer: AudioBuffer) -> PlaybackSource:
        return PlaybackSource(self, buffer)

    def _add_source(self, source: PlaybackSource, start_frame: int):
        with self._lock:
            self._playing[source] = start_frame

    def _remove_source(self, source: PlaybackSource):
        with self._lock:
            self._playing.pop(source, None)

    def _render(self, in_data, frame_count, time_info, status):
        """PortAudio callback: mix every source overlapping this block."""
        out = np.zeros(frame_count, dtype=np.float32)
        finished = []
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frame_count
            for source, start_frame in self._playing.items():
                if start_frame >= block_end:
                    continue
                src_offset = max(0, block_start - start_frame)
                dst_offset = max(0, start_frame - block_start)
                n = min(frame_count - dst_offset, len(source.samples) - src_offset)
                if n > 0:
                    out[dst_offset:dst_offset + n] += source.samples[src_offset:src_offset + n]
                if start_frame + len(source.samples) <= block_end:
                    finished.append(source)
            for source in finished:
                del self._playing[source]
            self._frames_rendered = block_end

        for source in finished:
            try:
                self._loop.call_soon_threadsafe(source._ended)
            except RuntimeError:
                pass  # loop already closed

        np.clip(out, -1.0, 1.0, out=out)
        return (out.tobytes(), self._pyaudio.paContinue)

    async def close(self):
        if self.state == "closed":
            return
        self.state = "closed"
        with self._lock:
            self._playing.clear()

        def _shutdown():
            try:
                self._stream.stop_stream()
                self._stream.close()
            finally:
                self._pa.terminate()

        await asyncio.get_running_loop().run_in_executor(None, _shutdown)


class AudioBackend:
    """Opens PyAudio contexts and the microphone for one session."""

    def open_input_context(self) -> InputContext:
        try:
            return InputContext(INPUT_SAMPLE_RATE)
        except OSError as e:
            raise _translate_device_error(e, "Audio input") from e

    def open_output_context(self) -> OutputContext:
        return OutputContext(OUTPUT_SAMPLE_RATE)

    async def open_microphone(self, context: InputContext, frame_size=FRAME_SIZE) -> MicrophoneStream:
        return await context.open_microphone(frame_size)

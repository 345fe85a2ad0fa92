"""PCM and transport codecs for the voice link.

Provides:
- encode_binary() / decode_binary(): base64 text <-> raw bytes
- pcm_to_float(): interleaved int16 little-endian PCM -> AudioBuffer of float32 channels
- float_to_pcm16(): mono float samples -> int16 little-endian PCM bytes
- AudioBuffer: decoded multi-channel audio with its declared sample rate

Sample rate and channel count are always declared by the caller; nothing here
inspects the audio to guess them.
"""

import base64
import binascii
from dataclasses import dataclass

import numpy as np

PCM16_SCALE = 32768.0
BYTES_PER_SAMPLE = 2


class DecodeError(ValueError):
    """Inbound audio payload could not be decoded."""


@dataclass
class AudioBuffer:
    """Decoded audio: one float32 row per channel, values in [-1, 1]."""
    channels: np.ndarray  # shape (channel_count, frame_count)
    sample_rate: int

    @property
    def channel_count(self) -> int:
        return self.channels.shape[0]

    @property
    def frame_count(self) -> int:
        return self.channels.shape[1]

    @property
    def duration(self) -> float:
        """Playback length in seconds."""
        return self.frame_count / float(self.sample_rate)

    def mixdown(self) -> np.ndarray:
        """Average all channels into one mono row."""
        if self.channel_count == 1:
            return self.channels[0]
        return self.channels.mean(axis=0).astype(np.float32)


def encode_binary(data: bytes) -> str:
    """Encode raw bytes as transport-safe base64 text."""
    return base64.b64encode(bytes(data)).decode('ascii')


def decode_binary(text: str) -> bytes:
    """Decode base64 text produced by encode_binary().

    Raises:
        DecodeError: if the text is not valid base64
    """
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecodeError(f"Malformed base64 payload: {e}") from e


def pcm_to_float(data: bytes, sample_rate: int, channel_count: int) -> AudioBuffer:
    """Convert interleaved signed 16-bit little-endian PCM to float channels.

    Each sample is divided by 32768. A trailing partial frame is dropped.

    Args:
        data: Raw PCM bytes
        sample_rate: Declared sample rate of the data (Hz)
        channel_count: Declared number of interleaved channels

    Returns:
        AudioBuffer with channels shaped (channel_count, frame_count)

    Raises:
        DecodeError: if the byte count is odd or channel_count is not positive
    """
    if channel_count < 1:
        raise DecodeError(f"Invalid channel count: {channel_count}")
    if len(data) % BYTES_PER_SAMPLE:
        raise DecodeError(f"PCM16 payload has odd length {len(data)}")

    samples = np.frombuffer(data, dtype='<i2')
    frame_count = len(samples) // channel_count
    samples = samples[:frame_count * channel_count]

    # (frames, channels) -> (channels, frames)
    channels = samples.reshape(frame_count, channel_count).T
    channels = channels.astype(np.float32) / PCM16_SCALE
    return AudioBuffer(channels=np.ascontiguousarray(channels), sample_rate=sample_rate)


def float_to_pcm16(samples) -> bytes:
    """Convert mono float samples to signed 16-bit little-endian PCM.

    Scales by 32768 and truncates toward zero; +1.0 clamps to 32767.
    """
    scaled = np.asarray(samples, dtype=np.float64) * PCM16_SCALE
    scaled = np.clip(np.trunc(scaled), -32768, 32767)
    return scaled.astype('<i2').tobytes()

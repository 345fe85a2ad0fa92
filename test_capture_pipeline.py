#!/usr/bin/env python3
"""Tests for CapturePipeline -- mic frames to realtime input.

Uses a fake microphone stream (frames pushed by the test) and a fake session
that records what it was sent. No audio hardware is touched.

Run: python3 test_capture_pipeline.py
"""

import asyncio
import struct
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    """Decorator to register and run a test."""
    def decorator(fn):
        fn._test_name = name
        return fn
    return decorator


test.__test__ = False  # not a pytest test itself


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        if asyncio.iscoroutinefunction(fn):
            asyncio.run(fn())
        else:
            fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} -- {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} -- {type(e).__name__}: {e}")


# ── Fakes ─────────────────────────────────────────────────────────

class FakeStream:
    def __init__(self):
        self.on_frame = None
        self.stop_calls = 0

    def push(self, samples):
        """Simulate the device thread delivering one frame."""
        if self.on_frame is not None:
            self.on_frame(np.asarray(samples, dtype=np.float32).tobytes())

    def stop(self):
        self.stop_calls += 1


class FakeBackend:
    def __init__(self, stream=None, error=None):
        self.stream = stream or FakeStream()
        self.error = error
        self.open_calls = 0

    async def open_microphone(self, context, frame_size):
        self.open_calls += 1
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return self.stream


class FakeSession:
    def __init__(self, fail_first=0, error=None):
        self.sent = []
        self.fail_first = fail_first
        self.error = error

    async def send_realtime_input(self, blob):
        from capture_pipeline import SendError
        if self.fail_first:
            self.fail_first -= 1
            raise self.error or SendError("socket hiccup")
        self.sent.append(blob)


async def settle(rounds=10):
    for _ in range(rounds):
        await asyncio.sleep(0)


def frame(value, size=4096):
    return np.full(size, value, dtype=np.float32)


def decode_samples(blob):
    from pcm_codec import decode_binary
    raw = decode_binary(blob["data"])
    return struct.unpack(f'<{len(raw) // 2}h', raw)


# ══════════════════════════════════════════════════════════════════
# Test Group 1: Forwarding
# ══════════════════════════════════════════════════════════════════

@test("Frames are encoded as base64 PCM16 with the 16kHz mime type")
async def test_frame_encoding():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend()
    session = FakeSession()
    pipe = CapturePipeline(backend, None, lambda: True)
    await pipe.attach(session)

    backend.stream.push(frame(0.5))
    await settle()

    assert len(session.sent) == 1
    blob = session.sent[0]
    assert blob["mimeType"] == "audio/pcm;rate=16000"
    samples = decode_samples(blob)
    assert len(samples) == 4096
    assert set(samples) == {16384}
    await pipe.detach()


@test("Frames are sent in capture order")
async def test_frame_order():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend()
    session = FakeSession()
    pipe = CapturePipeline(backend, None, lambda: True)
    await pipe.attach(session)

    for i in range(5):
        backend.stream.push(frame(i / 10, size=16))
        await settle()

    firsts = [decode_samples(b)[0] for b in session.sent]
    assert firsts == [int(i / 10 * 32768) for i in range(5)], firsts
    assert pipe.frames_sent == 5
    await pipe.detach()


@test("Nothing is forwarded while the session is not open")
async def test_gate_closed():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend()
    session = FakeSession()
    is_open = {"value": False}
    pipe = CapturePipeline(backend, None, lambda: is_open["value"])
    await pipe.attach(session)

    backend.stream.push(frame(0.1))
    await settle()
    assert session.sent == []

    is_open["value"] = True
    backend.stream.push(frame(0.1))
    await settle()
    assert len(session.sent) == 1
    await pipe.detach()


@test("A failed send drops that frame and capture continues")
async def test_send_error_dropped():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend()
    session = FakeSession(fail_first=1)
    pipe = CapturePipeline(backend, None, lambda: True)
    await pipe.attach(session)

    backend.stream.push(frame(0.1))
    await settle()
    backend.stream.push(frame(0.2))
    await settle()

    assert len(session.sent) == 1
    assert pipe.frames_dropped == 1
    assert pipe.frames_sent == 1
    await pipe.detach()


@test("An unexpected send exception drops one frame and the writer keeps going")
async def test_unexpected_send_error():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend()
    session = FakeSession(fail_first=1, error=RuntimeError("transient socket hiccup"))
    pipe = CapturePipeline(backend, None, lambda: True)
    await pipe.attach(session)
    writer = pipe._writer

    for value in (0.1, 0.2, 0.3):
        backend.stream.push(frame(value, size=16))
        await settle()

    assert not writer.done(), "writer task must survive a failed send"
    assert len(session.sent) == 2
    assert pipe.frames_dropped == 1
    assert pipe.frames_sent == 2
    await pipe.detach()


@test("Full send queue drops new frames instead of growing")
async def test_queue_bound():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend()
    session = FakeSession()
    pipe = CapturePipeline(backend, None, lambda: True, queue_size=1)
    await pipe.attach(session)

    # Three frames land before the writer gets a turn
    for _ in range(3):
        backend.stream.push(frame(0.3, size=8))
    await settle()

    assert len(session.sent) == 1
    assert pipe.frames_dropped == 2
    await pipe.detach()


# ══════════════════════════════════════════════════════════════════
# Test Group 2: Acquire / attach / detach
# ══════════════════════════════════════════════════════════════════

@test("acquire opens the microphone once")
async def test_acquire_once():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend()
    pipe = CapturePipeline(backend, None, lambda: True)

    first = await pipe.acquire()
    second = await pipe.acquire()
    await pipe.attach(FakeSession())

    assert first is second is backend.stream
    assert backend.open_calls == 1
    await pipe.detach()


@test("acquire propagates PermissionError")
async def test_acquire_permission_error():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend(error=PermissionError("denied"))
    pipe = CapturePipeline(backend, None, lambda: True)
    try:
        await pipe.acquire()
    except PermissionError:
        assert pipe.stream is None
        return
    raise AssertionError("Expected PermissionError")


@test("detach releases the mic, unhooks the processor and is idempotent")
async def test_detach():
    from capture_pipeline import CapturePipeline
    backend = FakeBackend()
    session = FakeSession()
    pipe = CapturePipeline(backend, None, lambda: True)
    await pipe.attach(session)
    stream = backend.stream

    await pipe.detach()
    await pipe.detach()

    assert stream.on_frame is None
    assert stream.stop_calls == 1
    assert not pipe.attached
    assert pipe.stream is None

    stream.push(frame(0.5))
    await settle()
    assert session.sent == []


@test("detach before attach is harmless")
async def test_detach_unattached():
    from capture_pipeline import CapturePipeline
    pipe = CapturePipeline(FakeBackend(), None, lambda: True)
    await pipe.detach()
    assert not pipe.attached


@test("RealtimeFrame.to_blob uses wire field names")
def test_realtime_frame_blob():
    from capture_pipeline import RealtimeFrame
    assert RealtimeFrame("AAE=").to_blob() == {"data": "AAE=", "mimeType": "audio/pcm;rate=16000"}


# ══════════════════════════════════════════════════════════════════
# Run all tests
# ══════════════════════════════════════════════════════════════════

if __name__ == "__main__":
    print("=" * 60)
    print("Capture Pipeline Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)

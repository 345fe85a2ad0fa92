#!/usr/bin/env python3
"""Tests for the PCM / base64 codecs.

Tests: base64 round-trip and strict decoding, PCM16 -> float de-interleaving
and scaling, float -> PCM16 truncation and clamping.

Run: python3 test_pcm_codec.py
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


# ======================================================================
# Test Group 1: base64 transport encoding
# ======================================================================

@test("decode_binary(encode_binary(b)) returns the original bytes")
def test_binary_round_trip():
    from pcm_codec import encode_binary, decode_binary
    for data in (b"", b"\x00", bytes(range(256)), b"\xff\xfe" * 1000):
        text = encode_binary(data)
        assert isinstance(text, str)
        assert decode_binary(text) == data


@test("encode_binary is plain ASCII base64")
def test_encode_is_ascii():
    from pcm_codec import encode_binary
    assert encode_binary(b"Hello") == "SGVsbG8="
    assert encode_binary(bytearray(b"\x00\x01")) == "AAE="


@test("decode_binary rejects malformed input with DecodeError")
def test_decode_rejects_garbage():
    from pcm_codec import decode_binary, DecodeError
    for bad in ("not base64!!", "SGVsbG8", "é===", "@@@@"):
        try:
            decode_binary(bad)
        except DecodeError:
            continue
        raise AssertionError(f"Expected DecodeError for {bad!r}")


@test("DecodeError is a ValueError")
def test_decode_error_type():
    from pcm_codec import DecodeError
    assert issubclass(DecodeError, ValueError)


# ======================================================================
# Test Group 2: PCM16 -> float
# ======================================================================

@test("pcm_to_float scales mono samples by 1/32768")
def test_pcm_to_float_mono():
    from pcm_codec import pcm_to_float
    data = struct.pack('<4h', 0, 16384, -32768, 32767)
    buf = pcm_to_float(data, 24000, 1)
    assert buf.channel_count == 1
    assert buf.frame_count == 4
    assert buf.sample_rate == 24000
    expected = [0.0, 0.5, -1.0, 32767 / 32768]
    assert np.allclose(buf.channels[0], expected), buf.channels[0]


@test("pcm_to_float de-interleaves stereo into separate channels")
def test_pcm_to_float_stereo():
    from pcm_codec import pcm_to_float
    # L R L R L R
    data = struct.pack('<6h', 100, -100, 200, -200, 300, -300)
    buf = pcm_to_float(data, 16000, 2)
    assert buf.channel_count == 2
    assert buf.frame_count == 3
    assert np.allclose(buf.channels[0] * 32768, [100, 200, 300])
    assert np.allclose(buf.channels[1] * 32768, [-100, -200, -300])


@test("pcm_to_float duration follows the declared sample rate")
def test_pcm_duration():
    from pcm_codec import pcm_to_float
    data = b"\x00\x00" * 12000
    assert pcm_to_float(data, 24000, 1).duration == 0.5
    # Same bytes declared at a different rate: trusted, not inferred
    assert pcm_to_float(data, 16000, 1).duration == 0.75


@test("pcm_to_float drops a trailing partial frame")
def test_pcm_partial_frame():
    from pcm_codec import pcm_to_float
    data = struct.pack('<3h', 1, 2, 3)
    buf = pcm_to_float(data, 24000, 2)
    assert buf.frame_count == 1


@test("pcm_to_float rejects odd byte counts")
def test_pcm_odd_length():
    from pcm_codec import pcm_to_float, DecodeError
    try:
        pcm_to_float(b"\x00\x00\x01", 24000, 1)
    except DecodeError:
        return
    raise AssertionError("Expected DecodeError")


@test("pcm_to_float of empty input is an empty buffer")
def test_pcm_empty():
    from pcm_codec import pcm_to_float
    buf = pcm_to_float(b"", 24000, 1)
    assert buf.frame_count == 0
    assert buf.duration == 0.0


@test("mixdown averages channels")
def test_mixdown():
    from pcm_codec import pcm_to_float
    data = struct.pack('<2h', 16384, 0)
    buf = pcm_to_float(data, 24000, 2)
    assert np.allclose(buf.mixdown(), [0.25])


# ======================================================================
# Test Group 3: float -> PCM16
# ======================================================================

@test("float_to_pcm16 scales, truncates and clamps")
def test_float_to_pcm16():
    from pcm_codec import float_to_pcm16
    out = float_to_pcm16(np.array([0.0, 0.5, -0.5, 1.0, -1.0, 2.0, 0.99999], dtype=np.float32))
    values = struct.unpack('<7h', out)
    assert values[0] == 0
    assert values[1] == 16384
    assert values[2] == -16384
    assert values[3] == 32767   # clamped
    assert values[4] == -32768
    assert values[5] == 32767   # out of range clamps too
    assert values[6] == 32767   # 32767.67 truncates


@test("float -> pcm16 -> float stays within one quantization step")
def test_pcm_float_round_trip():
    from pcm_codec import float_to_pcm16, pcm_to_float
    samples = np.linspace(-1.0, 1.0, 1001)
    back = pcm_to_float(float_to_pcm16(samples), 16000, 1).channels[0]
    assert np.max(np.abs(back - samples)) <= 1 / 32768 + 1e-9


@test("float_to_pcm16 produces two bytes per sample")
def test_float_to_pcm16_length():
    from pcm_codec import float_to_pcm16
    assert len(float_to_pcm16(np.zeros(4096, dtype=np.float32))) == 8192
    assert float_to_pcm16([]) == b""


# ======================================================================
# Run all tests
# ======================================================================

if __name__ == "__main__":
    print("=" * 60)
    print("PCM Codec Tests")
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

#!/usr/bin/env python3
"""Tests for the PCM codec.

Covers:
  - base64 text encode/decode and strict decoding errors
  - float -> int16 quantization (truncation, wraparound, byte order)
  - int16 -> float de-interleaving and malformed lengths
  - EncodedAudio payload construction

Run: python3 test_pcm_codec.py
"""

import asyncio
import struct
import sys
from pathlib import Path

import numpy as np

sys.path.insert(0, str(Path(__file__).parent))

from pcm_codec import (
    DecodeError, EncodedAudio, MalformedAudioError,
    decode_text, encode_bytes, float_frame_to_pcm16, pcm16_to_float_buffer,
    pcm_mime_type, sample_rate_from_mime,
)

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    """Decorator to register a test (coroutines are wrapped to run sync)."""
    def decorator(fn):
        if asyncio.iscoroutinefunction(fn):
            coro_fn = fn

            def fn():
                asyncio.run(coro_fn())
            fn.__name__ = coro_fn.__name__
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} — {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} — {type(e).__name__}: {e}")


# ══════════════════════════════════════════════════════════════════
# Base64
# ══════════════════════════════════════════════════════════════════

@test("encode_bytes produces padded standard base64")
def test_encode_padded():
    assert encode_bytes(b"\x00\x01") == "AAE="
    assert encode_bytes(b"") == ""


@test("decode_text inverts encode_bytes for arbitrary bytes")
def test_decode_roundtrip():
    data = bytes(range(256)) * 3
    assert decode_text(encode_bytes(data)) == data


@test("decode_text rejects invalid characters")
def test_decode_invalid_chars():
    try:
        decode_text("AA*=")
        assert False, "Expected DecodeError"
    except DecodeError:
        pass


@test("decode_text rejects bad padding")
def test_decode_bad_padding():
    try:
        decode_text("AAE")
        assert False, "Expected DecodeError"
    except DecodeError:
        pass


@test("DecodeError is a ValueError")
def test_decode_error_type():
    assert issubclass(DecodeError, ValueError)
    assert issubclass(MalformedAudioError, ValueError)


# ══════════════════════════════════════════════════════════════════
# Quantization
# ══════════════════════════════════════════════════════════════════

@test("float_frame_to_pcm16 truncates toward zero, little-endian")
def test_quantize_basic():
    data = float_frame_to_pcm16([0.0, 0.5, -0.5, 0.99999])
    values = struct.unpack('<4h', data)
    assert values == (0, 16384, -16384, 32767), values


@test("float_frame_to_pcm16 length is 2 bytes per sample")
def test_quantize_length():
    frame = np.linspace(-1.0, 0.9, 4096, dtype=np.float32)
    assert len(float_frame_to_pcm16(frame)) == 8192


@test("float_frame_to_pcm16 wraps +1.0 to -32768 (no clamping)")
def test_quantize_wrap():
    values = struct.unpack('<2h', float_frame_to_pcm16([1.0, -1.0]))
    assert values == (-32768, -32768), values


@test("float_frame_to_pcm16 of empty frame is empty")
def test_quantize_empty():
    assert float_frame_to_pcm16([]) == b""


@test("PCM round trip stays within one quantization step on [-1, 1)")
def test_pcm_roundtrip_bound():
    rng = np.random.default_rng(7)
    frame = rng.uniform(-1.0, 1.0, 2000).astype(np.float32)
    frame = frame[frame < 1.0]
    buf = pcm16_to_float_buffer(float_frame_to_pcm16(frame), 16000)
    err = np.abs(buf.channel(0) - frame)
    assert err.max() <= 1.0 / 32768 + 1e-7, err.max()


# ══════════════════════════════════════════════════════════════════
# De-interleaving
# ══════════════════════════════════════════════════════════════════

@test("pcm16_to_float_buffer mono duration is frames / rate")
def test_buffer_mono():
    buf = pcm16_to_float_buffer(b"\x00\x40" * 24000, 24000)
    assert buf.channel_count == 1
    assert buf.frame_count == 24000
    assert buf.duration == 1.0
    assert buf.channel(0)[0] == 0.5


@test("pcm16_to_float_buffer de-interleaves stereo")
def test_buffer_stereo():
    data = struct.pack('<4h', 16384, -16384, 8192, -8192)
    buf = pcm16_to_float_buffer(data, 24000, channel_count=2)
    assert buf.frame_count == 2
    assert list(buf.channel(0)) == [0.5, 0.25]
    assert list(buf.channel(1)) == [-0.5, -0.25]


@test("pcm16_to_float_buffer rejects odd byte length")
def test_buffer_odd_length():
    try:
        pcm16_to_float_buffer(b"\x00\x00\x00", 24000)
        assert False, "Expected MalformedAudioError"
    except MalformedAudioError:
        pass


@test("pcm16_to_float_buffer rejects partial stereo frame")
def test_buffer_partial_frame():
    try:
        pcm16_to_float_buffer(b"\x00" * 6, 24000, channel_count=2)
        assert False, "Expected MalformedAudioError"
    except MalformedAudioError:
        pass


@test("pcm16_to_float_buffer of empty input has zero duration")
def test_buffer_empty():
    buf = pcm16_to_float_buffer(b"", 24000)
    assert buf.frame_count == 0
    assert buf.duration == 0.0


# ══════════════════════════════════════════════════════════════════
# Payload
# ══════════════════════════════════════════════════════════════════

@test("EncodedAudio.from_float_frame tags 16kHz PCM")
def test_payload_from_frame():
    payload = EncodedAudio.from_float_frame([0.0] * 4, 16000)
    assert payload.mime_type == "audio/pcm;rate=16000"
    assert decode_text(payload.data) == b"\x00" * 8


@test("sample_rate_from_mime parses the rate or falls back")
def test_mime_rate():
    assert sample_rate_from_mime(pcm_mime_type(24000)) == 24000
    assert sample_rate_from_mime("audio/pcm", default=16000) == 16000
    assert sample_rate_from_mime(None, default=8000) == 8000
    assert EncodedAudio(data="", mime_type="audio/pcm;rate=24000").sample_rate == 24000


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

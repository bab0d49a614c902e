"""PCM audio codec for the live tutoring session.

Stateless conversions between capture frames (float32), signed 16-bit
little-endian PCM, and the base64 text the live service carries on the wire.

Quantization follows the browser pipeline the service was designed around:
each sample is multiplied by 32768 and truncated into int16 with
two's-complement wraparound. Samples outside [-1, 1) are NOT clamped; a full
scale +1.0 wraps to -32768.
"""

import base64
import binascii
import re
from dataclasses import dataclass

import numpy as np

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
PCM_SCALE = 32768.0
BYTES_PER_SAMPLE = 2  # 16-bit PCM

_RATE_RE = re.compile(r'rate=(\d+)')


class DecodeError(ValueError):
    """Text payload is not valid base64."""


class MalformedAudioError(ValueError):
    """PCM byte length does not divide into whole sample frames."""


def encode_bytes(data: bytes) -> str:
    """Encode raw bytes as padded standard base64 text."""
    return base64.b64encode(bytes(data)).decode('ascii')


def decode_text(text: str) -> bytes:
    """Inverse of encode_bytes. Raises DecodeError on malformed input."""
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecodeError(f"Invalid base64 audio payload: {e}") from e


def float_frame_to_pcm16(frame) -> bytes:
    """Quantize float samples in [-1, 1] to int16 LE bytes, order preserved."""
    samples = np.asarray(frame, dtype=np.float64) * PCM_SCALE
    # Truncate toward zero, then wrap into int16 range.
    return samples.astype(np.int64).astype('<i2').tobytes()


@dataclass(frozen=True)
class PcmBuffer:
    """Decoded multi-channel float buffer, shape [channels, frames]."""
    samples: np.ndarray
    sample_rate: int

    @property
    def channel_count(self) -> int:
        return self.samples.shape[0]

    @property
    def frame_count(self) -> int:
        return self.samples.shape[1]

    @property
    def duration(self) -> float:
        """Length in seconds."""
        return self.frame_count / float(self.sample_rate)

    def channel(self, index: int) -> np.ndarray:
        return self.samples[index]


def pcm16_to_float_buffer(data: bytes, sample_rate: int, channel_count: int = 1) -> PcmBuffer:
    """De-interleave int16 LE PCM into a float32 buffer normalized by 32768.

    Raises:
        MalformedAudioError: byte length is not a multiple of 2 * channel_count
    """
    if channel_count < 1:
        raise ValueError("channel_count must be >= 1")
    if len(data) % (BYTES_PER_SAMPLE * channel_count):
        raise MalformedAudioError(
            f"{len(data)} bytes is not a whole number of "
            f"{channel_count}-channel 16-bit frames"
        )
    ints = np.frombuffer(data, dtype='<i2')
    frames = ints.reshape(-1, channel_count).T
    return PcmBuffer(samples=frames.astype(np.float32) / PCM_SCALE, sample_rate=sample_rate)


def pcm_mime_type(sample_rate: int) -> str:
    return f"audio/pcm;rate={sample_rate}"


def sample_rate_from_mime(mime_type: str | None, default: int = OUTPUT_SAMPLE_RATE) -> int:
    """Pull the rate out of an 'audio/pcm;rate=N' tag."""
    if mime_type:
        match = _RATE_RE.search(mime_type)
        if match:
            return int(match.group(1))
    return default


@dataclass(frozen=True)
class EncodedAudio:
    """Transport payload: base64 PCM16 text tagged with its MIME type."""
    data: str
    mime_type: str = pcm_mime_type(INPUT_SAMPLE_RATE)

    @classmethod
    def from_float_frame(cls, frame, sample_rate: int = INPUT_SAMPLE_RATE) -> "EncodedAudio":
        return cls(data=encode_bytes(float_frame_to_pcm16(frame)),
                   mime_type=pcm_mime_type(sample_rate))

    @property
    def sample_rate(self) -> int:
        return sample_rate_from_mime(self.mime_type)

"""Gapless playback of streamed tutor speech.

PlaybackScheduler decodes each inbound chunk and schedules it on an output
device clock: every chunk starts at max(next_start_time, device time), and
next_start_time advances by exactly the chunk duration, so chunks play back
to back in arrival order without overlapping.

PyAudioOutput is the device: a PyAudio callback stream whose clock is the
number of frames rendered so far. The render callback runs on PortAudio's
thread and mixes every voice scheduled inside the block being rendered.
"""

import asyncio
import logging
import threading

import numpy as np

from pcm_codec import (
    OUTPUT_SAMPLE_RATE, DecodeError, MalformedAudioError,
    decode_text, pcm16_to_float_buffer,
)

logger = logging.getLogger(__name__)

CHANNELS = 1
FRAMES_PER_BUFFER = 1024


class _Voice:
    """One scheduled buffer on the output device."""

    def __init__(self, device, samples, start_frame, on_ended):
        self._device = device
        self.samples = samples
        self.start_frame = start_frame
        self.on_ended = on_ended

    @property
    def end_frame(self) -> int:
        return self.start_frame + len(self.samples)

    def stop(self):
        """Silence immediately; does not fire on_ended."""
        self._device._remove(self)


class PyAudioOutput:
    """PyAudio float32 output stream with a sample-accurate schedule.

    Args:
        sample_rate: output rate in Hz
        device_index: PyAudio output device index (None = default)
    """

    def __init__(self, sample_rate=OUTPUT_SAMPLE_RATE, device_index=None,
                 frames_per_buffer=FRAMES_PER_BUFFER):
        import pyaudio

        self.sample_rate = sample_rate
        self._continue = pyaudio.paContinue
        self._loop = asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._voices: list[_Voice] = []
        self._frames_rendered = 0

        self._pa = pyaudio.PyAudio()
        try:
            self._stream = self._pa.open(
                format=pyaudio.paFloat32,
                channels=CHANNELS,
                rate=sample_rate,
                output=True,
                output_device_index=device_index,
                frames_per_buffer=frames_per_buffer,
                stream_callback=self._render,
            )
        except Exception:
            self._pa.terminate()
            raise
        self._stream.start_stream()
        logger.info("Playback device opened (%d Hz)", sample_rate)

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / float(self.sample_rate)

    def play(self, samples, start_at: float, on_ended=None) -> _Voice:
        """Schedule samples to begin at start_at seconds on the device clock."""
        voice = _Voice(self, np.asarray(samples, dtype=np.float32),
                       int(round(start_at * self.sample_rate)), on_ended)
        with self._lock:
            self._voices.append(voice)
        return voice

    def _remove(self, voice):
        with self._lock:
            if voice in self._voices:
                self._voices.remove(voice)

    def _render(self, in_data, frame_count, time_info, status):
        """PortAudio callback: mix all voices overlapping this block."""
        out = np.zeros(frame_count, dtype=np.float32)
        finished = []
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frame_count
            for voice in self._voices:
                if voice.start_frame >= block_end:
                    continue
                src = max(0, block_start - voice.start_frame)
                dst = max(0, voice.start_frame - block_start)
                n = min(frame_count - dst, len(voice.samples) - src)
                if n > 0:
                    out[dst:dst + n] += voice.samples[src:src + n]
                if voice.end_frame <= block_end:
                    finished.append(voice)
            for voice in finished:
                self._voices.remove(voice)
            self._frames_rendered = block_end

        for voice in finished:
            if voice.on_ended:
                try:
                    self._loop.call_soon_threadsafe(voice.on_ended, voice)
                except RuntimeError:
                    pass  # loop already closed during shutdown

        np.clip(out, -1.0, 1.0, out=out)
        return out.tobytes(), self._continue

    def close(self):
        with self._lock:
            self._voices.clear()
        try:
            self._stream.stop_stream()
            self._stream.close()
        finally:
            self._pa.terminate()
        logger.info("Playback device closed")


class PlaybackScheduler:
    """Schedules decoded chunks back to back on one device clock.

    Args:
        device_factory: callable(sample_rate) returning an output device with
            current_time, play(samples, start_at, on_ended) and close()
        sample_rate: rate inbound PCM is decoded at
        channels: interleaved channel count of inbound PCM
    """

    def __init__(self, device_factory=None, sample_rate=OUTPUT_SAMPLE_RATE, channels=CHANNELS):
        self._device_factory = device_factory or PyAudioOutput
        self.sample_rate = sample_rate
        self.channels = channels

        self._device = None
        self._next_start_time = 0.0
        self._active: set = set()
        self.chunks_scheduled = 0
        self.chunks_skipped = 0

    @property
    def is_open(self) -> bool:
        return self._device is not None

    @property
    def next_start_time(self) -> float:
        return self._next_start_time

    @property
    def active_count(self) -> int:
        return len(self._active)

    def open(self):
        """Create the output device (no-op if already open)."""
        if self._device is None:
            self._device = self._device_factory(self.sample_rate)
            self._next_start_time = 0.0

    def enqueue(self, payload) -> float | None:
        """Decode one EncodedAudio chunk and schedule it.

        Returns the scheduled start time, or None if the chunk was skipped.
        """
        device = self._device
        if device is None:
            logger.debug("Dropping audio chunk, playback not open")
            return None

        try:
            pcm = pcm16_to_float_buffer(decode_text(payload.data), self.sample_rate, self.channels)
        except (DecodeError, MalformedAudioError) as e:
            self.chunks_skipped += 1
            logger.warning("Skipping malformed audio chunk: %s", e)
            return None
        if pcm.frame_count == 0:
            return None

        samples = pcm.channel(0) if pcm.channel_count == 1 else pcm.samples.mean(axis=0)
        start_at = max(self._next_start_time, device.current_time)
        voice = device.play(samples, start_at, self._on_voice_ended)
        self._active.add(voice)
        self._next_start_time = start_at + pcm.duration
        self.chunks_scheduled += 1
        return start_at

    def _on_voice_ended(self, voice):
        self._active.discard(voice)

    def interrupt(self):
        """Stop everything scheduled or playing and reset the clock."""
        voices = list(self._active)
        self._active.clear()
        for voice in voices:
            try:
                voice.stop()
            except Exception as e:
                logger.debug("Error stopping voice: %s", e)
        self._next_start_time = 0.0
        if voices:
            logger.info("Playback interrupted (%d buffers dropped)", len(voices))

    def shutdown(self):
        """interrupt() plus release of the output device. Idempotent."""
        self.interrupt()
        device, self._device = self._device, None
        if device is not None:
            try:
                device.close()
            except Exception as e:
                logger.warning("Error closing playback device: %s", e)

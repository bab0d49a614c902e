"""Microphone capture pipeline.

Reads fixed-size float32 frames from PulseAudio in a daemon thread, hands
each frame to the asyncio loop via call_soon_threadsafe, and forwards it as
an EncodedAudio payload to whatever send target the session installed.

Audio format: 16kHz mono float32 in, 16-bit PCM base64 out.
Frames are never buffered: a frame read while no send target is installed
(session not open yet) is dropped.
"""

import asyncio
import logging
import threading

import numpy as np

from pcm_codec import INPUT_SAMPLE_RATE, EncodedAudio

logger = logging.getLogger(__name__)

CHANNELS = 1
FRAME_SIZE = 4096        # samples per frame (256ms at 16kHz)
BYTES_PER_FLOAT = 4
JOIN_TIMEOUT = 1.0       # seconds to wait for the reader thread on release


class DeviceUnavailableError(RuntimeError):
    """Microphone permission denied or no capture device."""


def open_pulse_source(sample_rate: int, device_name: str | None = None):
    """Open a PulseAudio float32 record stream (raises on failure)."""
    import pasimple

    return pasimple.PaSimple(
        pasimple.PA_STREAM_RECORD,
        pasimple.PA_SAMPLE_FLOAT32LE,
        CHANNELS, sample_rate,
        app_name='live-tutor',
        device_name=device_name,
    )


class MicrophoneCapture:
    """Exclusive mic stream -> encoded frames -> session.

    Args:
        sample_rate: capture rate in Hz
        frame_size: samples per frame
        device_name: PulseAudio source name (None = default mic)
        device_factory: callable(sample_rate, device_name) returning an object
            with read(nbytes) and close(); defaults to open_pulse_source
    """

    def __init__(self, sample_rate=INPUT_SAMPLE_RATE, frame_size=FRAME_SIZE,
                 device_name=None, device_factory=None):
        self.sample_rate = sample_rate
        self.frame_size = frame_size
        self.device_name = device_name
        self._device_factory = device_factory or open_pulse_source

        self._device = None
        self._send = None
        self._thread = None
        self._stop_event = threading.Event()

        self.frames_sent = 0
        self.frames_dropped = 0

    @property
    def acquired(self) -> bool:
        return self._device is not None

    def acquire(self):
        """Open the capture device. Raises DeviceUnavailableError."""
        if self._device is not None:
            return
        try:
            self._device = self._device_factory(self.sample_rate, self.device_name)
        except Exception as e:
            raise DeviceUnavailableError(f"Microphone unavailable: {e}") from e
        self._stop_event.clear()
        logger.info("Microphone acquired (%d Hz, %d-sample frames)",
                    self.sample_rate, self.frame_size)

    def start(self, send):
        """Begin streaming frames to send(payload) from the running loop."""
        if self._device is None:
            raise DeviceUnavailableError("Microphone not acquired")
        self._send = send
        if self._thread is not None and self._thread.is_alive():
            return
        loop = asyncio.get_running_loop()
        self._thread = threading.Thread(
            target=self._capture_thread, args=(self._device, loop), daemon=True
        )
        self._thread.start()
        logger.info("Audio capture started")

    def release(self):
        """Stop streaming and close the device. Safe to call repeatedly."""
        self._stop_event.set()
        self._send = None

        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=JOIN_TIMEOUT)
            if thread.is_alive():
                logger.warning("Capture thread still blocked in read, closing anyway")

        device, self._device = self._device, None
        if device is not None:
            try:
                device.close()
            except Exception as e:
                logger.warning("Error closing microphone: %s", e)
            logger.info("Audio capture stopped (%d frames sent, %d dropped)",
                        self.frames_sent, self.frames_dropped)

    # ── Reader thread ─────────────────────────────────────────────

    def _capture_thread(self, device, loop):
        """Read one frame at a time and push it to the loop."""
        nbytes = self.frame_size * BYTES_PER_FLOAT * CHANNELS
        while not self._stop_event.is_set():
            try:
                data = device.read(nbytes)
            except Exception as e:
                if not self._stop_event.is_set():
                    logger.error("Capture read error: %s", e)
                break
            if not data:
                continue
            try:
                loop.call_soon_threadsafe(self._forward, data)
            except RuntimeError:
                # Loop closed underneath us
                break

    def _forward(self, data: bytes):
        """Runs on the event loop: encode one frame and fire it off."""
        send = self._send
        if send is None or self._stop_event.is_set():
            self.frames_dropped += 1
            return
        usable = len(data) - len(data) % BYTES_PER_FLOAT
        frame = np.frombuffer(data[:usable], dtype='<f4')
        payload = EncodedAudio.from_float_frame(frame, self.sample_rate)
        try:
            send(payload)
        except Exception as e:
            logger.debug("Frame send failed: %s", e)
            self.frames_dropped += 1
            return
        self.frames_sent += 1
        if self.frames_sent % 200 == 0:
            logger.debug("Sent %d audio frames", self.frames_sent)

#!/usr/bin/env python3
"""
Live English tutor for Portuguese speakers, on Gemini Live.

Talks through the default microphone and speakers; transcript entries,
phase changes, and errors are printed to the terminal as they happen.

Usage:
    python tutor.py                       # Start a session with ~/.config/live-tutor/config.json
    python tutor.py --voice Puck --debug
    python tutor.py --json                # One JSON event per line instead of text
"""

import argparse
import asyncio
import functools
import getpass
import logging
import signal
import sys

from google import genai

from config import get_api_key, load_config, load_system_instruction
from event_bus import EventType
from gemini_live import GeminiLiveService, LiveConfig
from media_generation import ImageGenerator, VideoGenerator
from mic_capture import MicrophoneCapture
from playback import PlaybackScheduler, PyAudioOutput
from tool_router import TOOL_DECLARATIONS
from tutor_session import SYSTEM_INSTRUCTION, ApiKeyProvider, RetryPolicy, TutorSession
from tutor_state import TutorState

logger = logging.getLogger(__name__)


class TerminalPresenter:
    """Prints bus events for a human (or as JSON lines with --json)."""

    def __init__(self, as_json=False, out=None):
        self.as_json = as_json
        self.out = out or sys.stdout

    def __call__(self, evt):
        if self.as_json:
            self.out.write(evt.to_json_line())
            self.out.flush()
            return
        line = self.format(evt)
        if line:
            print(line, file=self.out, flush=True)

    def format(self, evt) -> str | None:
        t = evt.type
        if t == EventType.TRANSCRIPT.value:
            kind = evt.payload.get("kind")
            if kind == "text":
                who = "Você" if evt.payload.get("author") == "user" else "Tutora"
                return f"{who}: {evt.payload.get('text')}"
            if kind == "pronunciation":
                return (f"  🗣  {evt.payload.get('word')} ≈ \"{evt.payload.get('approximation')}\"\n"
                        f"     {evt.payload.get('explanation')}")
            if kind == "image":
                return f"  🖼  {evt.payload.get('prompt')}"
            if kind == "video":
                return f"  🎬  {evt.payload.get('prompt')}: {evt.payload.get('video_url')}"
        elif t == EventType.PHASE.value:
            return f"── {evt.payload.get('name')} ({evt.payload.get('age')}) ──"
        elif t == EventType.STATUS.value:
            return "🎙  Ouvindo..." if evt.payload.get("status") == "LISTENING" else "⏹  Parado"
        elif t == EventType.ERROR.value and evt.payload.get("message"):
            return f"⚠  {evt.payload.get('message')}"
        elif t == EventType.GENERATING.value and evt.payload.get("active"):
            return "  ⏳ Gerando imagem..." if evt.payload.get("kind") == "image" else "  ⏳ Gerando vídeo..."
        return None


def prompt_for_key() -> str | None:
    if not sys.stdin.isatty():
        return None
    try:
        key = getpass.getpass("Gemini API key: ").strip()
    except (EOFError, KeyboardInterrupt):
        return None
    return key or None


def build_session(config: dict, credentials: ApiKeyProvider, state: TutorState) -> TutorSession:
    client = genai.Client(api_key=credentials.api_key)
    live_config = LiveConfig(
        system_instruction=load_system_instruction(config, SYSTEM_INSTRUCTION),
        tools=TOOL_DECLARATIONS,
        model=config["live_model"],
        voice=config["voice"],
    )
    return TutorSession(
        live_service=GeminiLiveService(
            api_key=lambda: credentials.api_key,
            connect_timeout=config["connect_timeout"],
        ),
        capture=MicrophoneCapture(
            sample_rate=config["input_sample_rate"],
            frame_size=config["frame_size"],
            device_name=config["input_device"],
        ),
        playback=PlaybackScheduler(
            device_factory=functools.partial(PyAudioOutput, device_index=config["output_device"]),
            sample_rate=config["output_sample_rate"],
        ),
        image_generator=ImageGenerator(client, model=config["image_model"]),
        video_generator=VideoGenerator(client, model=config["video_model"],
                                       poll_interval=config["video_poll_interval"]),
        credentials=credentials,
        live_config=live_config,
        retry_policy=RetryPolicy(max_retries=config["max_retries"],
                                 initial_delay_ms=config["initial_retry_delay_ms"]),
        state=state,
    )


async def run(config: dict, credentials: ApiKeyProvider, presenter: TerminalPresenter) -> int:
    state = TutorState()
    state.bus.on("*", presenter)
    loop = asyncio.get_running_loop()
    stopping = asyncio.Event()

    while True:
        if not credentials.has_credential:
            key = prompt_for_key()
            if not key:
                logger.error("No API key: set GEMINI_API_KEY or pass --api-key")
                return 1
            credentials.select(key)

        session = build_session(config, credentials, state)

        def _request_stop():
            stopping.set()
            asyncio.ensure_future(session.stop())

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop)

        try:
            if not await session.start():
                return 1
            await session.wait_idle()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

        if stopping.is_set():
            return 0
        # Rejected key: ask for another one and start over
        if not credentials.has_credential and sys.stdin.isatty():
            continue
        return 0 if state.error is None else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="Live English tutor on Gemini Live")
    parser.add_argument("--config", default=None, help="Config file (default: ~/.config/live-tutor/config.json)")
    parser.add_argument("--voice", default=None, help="Prebuilt voice name (default: Zephyr)")
    parser.add_argument("--model", default=None, help="Live model name")
    parser.add_argument("--api-key", default=None, help="Gemini API key (default: GEMINI_API_KEY or key file)")
    parser.add_argument("--input-device", default=None, help="PulseAudio source name")
    parser.add_argument("--output-device", type=int, default=None, help="PyAudio output device index")
    parser.add_argument("--json", action="store_true", help="Print events as JSON lines")
    parser.add_argument("--debug", action="store_true", help="Debug logging")
    args = parser.parse_args()

    config = load_config(args.config)
    for key, value in (("voice", args.voice), ("live_model", args.model),
                       ("input_device", args.input_device), ("output_device", args.output_device)):
        if value is not None:
            config[key] = value

    logging.basicConfig(
        level=logging.DEBUG if args.debug else getattr(logging, str(config["log_level"]).upper(), logging.INFO),
        format="%(asctime)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )

    credentials = ApiKeyProvider(api_key=args.api_key, lookup=get_api_key)
    presenter = TerminalPresenter(as_json=args.json)
    try:
        sys.exit(asyncio.run(run(config, credentials, presenter)))
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()

"""Configuration for the live tutor.

A JSON file merged over DEFAULT_CONFIG, plus API key lookup from the
environment or well-known key files.
"""

import json
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "live-tutor" / "config.json"

KEY_FILES = [
    Path.home() / ".config" / "gemini" / "api_key",
    Path.home() / ".config" / "live-tutor" / "api_key",
]

DEFAULT_CONFIG = {
    "live_model": "gemini-2.5-flash-native-audio-preview-12-2025",
    "voice": "Zephyr",
    "image_model": "gemini-2.5-flash-image",
    "video_model": "veo-3.1-fast-generate-preview",
    "video_poll_interval": 5.0,
    "max_retries": 3,
    "initial_retry_delay_ms": 1000,
    "connect_timeout": 15.0,
    "input_sample_rate": 16000,
    "output_sample_rate": 24000,
    "frame_size": 4096,
    "input_device": None,     # PulseAudio source name, None = default mic
    "output_device": None,    # PyAudio output device index, None = default
    "system_instruction_path": None,
    "log_level": "INFO",
}


def load_config(path: Path | str | None = None) -> dict:
    """Load configuration, falling back to defaults for missing keys."""
    config_path = Path(path).expanduser() if path else CONFIG_FILE
    try:
        if config_path.exists():
            with open(config_path) as f:
                loaded = json.load(f)
            if not isinstance(loaded, dict):
                raise ValueError("top-level JSON value must be an object")
            unknown = set(loaded) - set(DEFAULT_CONFIG)
            if unknown:
                logger.warning("Ignoring unknown config keys: %s", ", ".join(sorted(unknown)))
            return {**DEFAULT_CONFIG, **{k: v for k, v in loaded.items() if k in DEFAULT_CONFIG}}
    except (OSError, ValueError) as e:
        logger.error("Failed to read config %s: %s", config_path, e)
    return dict(DEFAULT_CONFIG)


def load_system_instruction(config: dict, default: str) -> str:
    """Read the tutor prompt from system_instruction_path if configured."""
    path = config.get("system_instruction_path")
    if not path:
        return default
    prompt_path = Path(path).expanduser()
    try:
        text = prompt_path.read_text().strip()
    except OSError as e:
        logger.error("Cannot read system instruction %s: %s", prompt_path, e)
        return default
    return text or default


def get_api_key() -> str | None:
    """Get the Gemini API key from the environment or a key file."""
    for var in ("GEMINI_API_KEY", "GOOGLE_API_KEY"):
        key = os.environ.get(var)
        if key:
            return key.strip()
    for path in KEY_FILES:
        if path.exists():
            key = path.read_text().strip()
            if key:
                return key
    return None

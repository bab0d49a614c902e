"""Transcript model for the tutoring session.

Provides:
- Author: who produced an entry
- TextEntry / ImageEntry / PronunciationEntry / VideoEntry: frozen entry variants
- Transcript: ordered, append-only sequence of entries
- PartialTranscription: the two streamed-delta accumulators flushed at turn end
- PhaseInfo: current lesson phase and linguistic age

No external dependencies beyond stdlib. Importable independently of tutor_session.py.
"""

from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Callable, Union


class Author(str, Enum):
    USER = "user"
    MODEL = "model"


@dataclass(frozen=True)
class TextEntry:
    """Finalized speech from either side of the conversation."""
    author: Author
    text: str
    kind: str = field(default="text", init=False)


@dataclass(frozen=True)
class ImageEntry:
    """Image shown by the tutor, with the prompt that produced it."""
    image_url: str
    prompt: str
    author: Author = field(default=Author.MODEL, init=False)
    kind: str = field(default="image", init=False)


@dataclass(frozen=True)
class PronunciationEntry:
    """Pronunciation note: word, Portuguese sound approximation, articulation."""
    word: str
    approximation: str
    explanation: str
    author: Author = field(default=Author.MODEL, init=False)
    kind: str = field(default="pronunciation", init=False)


@dataclass(frozen=True)
class VideoEntry:
    """Articulation video shown by the tutor."""
    video_url: str
    prompt: str
    author: Author = field(default=Author.MODEL, init=False)
    kind: str = field(default="video", init=False)


TranscriptEntry = Union[TextEntry, ImageEntry, PronunciationEntry, VideoEntry]


def entry_to_dict(entry: TranscriptEntry) -> dict:
    """Flatten an entry for the presentation layer."""
    if isinstance(entry, TextEntry):
        return {"kind": "text", "author": entry.author.value, "text": entry.text}
    if isinstance(entry, ImageEntry):
        return {"kind": "image", "author": "model",
                "image_url": entry.image_url, "prompt": entry.prompt}
    if isinstance(entry, PronunciationEntry):
        return {"kind": "pronunciation", "author": "model", "word": entry.word,
                "approximation": entry.approximation, "explanation": entry.explanation}
    if isinstance(entry, VideoEntry):
        return {"kind": "video", "author": "model",
                "video_url": entry.video_url, "prompt": entry.prompt}
    raise TypeError(f"Not a transcript entry: {entry!r}")


class Transcript:
    """Chronological, append-only list of transcript entries.

    Appends can come from the event loop (turn completion) and from tool
    coroutines finishing out of order; a Lock keeps the sequence consistent
    if a caller ever appends from another thread.

    Args:
        on_append: optional callback(entry) fired after each append
    """

    def __init__(self, on_append: Callable | None = None):
        self._entries: list = []
        self._lock = Lock()
        self._on_append = on_append

    def append(self, entry: TranscriptEntry):
        with self._lock:
            self._entries.append(entry)
        if self._on_append:
            self._on_append(entry)

    def entries(self) -> list:
        """Snapshot copy in insertion order."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self):
        return iter(self.entries())


class PartialTranscription:
    """Accumulates streamed transcription deltas until a turn completes."""

    def __init__(self):
        self.user = ""
        self.model = ""

    def add_user(self, text: str | None):
        if text:
            self.user += text

    def add_model(self, text: str | None):
        if text:
            self.model += text

    def flush(self) -> tuple[str, str]:
        """Return trimmed (user, model) text and clear both accumulators."""
        user, model = self.user.strip(), self.model.strip()
        self.user = ""
        self.model = ""
        return user, model


@dataclass(frozen=True)
class PhaseInfo:
    """Lesson phase shown to the learner."""
    name: str = "FASE 1 — BEBÊ"
    age: str = "0–2 anos"

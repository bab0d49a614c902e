"""Observable tutor state: what the presentation layer reads.

Every mutation is published on the EventBus so a UI can follow along
without polling.
"""

from enum import Enum

from event_bus import EventBus, EventType
from transcript import PhaseInfo, Transcript, entry_to_dict


class Status(str, Enum):
    IDLE = "IDLE"
    LISTENING = "LISTENING"


class TutorState:
    """Status, transcript, phase, generation flags and the error slot."""

    def __init__(self, bus: EventBus | None = None):
        self.bus = bus or EventBus()
        self.gen = 0  # Tags events with the connection attempt they belong to
        self.transcript = Transcript(on_append=self._on_append)
        self._status = Status.IDLE
        self._phase = PhaseInfo()
        self._error = None
        self._generating = {"image": False, "video": False}

    def _emit(self, event_type, **payload):
        self.bus.emit(event_type, gen=self.gen, **payload)

    def _on_append(self, entry):
        self._emit(EventType.TRANSCRIPT, index=len(self.transcript) - 1, **entry_to_dict(entry))

    @property
    def status(self) -> Status:
        return self._status

    @status.setter
    def status(self, value: Status):
        if value != self._status:
            self._status = value
            self._emit(EventType.STATUS, status=value.value)

    @property
    def phase(self) -> PhaseInfo:
        return self._phase

    @phase.setter
    def phase(self, value: PhaseInfo):
        self._phase = value
        self._emit(EventType.PHASE, name=value.name, age=value.age)

    @property
    def error(self) -> str | None:
        return self._error

    @error.setter
    def error(self, message: str | None):
        if message != self._error:
            self._error = message
            self._emit(EventType.ERROR, message=message)

    @property
    def generating_image(self) -> bool:
        return self._generating["image"]

    @property
    def generating_video(self) -> bool:
        return self._generating["video"]

    def set_generating(self, kind: str, value: bool):
        if kind not in self._generating:
            raise ValueError(f"Unknown generation kind: {kind}")
        if self._generating[kind] != value:
            self._generating[kind] = value
            self._emit(EventType.GENERATING, kind=kind, active=value)

    def snapshot(self) -> dict:
        return {
            "status": self._status.value,
            "phase": {"name": self._phase.name, "age": self._phase.age},
            "generating_image": self.generating_image,
            "generating_video": self.generating_video,
            "error": self._error,
            "transcript": [entry_to_dict(e) for e in self.transcript.entries()],
        }

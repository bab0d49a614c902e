"""Typed dataclass frames for messages arriving from the live service."""

from dataclasses import dataclass, field
from typing import Any

from pcm_codec import OUTPUT_SAMPLE_RATE, EncodedAudio, encode_bytes, pcm_mime_type


@dataclass(frozen=True)
class ToolInvocation:
    id: str
    name: str
    args: dict = field(default_factory=dict)


@dataclass
class LiveMessage:
    """One inbound server message. Any combination of fields may be set."""
    input_transcription: str | None = None   # Learner speech delta
    output_transcription: str | None = None  # Tutor speech delta
    tool_calls: list = field(default_factory=list)
    audio: EncodedAudio | None = None
    turn_complete: bool = False
    interrupted: bool = False
    setup_complete: bool = False
    go_away: bool = False
    raw: Any = field(default=None, repr=False)

    @classmethod
    def from_wire(cls, message) -> "LiveMessage":
        """Adapt a google-genai LiveServerMessage."""
        msg = cls(raw=message)
        msg.setup_complete = message.setup_complete is not None
        msg.go_away = message.go_away is not None

        content = message.server_content
        if content is not None:
            if content.input_transcription is not None:
                msg.input_transcription = content.input_transcription.text
            if content.output_transcription is not None:
                msg.output_transcription = content.output_transcription.text
            msg.turn_complete = bool(content.turn_complete)
            msg.interrupted = bool(content.interrupted)

            # Only the first part of a model turn carries audio
            parts = (content.model_turn.parts if content.model_turn else None) or []
            inline = parts[0].inline_data if parts else None
            if inline is not None and inline.data:
                msg.audio = EncodedAudio(
                    data=encode_bytes(inline.data),
                    mime_type=inline.mime_type or pcm_mime_type(OUTPUT_SAMPLE_RATE),
                )

        if message.tool_call is not None:
            for fc in message.tool_call.function_calls or []:
                msg.tool_calls.append(ToolInvocation(
                    id=fc.id or "",
                    name=fc.name or "",
                    args=dict(fc.args or {}),
                ))
        return msg

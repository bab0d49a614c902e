"""
Gemini Live client built on the google-genai SDK.

GeminiLiveService opens one LiveConnection per session attempt through
client.aio.live.connect: the SDK opens the socket, sends the setup (audio
modality, voice, transcription flags, tool declarations, system instruction)
and waits for the setup to complete. A LiveConnection is single-use:
pending -> open -> closed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum

import websockets
from google import genai
from google.genai import errors, types

from live_messages import LiveMessage
from pcm_codec import decode_text

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-flash-native-audio-preview-12-2025"
DEFAULT_VOICE = "Zephyr"
CONNECT_TIMEOUT = 15.0


class LiveConnectionError(Exception):
    """Service unreachable, handshake failure, or send on a closed handle."""


class ConnectionState(str, Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class LiveConfig:
    """Everything the service needs to open a tutoring session."""
    system_instruction: str
    tools: list = field(default_factory=list)
    model: str = DEFAULT_MODEL
    voice: str = DEFAULT_VOICE
    input_transcription: bool = True
    output_transcription: bool = True

    def connect_config(self) -> types.LiveConnectConfig:
        return types.LiveConnectConfig(
            response_modalities=["AUDIO"],
            system_instruction=types.Content(parts=[types.Part(text=self.system_instruction)]),
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self.voice)
                )
            ),
            # Function declarations go over as plain dicts
            tools=[{"function_declarations": self.tools}] if self.tools else None,
            input_audio_transcription=(
                types.AudioTranscriptionConfig() if self.input_transcription else None),
            output_audio_transcription=(
                types.AudioTranscriptionConfig() if self.output_transcription else None),
        )


class LiveConnection:
    """Session Handle: one SDK live session, used once.

    Args:
        session_cm: the async context manager returned by client.aio.live.connect
    """

    def __init__(self, session_cm):
        self._session_cm = session_cm
        self._session = None
        self.state = ConnectionState.PENDING
        self.close_reason = None

    @property
    def is_open(self) -> bool:
        return self.state == ConnectionState.OPEN

    async def _open(self):
        """Enter the SDK session; returns once the service acknowledged setup."""
        self._session = await self._session_cm.__aenter__()
        self.state = ConnectionState.OPEN

    def _require_open(self):
        if self.state != ConnectionState.OPEN:
            raise LiveConnectionError(f"Cannot send on a {self.state.value} connection")

    async def send_realtime_audio(self, payload):
        """Stream one EncodedAudio frame to the service."""
        self._require_open()
        await self._session.send_realtime_input(
            audio=types.Blob(data=decode_text(payload.data), mime_type=payload.mime_type)
        )

    async def send_tool_response(self, call_id: str, name: str, response: dict):
        """Answer one tool invocation, matched by its id."""
        self._require_open()
        await self._session.send_tool_response(function_responses=[
            types.FunctionResponse(id=call_id, name=name, response=response)
        ])

    async def messages(self):
        """Yield LiveMessages in arrival order until the session closes."""
        if self._session is None or self.state != ConnectionState.OPEN:
            return
        try:
            # receive() ends after each turn_complete; re-enter for the next turn
            while self.state == ConnectionState.OPEN:
                received = False
                async for server_message in self._session.receive():
                    received = True
                    message = LiveMessage.from_wire(server_message)
                    if message.go_away:
                        logger.warning("Server sent goAway: %s", server_message.go_away)
                    yield message
                if not received:
                    self.close_reason = "stream ended"
                    break
        except (websockets.exceptions.ConnectionClosed, errors.APIError) as e:
            self.close_reason = str(e)
            logger.info("Live connection closed: %s", e)
        finally:
            self.state = ConnectionState.CLOSED

    async def close(self):
        """Leave the SDK session. Idempotent."""
        self.state = ConnectionState.CLOSED
        session_cm, self._session_cm = self._session_cm, None
        entered, self._session = self._session is not None, None
        if session_cm is not None and entered:
            await session_cm.__aexit__(None, None, None)


class GeminiLiveService:
    """Factory for LiveConnections.

    Args:
        api_key: Gemini API key, or a callable returning the current one
        connect_timeout: seconds allowed for connect + setup
        client_factory: callable(api_key) -> genai.Client
    """

    def __init__(self, api_key, connect_timeout=CONNECT_TIMEOUT, client_factory=None):
        self.api_key = api_key
        self.connect_timeout = connect_timeout
        self._client_factory = client_factory or (lambda key: genai.Client(api_key=key))

    async def connect(self, config: LiveConfig) -> LiveConnection:
        """Open and set up a session. Raises LiveConnectionError."""
        api_key = self.api_key() if callable(self.api_key) else self.api_key
        try:
            client = self._client_factory(api_key)
            connection = LiveConnection(
                client.aio.live.connect(model=config.model, config=config.connect_config()))
            await asyncio.wait_for(connection._open(), timeout=self.connect_timeout)
        except Exception as e:
            raise LiveConnectionError(f"Could not open live session: {e}") from e

        logger.info("Live session open (model=%s, voice=%s)", config.model, config.voice)
        return connection

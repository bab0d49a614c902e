#!/usr/bin/env python3
"""
Live tutoring session: connect / retry / teardown around a Gemini Live socket.

  Mic (pasimple) -> PCM16 base64 -> Live session -> event dispatcher
      -> transcript / tool router / gapless playback (PyAudio)

States: idle -> connecting -> open -> idle. A failed attempt releases
whatever it acquired and retries after 1s, 2s, 4s before giving up. An
unexpected close returns to idle without retrying.

Every attempt carries a generation id. stop() bumps it, so a connect that
finishes late, a pending retry, or a slow tool result from a torn-down
session sees a stale id and leaves the current state alone.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from config import get_api_key
from event_bus import EventType
from event_dispatcher import EventDispatcher
from gemini_live import LiveConfig
from tool_router import TOOL_DECLARATIONS, ToolRouter
from tutor_state import Status, TutorState

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = """Você é uma professora-mãe brasileira, extremamente paciente e acolhedora, \
especializada em aquisição natural de linguagem (Comprehensible Input).
O aluno entende português (BR) fluentemente; o inglês é absolutamente novo.
Fale sempre em português (BR). O inglês aparece apenas como input natural.
Nunca use IPA nem símbolos fonéticos: use apenas aproximações de som em português.
Antes de cada interação, use 'update_phase' para mostrar a fase atual e a idade linguística.
Use 'explain_pronunciation' para explicar a pronúncia (boca, lábios, língua, força do som).
Use 'show_image' sempre que introduzir uma palavra, ação, emoção ou objeto.
Use 'show_articulation_video' quando for útil mostrar a articulação em close.
Nunca diga "está errado": corrija apenas reformulando naturalmente.
Inicie agora na FASE 1 — BEBÊ, mostrando a fase atual, gerando a primeira imagem, \
explicando o som em português e aplicando o primeiro exercício."""

# User-visible messages
MSG_NO_KEY = "Selecione uma chave de API para começar."
MSG_RETRY = "Serviço indisponível. Tentando novamente em {seconds:g}s..."
MSG_EXHAUSTED = ("Não foi possível conectar após {retries} tentativas. "
                 "Por favor, verifique sua conexão e tente mais tarde.")
MSG_LOST = "A conexão foi perdida. Por favor, inicie uma nova conversa."
MSG_INVALID_KEY = "Sua chave de API parece inválida. Por favor, selecione uma nova chave."


class SessionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: initial_delay_ms * 2**retry_count."""
    max_retries: int = 3
    initial_delay_ms: int = 1000

    def delay_ms(self, retry_count: int) -> int:
        return self.initial_delay_ms * (2 ** retry_count)


class ApiKeyProvider:
    """Credential provider: holds the selected Gemini API key."""

    def __init__(self, api_key=None, lookup=get_api_key):
        self._api_key = api_key or lookup()

    @property
    def has_credential(self) -> bool:
        return bool(self._api_key)

    @property
    def api_key(self) -> str | None:
        return self._api_key

    def select(self, api_key: str):
        self._api_key = api_key.strip() or None

    def invalidate(self):
        self._api_key = None


class TutorSession:
    """Owns the one live connection and everything wired to it.

    Args:
        live_service: object with async connect(LiveConfig) -> LiveConnection
        capture: MicrophoneCapture
        playback: PlaybackScheduler
        image_generator: ImageGenerator (show_image)
        video_generator: VideoGenerator (show_articulation_video)
        credentials: ApiKeyProvider
        live_config: LiveConfig (defaults to the tutor prompt and tools)
        retry_policy: RetryPolicy
        state: TutorState shared with the presentation layer
        timer: callable(delay_seconds, callback) -> handle with cancel();
            defaults to loop.call_later
    """

    def __init__(self, live_service, capture, playback, image_generator, video_generator,
                 credentials, live_config=None, retry_policy=None, state=None, timer=None):
        self.live_service = live_service
        self.capture = capture
        self.playback = playback
        self.image_generator = image_generator
        self.video_generator = video_generator
        self.credentials = credentials
        self.live_config = live_config or LiveConfig(
            system_instruction=SYSTEM_INSTRUCTION, tools=TOOL_DECLARATIONS)
        self.retry_policy = retry_policy or RetryPolicy()
        self.state = state or TutorState()
        self._timer = timer

        self._session_state = SessionState.IDLE
        self._idle = asyncio.Event()
        self._idle.set()
        self._generation = 0
        self._retry_count = 0
        self._retry_timer = None
        self._connection = None
        self._dispatcher = None
        self._receive_task = None
        self._tasks: set[asyncio.Task] = set()
        self._sends: set[asyncio.Task] = set()

    # ── Introspection ─────────────────────────────────────────────

    @property
    def session_state(self) -> SessionState:
        return self._session_state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def retry_pending(self) -> bool:
        return self._retry_timer is not None

    @property
    def connection(self):
        return self._connection

    @property
    def dispatcher(self) -> EventDispatcher | None:
        return self._dispatcher

    @property
    def bus(self):
        return self.state.bus

    def _set_session_state(self, value: SessionState):
        if value == self._session_state:
            return
        self._session_state = value
        if value == SessionState.IDLE:
            self._idle.set()
        else:
            self._idle.clear()
        self.bus.emit(EventType.SESSION_STATE, gen=self._generation, state=value.value)

    # ── Public API ────────────────────────────────────────────────

    async def start(self) -> bool:
        """Begin a session. No-op (False) unless idle and a key is selected."""
        if self._session_state != SessionState.IDLE:
            logger.debug("start() ignored, session is %s", self._session_state.value)
            return False
        if not self.credentials.has_credential:
            self.state.error = MSG_NO_KEY
            logger.warning("No API key selected, not starting")
            return False

        self._generation += 1
        self.state.gen = self._generation
        self._retry_count = 0
        await self._attempt_connection(0, self._generation)
        return True

    async def stop(self):
        """Expected teardown. Safe when idle or mid-connection."""
        self._generation += 1
        self._cancel_retry()
        self.state.status = Status.IDLE

        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.error("Error closing session: %s", e)

        self._release_audio()
        self._dispatcher = None
        receive_task, self._receive_task = self._receive_task, None
        if receive_task is not None and receive_task is not asyncio.current_task():
            receive_task.cancel()
        self._set_session_state(SessionState.IDLE)
        logger.info("Session stopped")

    async def toggle(self):
        if self._session_state == SessionState.IDLE:
            await self.start()
        else:
            await self.stop()

    async def wait_idle(self):
        await self._idle.wait()

    # ── Connection attempts ───────────────────────────────────────

    async def _attempt_connection(self, retry_count: int, generation: int):
        if generation != self._generation:
            return  # stop() ran before this retry fired
        self._retry_timer = None
        self._retry_count = retry_count
        if retry_count == 0:
            self.state.error = None
        self.state.status = Status.LISTENING
        self._set_session_state(SessionState.CONNECTING)

        try:
            self.capture.acquire()
            self.playback.open()
            connection = await self.live_service.connect(self.live_config)
        except Exception as e:
            if generation != self._generation:
                return
            logger.warning("Connection attempt %d failed: %s", retry_count + 1, e)
            self._release_audio()
            self._on_connect_failed(retry_count, generation)
            return

        if generation != self._generation:
            logger.info("Session stopped while connecting, closing late connection")
            await self._close_quietly(connection)
            return

        self._on_open(connection, generation)

    def _on_connect_failed(self, retry_count: int, generation: int):
        if retry_count < self.retry_policy.max_retries:
            delay_ms = self.retry_policy.delay_ms(retry_count)
            self.state.error = MSG_RETRY.format(seconds=delay_ms / 1000)
            self.bus.emit(EventType.RETRY_SCHEDULED, gen=generation,
                          attempt=retry_count + 1, delay_ms=delay_ms)
            logger.info("Retry %d in %.1fs", retry_count + 1, delay_ms / 1000)
            self._retry_timer = self._call_later(
                delay_ms / 1000.0,
                lambda: self._spawn(self._attempt_connection(retry_count + 1, generation)),
            )
        else:
            self.state.error = MSG_EXHAUSTED.format(retries=self.retry_policy.max_retries)
            self.state.status = Status.IDLE
            self._set_session_state(SessionState.IDLE)
            logger.error("Giving up after %d retries", self.retry_policy.max_retries)

    def _on_open(self, connection, generation: int):
        """Wire capture and the dispatcher to a freshly opened connection."""
        self._connection = connection
        router = ToolRouter(
            state=self.state,
            image_generator=self.image_generator,
            video_generator=self.video_generator,
            respond=lambda call_id, name, response: self._fire(
                connection, connection.send_tool_response, call_id, name, response),
            on_credential_invalid=self._on_credential_invalid,
            still_current=lambda: generation == self._generation,
        )
        self._dispatcher = EventDispatcher(self.state, self.playback, router)
        self._set_session_state(SessionState.OPEN)
        self.state.error = None

        self.capture.start(lambda payload: self._fire(
            connection, connection.send_realtime_audio, payload))
        self._receive_task = self._spawn(self._receive_loop(connection, generation))

    async def _receive_loop(self, connection, generation: int):
        """Feed inbound messages to the dispatcher, in order, until close."""
        dispatcher = self._dispatcher
        try:
            async for message in connection.messages():
                if generation != self._generation:
                    break
                dispatcher.handle(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Live session error: %s", e)

        if generation != self._generation:
            return
        logger.warning("Connection closed unexpectedly (%s)", connection.close_reason)
        self._generation += 1
        self._connection = None
        self._dispatcher = None
        self._receive_task = None
        await self._close_quietly(connection)
        self._release_audio()
        self.state.status = Status.IDLE
        self.state.error = MSG_LOST
        self._set_session_state(SessionState.IDLE)

    def _on_credential_invalid(self):
        self.credentials.invalidate()
        self.state.error = MSG_INVALID_KEY
        self.bus.emit(EventType.CREDENTIAL, gen=self._generation, valid=False)
        self._spawn(self._stop_after_sends(self._generation))

    async def _stop_after_sends(self, generation: int):
        """Let queued sends (the failed acknowledgement) finish, then stop."""
        pending = list(self._sends)
        if pending:
            await asyncio.wait(pending)
        if generation == self._generation:
            await self.stop()

    # ── Helpers ───────────────────────────────────────────────────

    def _fire(self, connection, send, *args):
        """Send on a detached task; dropped if the handle is no longer current."""
        if connection is not self._connection or not connection.is_open:
            return

        async def _send():
            if connection is not self._connection or not connection.is_open:
                return
            try:
                await send(*args)
            except Exception as e:
                logger.debug("Send failed: %s", e)

        task = self._spawn(_send())
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _call_later(self, delay: float, callback):
        if self._timer is not None:
            return self._timer(delay, callback)
        return asyncio.get_running_loop().call_later(delay, callback)

    def _cancel_retry(self):
        timer, self._retry_timer = self._retry_timer, None
        if timer is not None:
            timer.cancel()
            logger.info("Pending retry cancelled")

    def _release_audio(self):
        self.capture.release()
        self.playback.shutdown()

    async def _close_quietly(self, connection):
        try:
            await connection.close()
        except Exception as e:
            logger.error("Error closing session: %s", e)

"""Routes inbound live messages to transcript, tools and playback.

Messages are handled strictly in arrival order. Within one message the
actions are independent; tool invocations are spawned as separate tasks in
the order given so a slow video never holds up a phase update.
"""

import asyncio
import logging

from event_bus import EventType
from transcript import Author, PartialTranscription, TextEntry

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Demultiplexes LiveMessages.

    Args:
        state: TutorState (transcript lives here)
        playback: PlaybackScheduler
        tool_router: ToolRouter
        partials: PartialTranscription accumulators (a fresh pair by default)
    """

    def __init__(self, state, playback, tool_router, partials=None):
        self.state = state
        self.playback = playback
        self.tool_router = tool_router
        self.partials = partials or PartialTranscription()
        self._tool_tasks: set[asyncio.Task] = set()

    @property
    def pending_tool_calls(self) -> int:
        return len(self._tool_tasks)

    def handle(self, message) -> list:
        """Apply one message. Returns the tool tasks it spawned."""
        self.partials.add_user(message.input_transcription)
        self.partials.add_model(message.output_transcription)

        spawned = []
        for call in message.tool_calls:
            self.state.bus.emit(EventType.TOOL_CALL, gen=self.state.gen,
                                id=call.id, name=call.name)
            task = asyncio.create_task(self._run_tool(call), name=f"tool:{call.name}:{call.id}")
            self._tool_tasks.add(task)
            task.add_done_callback(self._tool_tasks.discard)
            spawned.append(task)

        if message.turn_complete:
            self._finish_turn()

        if message.audio is not None:
            start_at = self.playback.enqueue(message.audio)
            if start_at is not None:
                self.state.bus.emit(EventType.AUDIO_OUT, gen=self.state.gen, start_at=start_at)

        if message.interrupted:
            logger.info("Model output interrupted by learner")
            self.playback.interrupt()
            self.state.bus.emit(EventType.INTERRUPTED, gen=self.state.gen)

        return spawned

    def _finish_turn(self):
        user_text, model_text = self.partials.flush()
        if user_text:
            self.state.transcript.append(TextEntry(author=Author.USER, text=user_text))
        if model_text:
            self.state.transcript.append(TextEntry(author=Author.MODEL, text=model_text))

    async def _run_tool(self, call):
        try:
            result = await self.tool_router.dispatch(call)
        except Exception as e:
            # Router acknowledges its own failures; this is a bug in a handler
            logger.exception("Tool %s crashed: %s", call.name, e)
            return None
        self.state.bus.emit(EventType.TOOL_RESULT, gen=self.state.gen,
                            id=call.id, name=call.name, result=result)
        return result


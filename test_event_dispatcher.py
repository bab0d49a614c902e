#!/usr/bin/env python3
"""Tests for EventDispatcher.

Feeds parsed LiveMessages through the dispatcher with a fake playback
scheduler and tool router:
  - transcription deltas accumulate until turn completion
  - user entry is appended before the model entry
  - tool calls run as separate tasks, in order, without blocking audio
  - audio is enqueued, interruption stops playback

Run: python3 test_event_dispatcher.py
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

from google.genai import types

sys.path.insert(0, str(Path(__file__).parent))

from event_dispatcher import EventDispatcher
from live_messages import LiveMessage, ToolInvocation
from pcm_codec import EncodedAudio
from transcript import Author, TextEntry
from tutor_state import TutorState

PASSED = 0
FAILED = 0
ERRORS = []


def test(name):
    """Decorator to register a test (coroutines are wrapped to run sync)."""
    def decorator(fn):
        if asyncio.iscoroutinefunction(fn):
            coro_fn = fn

            def fn():
                asyncio.run(coro_fn())
            fn.__name__ = coro_fn.__name__
        fn._test_name = name
        return fn
    return decorator


def run_test(fn):
    global PASSED, FAILED
    name = getattr(fn, '_test_name', fn.__name__)
    try:
        fn()
        PASSED += 1
        print(f"  PASS: {name}")
    except AssertionError as e:
        FAILED += 1
        ERRORS.append((name, str(e)))
        print(f"  FAIL: {name} — {e}")
    except Exception as e:
        FAILED += 1
        ERRORS.append((name, f"{type(e).__name__}: {e}"))
        print(f"  ERROR: {name} — {type(e).__name__}: {e}")


# ── Helpers ───────────────────────────────────────────────────────

class FakeRouter:
    """Records dispatch order; optionally blocks until released."""

    def __init__(self, gate=None):
        self.started = []
        self.finished = []
        self.gate = gate

    async def dispatch(self, call):
        self.started.append(call.name)
        if self.gate is not None and call.name == "show_articulation_video":
            await self.gate.wait()
        self.finished.append(call.name)
        return f"done {call.name}"


def make_dispatcher(router=None):
    state = TutorState()
    playback = MagicMock()
    playback.enqueue.return_value = 0.0
    dispatcher = EventDispatcher(state, playback, router or FakeRouter())
    return dispatcher, state, playback


def server(**content):
    return LiveMessage.from_wire(
        types.LiveServerMessage(server_content=types.LiveServerContent(**content)))


def texts(state):
    return [(e.author, e.text) for e in state.transcript if isinstance(e, TextEntry)]


# ══════════════════════════════════════════════════════════════════
# Transcription
# ══════════════════════════════════════════════════════════════════

@test("turn complete appends user entry before model entry")
async def test_turn_ordering():
    dispatcher, state, _ = make_dispatcher()
    dispatcher.handle(server(input_transcription=types.Transcription(text="Hel")))
    dispatcher.handle(server(input_transcription=types.Transcription(text="lo")))
    dispatcher.handle(server(output_transcription=types.Transcription(text="Oi")))
    dispatcher.handle(server(turn_complete=True))
    assert texts(state) == [(Author.USER, "Hello"), (Author.MODEL, "Oi")], texts(state)
    assert dispatcher.partials.user == ""
    assert dispatcher.partials.model == ""


@test("whitespace-only accumulators produce no entries")
async def test_blank_turn():
    dispatcher, state, _ = make_dispatcher()
    dispatcher.handle(server(input_transcription=types.Transcription(text="  ")))
    dispatcher.handle(server(turn_complete=True))
    assert len(state.transcript) == 0


@test("entries are trimmed")
async def test_trimmed():
    dispatcher, state, _ = make_dispatcher()
    dispatcher.handle(server(output_transcription=types.Transcription(text=" Muito bem! ")))
    dispatcher.handle(server(turn_complete=True))
    assert texts(state) == [(Author.MODEL, "Muito bem!")]


@test("delta and turn completion in the same message are both applied")
async def test_delta_with_turn_complete():
    dispatcher, state, _ = make_dispatcher()
    dispatcher.handle(server(output_transcription=types.Transcription(text="Tchau"), turn_complete=True))
    assert texts(state) == [(Author.MODEL, "Tchau")]


@test("transcript entries are published on the bus")
async def test_transcript_events():
    dispatcher, state, _ = make_dispatcher()
    seen = []
    state.bus.on("transcript", seen.append)
    dispatcher.handle(server(input_transcription=types.Transcription(text="cat"), turn_complete=True))
    assert len(seen) == 1
    assert seen[0].payload["kind"] == "text"
    assert seen[0].payload["author"] == "user"
    assert seen[0].payload["index"] == 0


# ══════════════════════════════════════════════════════════════════
# Audio and interruption
# ══════════════════════════════════════════════════════════════════

@test("audio part is handed to playback")
async def test_audio_enqueued():
    dispatcher, _, playback = make_dispatcher()
    dispatcher.handle(server(model_turn=types.Content(parts=[
        types.Part(inline_data=types.Blob(data=b"\x00\x00", mime_type="audio/pcm;rate=24000"))])))
    playback.enqueue.assert_called_once()
    payload = playback.enqueue.call_args[0][0]
    assert isinstance(payload, EncodedAudio)
    assert payload.data == "AAA="


@test("interrupted stops playback")
async def test_interrupted():
    dispatcher, state, playback = make_dispatcher()
    seen = []
    state.bus.on("interrupted", seen.append)
    dispatcher.handle(server(interrupted=True))
    playback.interrupt.assert_called_once()
    assert len(seen) == 1


@test("message with nothing recognizable changes nothing")
async def test_empty_message():
    dispatcher, state, playback = make_dispatcher()
    assert dispatcher.handle(LiveMessage.from_wire(types.LiveServerMessage())) == []
    playback.enqueue.assert_not_called()
    playback.interrupt.assert_not_called()
    assert len(state.transcript) == 0


# ══════════════════════════════════════════════════════════════════
# Tool calls
# ══════════════════════════════════════════════════════════════════

@test("tool calls start in order as separate tasks")
async def test_tool_order():
    router = FakeRouter()
    dispatcher, _, _ = make_dispatcher(router)
    msg = LiveMessage(tool_calls=[
        ToolInvocation("1", "update_phase", {}),
        ToolInvocation("2", "show_image", {}),
    ])
    tasks = dispatcher.handle(msg)
    assert len(tasks) == 2
    assert dispatcher.pending_tool_calls == 2
    results = await asyncio.gather(*tasks)
    assert router.started == ["update_phase", "show_image"]
    assert results == ["done update_phase", "done show_image"]
    assert dispatcher.pending_tool_calls == 0


@test("slow tool does not block later messages")
async def test_slow_tool_nonblocking():
    gate = asyncio.Event()
    router = FakeRouter(gate)
    dispatcher, state, playback = make_dispatcher(router)
    tasks = dispatcher.handle(LiveMessage(tool_calls=[
        ToolInvocation("v", "show_articulation_video", {}),
        ToolInvocation("p", "update_phase", {}),
    ]))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert router.finished == ["update_phase"]

    dispatcher.handle(server(output_transcription=types.Transcription(text="Olha"), turn_complete=True))
    assert texts(state) == [(Author.MODEL, "Olha")]

    gate.set()
    await asyncio.gather(*tasks)
    assert router.finished == ["update_phase", "show_articulation_video"]


@test("crashing router is logged, not raised")
async def test_router_crash():
    router = MagicMock()

    async def boom(call):
        raise RuntimeError("handler bug")
    router.dispatch = boom
    dispatcher, _, _ = make_dispatcher(router)
    tasks = dispatcher.handle(LiveMessage(tool_calls=[ToolInvocation("1", "show_image", {})]))
    assert await tasks[0] is None


if __name__ == "__main__":
    print("=" * 60)
    print("Event Dispatcher Tests")
    print("=" * 60)

    tests = [
        obj for name, obj in sorted(globals().items())
        if callable(obj) and hasattr(obj, '_test_name')
    ]

    print(f"\nRunning {len(tests)} tests...\n")

    for fn in tests:
        run_test(fn)

    print(f"\n{'=' * 60}")
    print(f"Results: {PASSED} passed, {FAILED} failed out of {PASSED + FAILED}")

    if ERRORS:
        print(f"\nFailures:")
        for name, err in ERRORS:
            print(f"  - {name}: {err}")

    print("=" * 60)
    sys.exit(0 if FAILED == 0 else 1)

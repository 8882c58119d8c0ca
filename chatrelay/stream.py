"""
Stream processing: upstream SSE -> client events.

The read loop is driven by a pure transition function, advance(), over an
immutable StreamState:

    IDLE -> STREAMING -> TOOL_CALL_PENDING -> TOOL_CALL_EXECUTING -> COMPLETED
                     \\-> COMPLETED
                     \\-> ABORTED

advance() takes one parsed frame and returns the next state plus the events
to emit, so the whole state machine can be tested without a live stream.
StreamProcessor wires it to an upstream response, flushes each event as
soon as it exists, and runs an intercepted tool call once the stream ends.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Mapping

import httpx

from chatrelay.errors import ChatError, ErrorKind
from chatrelay.storage.models import Function
from chatrelay.tokens import to_text
from chatrelay.tools.invoker import ToolInvoker

logger = logging.getLogger(__name__)

EVENT_START = "start"
EVENT_DELTA = "message_delta"
EVENT_ERROR = "error"
EVENT_END = "end"

MIN_LINE_LENGTH = 30
THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"
TOOL_FINISH_REASONS = ("tool_calls", "function_call")

STOPPED_MESSAGE = "Sorry, the assistant stopped producing output for an unknown reason."
INVOKING_TEMPLATE = "Invoking tool `{label}` to answer ...\n\n"
TOOL_ERROR_PREFIX = "Tool invocation failed: "


@dataclass(frozen=True)
class ChatEvent:
    """One frame sent to the client: {"type": ..., "body": ...}."""
    type: str
    body: Any = ""

    def to_dict(self) -> dict:
        return {"type": self.type, "body": self.body}

    def to_sse(self) -> str:
        return f"event: message\ndata: {json.dumps(self.to_dict(), ensure_ascii=False)}\n\n"


def text_delta(content: str) -> ChatEvent:
    return ChatEvent(EVENT_DELTA, {"type": "text", "content": content})


class StreamPhase(str, Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_CALL_PENDING = "tool_call_pending"
    TOOL_CALL_EXECUTING = "tool_call_executing"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(frozen=True)
class StreamState:
    phase: StreamPhase = StreamPhase.IDLE
    contents: tuple[str, ...] = ()
    reasoning: bool = False
    function: Function | None = None
    arguments: tuple[str, ...] = ()
    finished: bool = False          # a finish_reason ended the read loop
    usage: dict = field(default_factory=dict)

    @property
    def tool_call(self) -> bool:
        return self.function is not None

    @property
    def stop_reading(self) -> bool:
        return self.finished or self.phase is StreamPhase.ABORTED

    @property
    def text(self) -> str:
        return "".join(self.contents)


def parse_line(line: str) -> dict | None:
    """
    One SSE line -> frame dict. Lines without a data field, or too short to
    carry a chunk (keep-alives, "data: [DONE]"), give None.
    Raises ChatError(StreamDecodeError) with the raw line on bad JSON.
    """
    if "data:" not in line or len(line) < MIN_LINE_LENGTH:
        return None
    payload = line[line.index("data:") + len("data:"):].strip()
    try:
        frame = json.loads(payload)
    except ValueError:
        raise ChatError(ErrorKind.STREAM_DECODE_ERROR, line, line=line)
    if not isinstance(frame, dict):
        raise ChatError(ErrorKind.STREAM_DECODE_ERROR, line, line=line)
    return frame


def _finish(state: StreamState, finish_reason: str) -> StreamState:
    return replace(state, finished=True) if finish_reason else state


def _tool_fragment(delta: dict) -> tuple[str, str]:
    """(name, arguments) from either the tool_calls or the legacy function_call shape."""
    tool_calls = delta.get("tool_calls") or []
    if tool_calls:
        fn = (tool_calls[0] or {}).get("function") or {}
        return fn.get("name") or "", fn.get("arguments") or ""
    fn = delta.get("function_call") or {}
    return fn.get("name") or "", fn.get("arguments") or ""


def advance(
    state: StreamState, frame: dict, functions: Mapping[str, Function]
) -> tuple[StreamState, list[ChatEvent]]:
    """Pure transition: (state, frame) -> (state, events)."""
    if state.stop_reading:
        return state, []
    if state.phase is StreamPhase.IDLE:
        state = replace(state, phase=StreamPhase.STREAMING)

    if isinstance(frame.get("usage"), dict):
        state = replace(state, usage=frame["usage"])

    choices = frame.get("choices") or []
    if not choices:
        return state, []
    choice = choices[0] or {}
    delta = choice.get("delta") or {}
    finish_reason = choice.get("finish_reason") or ""

    content = delta.get("content")
    reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
    has_tool = bool(delta.get("tool_calls") or delta.get("function_call"))

    if content is None and not has_tool and not reasoning:
        return _finish(state, finish_reason), []

    if finish_reason == "stop" and not state.contents and not content and not reasoning:
        return replace(state, phase=StreamPhase.ABORTED), [ChatEvent(EVENT_ERROR, STOPPED_MESSAGE)]

    name, arguments = _tool_fragment(delta) if has_tool else ("", "")

    # Tool-call mode: everything that does not name a new function is argument data
    if state.tool_call and not name:
        if arguments:
            state = replace(state, arguments=state.arguments + (arguments,))
        return _finish(state, finish_reason), []

    if name:
        fn = functions.get(name)
        if fn is None:
            logger.warning("Model called unknown or disabled tool '%s'", name)
            return _finish(state, finish_reason), []
        notice = INVOKING_TEMPLATE.format(label=fn.label or fn.name)
        state = replace(
            state,
            phase=StreamPhase.TOOL_CALL_PENDING,
            function=fn,
            arguments=(arguments,) if arguments else (),
            contents=state.contents + (notice,),
        )
        return _finish(state, finish_reason), [text_delta(notice)]

    if finish_reason in TOOL_FINISH_REASONS:
        return replace(state, finished=True), []

    events: list[ChatEvent] = []
    if reasoning:
        piece = reasoning
        if not state.reasoning:
            piece = THINK_OPEN + piece
            state = replace(state, reasoning=True)
        state = replace(state, contents=state.contents + (piece,))
        events.append(text_delta(piece))
    elif content:
        piece = to_text(content)
        if state.reasoning:
            piece = THINK_CLOSE + piece
            state = replace(state, reasoning=False)
        state = replace(state, contents=state.contents + (piece,))
        events.append(text_delta(piece))

    return _finish(state, finish_reason), events


class StreamProcessor:
    """Runs one streamed turn. Create one per request."""

    def __init__(self, invoker: ToolInvoker, functions: Mapping[str, Function], user_id: int):
        self.invoker = invoker
        self.functions = functions
        self.user_id = user_id
        self.state = StreamState()
        self.cancelled = False

    async def run(self, response) -> AsyncIterator[ChatEvent]:
        """
        Yield client events for an event-stream response.
        Raises ChatError(StreamDecodeError) on a malformed frame.
        """
        yield ChatEvent(EVENT_START, "start")

        try:
            async for line in response.iter_lines():
                frame = parse_line(line)
                if frame is None:
                    continue
                self.state, events = advance(self.state, frame, self.functions)
                for event in events:
                    yield event
                if self.state.stop_reading:
                    break
        except httpx.HTTPError as e:
            logger.error("Error reading upstream stream: %s", e)

        if response.cancelled:
            self.cancelled = True
            logger.info("Generation cancelled after %d chunks", len(self.state.contents))

        if self.state.phase is StreamPhase.ABORTED:
            return

        if self.state.phase is StreamPhase.TOOL_CALL_PENDING:
            if self.cancelled:
                logger.info("Skipping tool '%s' for cancelled generation", self.state.function.name)
                self.state = replace(self.state, phase=StreamPhase.COMPLETED)
                return
            self.state = replace(self.state, phase=StreamPhase.TOOL_CALL_EXECUTING)
            try:
                result = await self.invoker.invoke(
                    self.state.function, self.state.arguments, self.user_id
                )
            except ChatError as e:
                logger.warning("Tool '%s' failed: %s", self.state.function.name, e.message)
                result = TOOL_ERROR_PREFIX + e.message
            self.state = replace(
                self.state,
                phase=StreamPhase.COMPLETED,
                contents=self.state.contents + (result,),
            )
            yield text_delta(result)
            return

        self.state = replace(self.state, phase=StreamPhase.COMPLETED)


@dataclass
class Completion:
    content: str
    usage: dict


async def complete_once(response, model_value: str, started_at: float) -> Completion:
    """Single JSON (non-SSE) completion. Raises ChatError(StreamDecodeError)."""
    text = await response.read_text()
    try:
        data = json.loads(text)
        message = data["choices"][0]["message"]
    except (ValueError, KeyError, IndexError, TypeError):
        raise ChatError(ErrorKind.STREAM_DECODE_ERROR, f"Failed to parse response: {text}", line=text)

    content = to_text(message.get("content") or "")
    if model_value.startswith("o1-"):
        elapsed = int(time.time() - started_at)
        content = f"AI finished thinking in {elapsed} seconds.\n{content}"
    usage = data.get("usage") if isinstance(data.get("usage"), dict) else {}
    return Completion(content=content, usage=usage)

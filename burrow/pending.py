"""Pending request table: in-flight forwarded requests awaiting a reply."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .logging import get_logger
from .sink import ResponseSink

logger = get_logger(__name__)

INTERNAL_ERROR_STATUS = 500
GATEWAY_TIMEOUT_STATUS = 504


class ReplyMode(str, Enum):
    BUFFERED = "buffered"
    STREAMING = "streaming"


class ReplyStatus(str, Enum):
    AWAITING_REPLY = "awaiting_reply"
    STREAM_OPEN = "stream_open"
    TERMINAL = "terminal"


@dataclass
class ReplyState:
    """Everything needed to deliver the reply of one request."""

    request_id: str
    sink: ResponseSink
    deadline: float | None
    mode: ReplyMode = ReplyMode.BUFFERED
    status: ReplyStatus = ReplyStatus.AWAITING_REPLY
    timer: asyncio.TimerHandle | None = None


class PendingRequestTable:
    """
    Correlates request ids with their reply state.

    Transitions:
        AWAITING_REPLY -> TERMINAL      (complete_buffered, fail, expire, abandon)
        AWAITING_REPLY -> STREAM_OPEN   (start_stream)
        STREAM_OPEN    -> TERMINAL      (end_stream, fail_stream, abandon)

    An entry is removed as soon as it becomes TERMINAL. Every operation on a
    missing entry, or on an entry in the wrong state, returns False and leaves
    the table untouched, which is what settles the race between a late reply
    and the deadline timer. No operation awaits, so each one is atomic on the
    event loop without a lock.
    """

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        """
        Args:
            clock: Monotonic time source; defaults to the running loop's clock
        """
        self._entries: dict[str, ReplyState] = {}
        self._clock = clock

    def _now(self) -> float:
        if self._clock is not None:
            return self._clock()
        return asyncio.get_running_loop().time()

    def create(self, request_id: str, sink: ResponseSink, timeout: float) -> ReplyState:
        """Register a new request awaiting its reply within ``timeout`` seconds."""
        if request_id in self._entries:
            raise ValueError(f"Request {request_id} is already pending")

        state = ReplyState(request_id=request_id, sink=sink, deadline=self._now() + timeout)
        self._entries[request_id] = state
        return state

    def arm(self, request_id: str, timer: asyncio.TimerHandle) -> bool:
        """Attach the deadline timer to a request still awaiting its reply."""
        state = self._take(request_id, ReplyStatus.AWAITING_REPLY)
        if state is None:
            timer.cancel()
            return False
        state.timer = timer
        return True

    def complete_buffered(
        self, request_id: str, status: int, headers: list[tuple[str, str]], body: bytes
    ) -> bool:
        state = self._take(request_id, ReplyStatus.AWAITING_REPLY)
        if state is None:
            return False

        self._finish(state)
        state.sink.respond(status, headers, body)
        logger.debug(f"Request {request_id} completed with {status}")
        return True

    def start_stream(self, request_id: str, status: int, headers: list[tuple[str, str]]) -> bool:
        """Open a stream; an open stream has no deadline."""
        state = self._take(request_id, ReplyStatus.AWAITING_REPLY)
        if state is None:
            return False

        state.status = ReplyStatus.STREAM_OPEN
        state.mode = ReplyMode.STREAMING
        state.deadline = None
        self._cancel_timer(state)
        state.sink.start(status, headers)
        logger.debug(f"Started streaming response for request {request_id}")
        return True

    def write_chunk(self, request_id: str, data: bytes) -> bool:
        state = self._take(request_id, ReplyStatus.STREAM_OPEN)
        if state is None:
            return False

        state.sink.write(data)
        return True

    def end_stream(self, request_id: str) -> bool:
        state = self._take(request_id, ReplyStatus.STREAM_OPEN)
        if state is None:
            return False

        self._finish(state)
        state.sink.close()
        logger.debug(f"Ended streaming response for request {request_id}")
        return True

    def fail_stream(self, request_id: str, reason: str) -> bool:
        state = self._take(request_id, ReplyStatus.STREAM_OPEN)
        if state is None:
            return False

        self._finish(state)
        logger.warning(f"Stream for request {request_id} failed: {reason}")
        if state.sink.flushed:
            state.sink.abort()
        else:
            state.sink.fail(INTERNAL_ERROR_STATUS, {"error": f"Streaming error: {reason}"})
        return True

    def fail(self, request_id: str, reason: str) -> bool:
        state = self._take(request_id, ReplyStatus.AWAITING_REPLY)
        if state is None:
            return False

        self._finish(state)
        logger.warning(f"Request {request_id} failed on the agent: {reason}")
        state.sink.fail(INTERNAL_ERROR_STATUS, {"error": "Internal server error"})
        return True

    def expire(self, request_id: str) -> bool:
        """Deadline callback. Loses silently to any reply that got there first."""
        state = self._take(request_id, ReplyStatus.AWAITING_REPLY)
        if state is None:
            return False

        self._finish(state)
        logger.warning(f"Request {request_id} timed out")
        state.sink.fail(GATEWAY_TIMEOUT_STATUS, {"error": "Gateway timeout"})
        return True

    def abandon(self, request_id: str) -> bool:
        """Drop a request whose public caller is gone."""
        state = self._entries.get(request_id)
        if state is None:
            return False

        self._finish(state)
        state.sink.discard()
        logger.debug(f"Request {request_id} abandoned")
        return True

    def get(self, request_id: str) -> ReplyState | None:
        return self._entries.get(request_id)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _take(self, request_id: str, expected: ReplyStatus) -> ReplyState | None:
        state = self._entries.get(request_id)
        if state is None or state.status is not expected:
            logger.debug(f"Ignoring stale transition for request {request_id}")
            return None
        return state

    def _finish(self, state: ReplyState) -> None:
        state.status = ReplyStatus.TERMINAL
        state.deadline = None
        self._cancel_timer(state)
        del self._entries[state.request_id]

    @staticmethod
    def _cancel_timer(state: ReplyState) -> None:
        if state.timer is not None:
            state.timer.cancel()
            state.timer = None

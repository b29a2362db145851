"""Bounded hand-off between a generation worker and the SSE response writer."""

import json
import logging
import queue
import threading
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

from app.config import settings
from app.services.adapters import CancelToken, Delta
from app.services.errors import ProtocolError, SiftError

logger = logging.getLogger(__name__)

_CLOSE = object()

# Consumer wakes up at this interval to notice a relay closed while its queue was full
_POLL_INTERVAL_SECONDS = 0.5


class RelayState(str, Enum):
    OPEN = "OPEN"
    COMPLETE = "COMPLETE"
    ERROR = "ERROR"
    PEER_CLOSED = "PEER_CLOSED"
    CANCELLED = "CANCELLED"


def format_sse(data: Dict[str, Any], event: Optional[str] = None) -> str:
    """Format one SSE frame."""
    payload = json.dumps(data, default=str)
    if event:
        return f"event: {event}\ndata: {payload}\n\n"
    return f"data: {payload}\n\n"


def error_payload(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, SiftError):
        return error.to_payload()
    return {"type": "StreamingError", "message": str(error) or error.__class__.__name__}


class StreamRelay:
    """
    Ordered SSE event channel for one generation.

    The worker thread is the only producer; the HTTP response iterates
    ``events()``. Once the relay reaches a terminal state nothing further
    is emitted.
    """

    def __init__(
        self,
        cancel: Optional[CancelToken] = None,
        maxsize: Optional[int] = None,
        peer_timeout: Optional[float] = None,
    ):
        self.cancel_token = cancel or CancelToken()
        self.peer_timeout = peer_timeout if peer_timeout is not None else settings.RELAY_PEER_TIMEOUT_SECONDS
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize or settings.RELAY_QUEUE_SIZE)
        self._lock = threading.Lock()
        self._closed = threading.Event()
        self._peer_gone = threading.Event()
        self.state = RelayState.OPEN
        self.error: Optional[BaseException] = None

    @property
    def is_terminal(self) -> bool:
        return self.state != RelayState.OPEN

    def is_peer_gone(self) -> bool:
        return self._peer_gone.is_set()

    def _transition(self, state: RelayState) -> bool:
        with self._lock:
            if self.state != RelayState.OPEN:
                return False
            self.state = state
            return True

    def _put(self, frame: str) -> None:
        """
        Queue one frame for the consumer.

        Raises:
            ProtocolError: If the peer is gone or stalled past ``peer_timeout``
        """
        if self.is_peer_gone():
            raise ProtocolError("SSE peer is gone")
        try:
            self._queue.put(frame, timeout=self.peer_timeout)
        except queue.Full:
            logger.warning(f"SSE consumer stalled for {self.peer_timeout}s, treating peer as gone")
            self.peer_closed()
            raise ProtocolError(f"SSE consumer stalled for {self.peer_timeout}s")

    def _send(self, frame: str) -> bool:
        try:
            self._put(frame)
        except ProtocolError as e:
            # Nobody is left to receive an error event
            logger.info(f"Frame dropped, stopping cleanly: {e.message}")
            return False
        return True

    def _close(self) -> None:
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSE)
        except queue.Full:
            pass

    def emit_delta(self, text: str) -> bool:
        """Queue a ``data: {"delta": ...}`` frame. Returns False if nothing was emitted."""
        if not text:
            return False
        if self.is_terminal:
            return False
        return self._send(format_sse({"delta": text}))

    def emit_control(self, name: str, payload: Dict[str, Any]) -> bool:
        """Queue a named event frame while the relay is open."""
        if self.is_terminal:
            return False
        return self._send(format_sse(payload, event=name))

    def pump(
        self,
        deltas: Iterable[Delta],
        on_delta: Optional[Callable[[Delta], None]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> bool:
        """
        Forward adapter deltas until the adapter is drained.

        Stops early when a stop is requested or the peer goes away. Adapter
        exceptions are converted into a single ``error`` event.

        Args:
            deltas: Adapter output
            on_delta: Called with each forwarded delta (and with citation-only deltas)
            cancel: Token to poll, defaults to the relay's own

        Returns:
            True if the adapter was fully drained, False otherwise
        """
        cancel = cancel or self.cancel_token
        iterator = iter(deltas)
        drained = False
        try:
            for delta in iterator:
                if cancel.cancelled or self.is_peer_gone() or self.is_terminal:
                    break
                if delta.text:
                    if not self.emit_delta(delta.text):
                        break
                    if on_delta:
                        on_delta(delta)
                elif delta.citations and on_delta:
                    on_delta(Delta(text="", citations=delta.citations))
            else:
                drained = not cancel.cancelled and not self.is_peer_gone()
        except Exception as e:
            if cancel.cancelled or self.is_peer_gone():
                logger.info(f"Adapter raised after stop or disconnect, ignoring: {e}")
            else:
                logger.error(f"Adapter failed mid-stream: {e}")
                self.fail(e)
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                close()
        return drained

    def seal(self) -> bool:
        """Commit this generation to completion unless a stop already won."""
        if self.is_terminal:
            return False
        return self.cancel_token.seal()

    def complete(self, message: str) -> bool:
        if not self._transition(RelayState.COMPLETE):
            return False
        self._send(format_sse({"message": message}, event="complete"))
        self._close()
        return True

    def fail(self, error: BaseException) -> bool:
        if not self._transition(RelayState.ERROR):
            return False
        self.error = error
        self._send(format_sse(error_payload(error), event="error"))
        self._close()
        return True

    def cancel(self) -> bool:
        """User stop: close the channel without ``complete`` or ``error``."""
        if not self.cancel_token.cancel():
            return False
        if not self._transition(RelayState.CANCELLED):
            return False
        self._close()
        return True

    def peer_closed(self) -> bool:
        """Record that the consumer went away; the worker stops at the next delta."""
        self._peer_gone.set()
        self.cancel_token.cancel()
        if not self._transition(RelayState.PEER_CLOSED):
            return False
        logger.info("SSE peer closed the stream")
        self._close()
        return True

    def events(self) -> Iterator[str]:
        """Yield SSE frames until the relay closes. Closing this generator marks the peer gone."""
        try:
            while True:
                try:
                    frame = self._queue.get(timeout=_POLL_INTERVAL_SECONDS)
                except queue.Empty:
                    if self._closed.is_set():
                        return
                    continue
                if frame is _CLOSE:
                    return
                yield frame
        except GeneratorExit:
            if not self._closed.is_set():
                self.peer_closed()
            raise

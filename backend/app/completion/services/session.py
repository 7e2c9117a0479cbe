from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from app.logger import LOGGER


class SessionState(str, Enum):
    STREAMING = "streaming"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERRORED = "errored"


class AbortHandle:
    """Thread-safe abort signal for one transport stream."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def on_abort(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        self._run(callback)

    def abort(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._run(callback)

    def release(self) -> None:
        with self._lock:
            self._callbacks = []

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except OSError as exc:
            LOGGER.debug("abort callback failed: %s", exc)


def _new_session_id() -> str:
    return str(uuid.uuid4())


@dataclass
class CompletionSession:
    template_id: str | None = None
    language: str | None = None
    session_id: str = field(default_factory=_new_session_id)
    abort_handle: AbortHandle = field(default_factory=AbortHandle)
    state: SessionState = SessionState.STREAMING
    final_text: str | None = None
    error_message: str | None = None
    _chunks: list[str] = field(default_factory=list, repr=False)

    @property
    def active(self) -> bool:
        return self.state is SessionState.STREAMING

    @property
    def accumulated_text(self) -> str:
        return "".join(self._chunks)

    def append(self, delta: str) -> str:
        if delta:
            self._chunks.append(delta)
        return self.accumulated_text

    def close(self, state: SessionState, *, error_message: str | None = None) -> str:
        """Move to a terminal state, keep the final snapshot and drop the buffer."""
        text = self.accumulated_text
        self.state = state
        self.final_text = text
        self.error_message = error_message
        self._chunks = []
        self.abort_handle.release()
        return text

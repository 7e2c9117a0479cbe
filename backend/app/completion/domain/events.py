"""Lifecycle events produced by the completion controller.

Every session emits one ``CompletionStarted``, any number of
``CompletionIncremental`` and exactly one terminal event
(``CompletionEnded`` or ``CompletionErrored``). Peer-routed completions arrive
as ``CompletionIncremental`` without a session id.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional, Union


@dataclass(frozen=True)
class CompletionStarted:
    session_id: str
    template: Optional[str] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class CompletionIncremental:
    completion: str
    session_id: Optional[str] = None
    template: Optional[str] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class CompletionEnded:
    session_id: str
    completion: Optional[str] = None
    cancelled: bool = False
    template: Optional[str] = None
    language: Optional[str] = None


@dataclass(frozen=True)
class CompletionErrored:
    session_id: str
    error_message: str
    error: bool = True


LifecycleEvent = Union[CompletionStarted, CompletionIncremental, CompletionEnded, CompletionErrored]
EventHandler = Callable[[LifecycleEvent], None]


@dataclass
class LifecycleHandlers:
    on_start: Optional[Callable[[CompletionStarted], None]] = None
    on_incremental: Optional[Callable[[CompletionIncremental], None]] = None
    on_end: Optional[Callable[[CompletionEnded], None]] = None
    on_error: Optional[Callable[[CompletionErrored], None]] = None


def is_terminal(event: LifecycleEvent) -> bool:
    return isinstance(event, (CompletionEnded, CompletionErrored))


def dispatch_event(event: LifecycleEvent, handlers: LifecycleHandlers) -> None:
    match event:
        case CompletionStarted():
            handler = handlers.on_start
        case CompletionIncremental():
            handler = handlers.on_incremental
        case CompletionEnded():
            handler = handlers.on_end
        case CompletionErrored():
            handler = handlers.on_error
        case _:
            raise TypeError(f"unknown lifecycle event: {type(event).__name__}")
    if handler is not None:
        handler(event)


def event_to_message(event: LifecycleEvent) -> dict[str, Any]:
    """Serialise an event into the ``{"type", "value"}`` shape the UI consumes."""
    match event:
        case CompletionStarted(session_id=session_id, template=template, language=language):
            return {
                "type": "onStart",
                "value": {"sessionId": session_id, "type": template, "language": language},
            }
        case CompletionIncremental(
            completion=completion, session_id=session_id, template=template, language=language
        ):
            return {
                "type": "onCompletion",
                "value": {
                    "sessionId": session_id,
                    "completion": completion,
                    "type": template,
                    "language": language,
                },
            }
        case CompletionEnded(
            session_id=session_id,
            completion=completion,
            cancelled=cancelled,
            template=template,
            language=language,
        ):
            value: dict[str, Any] = {
                "sessionId": session_id,
                "cancelled": cancelled,
                "type": template,
                "language": language,
            }
            if completion is not None:
                value["completion"] = completion
            return {"type": "onEnd", "value": value}
        case CompletionErrored(session_id=session_id, error_message=message, error=error):
            return {
                "type": "onError",
                "value": {"sessionId": session_id, "error": error, "errorMessage": message},
            }
        case _:
            raise TypeError(f"unknown lifecycle event: {type(event).__name__}")

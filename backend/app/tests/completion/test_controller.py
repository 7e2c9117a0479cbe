from __future__ import annotations

import json
import threading

from sqlalchemy.exc import SQLAlchemyError

from app.completion.adapters.transport_http import StreamTransportError
from app.completion.domain.events import (
    CompletionEnded,
    CompletionErrored,
    CompletionIncremental,
    CompletionStarted,
    is_terminal,
)
from app.completion.domain.models import BackendProfile, PipelineConfig
from app.completion.services.controller import CompletionController
from app.completion.services.session import SessionState


def _line(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


def _config(**overrides) -> PipelineConfig:
    data = {
        "profile": BackendProfile(
            provider="litellm", hostname="localhost", port=4000, model_name="gpt-local"
        ),
    }
    data.update(overrides)
    return PipelineConfig(**data)


class FakeTransport:
    def __init__(self, lines=None, error: Exception | None = None):
        self.lines = list(lines or [])
        self.error = error
        self.requests = []

    def stream(self, request, abort, timeout_s=None):
        self.requests.append(request)
        for line in self.lines:
            if abort.aborted:
                return
            yield line
        if self.error is not None:
            raise self.error


class FakeTemplates:
    def render(self, name, variables):
        return f"<{name}:{variables.get('code')}>"

    def render_system_message(self, name=None):
        return "system prompt"


class FakePeer:
    def __init__(self):
        self.written: list[str] = []
        self.handlers = {}

    def write(self, envelope: str) -> None:
        self.written.append(envelope)

    def on(self, key, handler) -> None:
        self.handlers[key] = handler


class FakeRetrieval:
    def __init__(self):
        self.rerank_threshold = 0.0
        self.queries: list[str] = []

    def get_relevant_files(self, query):
        self.queries.append(query)
        return [("a.ts", 0.9)]

    def get_relevant_code(self, query, relevant_files, *, threshold=None):
        return "function a() {}"


def _controller(config=None, transport=None, **kwargs):
    events = []
    controller = CompletionController(
        config or _config(),
        transport=transport or FakeTransport([_line(" Hel"), _line("lo"), "data: [DONE]"]),
        templates=FakeTemplates(),
        on_event=events.append,
        **kwargs,
    )
    return controller, events


def test_chat_streams_snapshots_then_single_end() -> None:
    controller, events = _controller()

    session = controller.stream_chat_completion(
        [{"role": "user", "content": "hi"}], language="python"
    )

    assert isinstance(events[0], CompletionStarted)
    assert [e.completion for e in events if isinstance(e, CompletionIncremental)] == [
        "Hel",
        "Hello",
        "Hello",
    ]
    terminals = [e for e in events if is_terminal(e)]
    assert terminals == [events[-1]]
    assert isinstance(events[-1], CompletionEnded)
    assert events[-1].completion == "Hello"
    assert events[-1].cancelled is False
    assert events[-1].language == "python"
    assert session is not None
    assert session.state is SessionState.COMPLETED
    assert controller.active_session is None


def test_cancel_without_session_is_noop() -> None:
    controller, events = _controller()

    controller.cancel()

    assert events == []


def test_cancel_mid_stream_ends_with_partial_text() -> None:
    events = []
    transport = FakeTransport([_line("Hel"), _line("lo"), _line(" world")])
    controller = CompletionController(
        _config(), transport=transport, templates=FakeTemplates(), on_event=events.append
    )

    def cancel_after_first_chunk(event) -> None:
        events.append(event)
        if isinstance(event, CompletionIncremental):
            controller.cancel()

    controller._on_event = cancel_after_first_chunk

    session = controller.stream_chat_completion([{"role": "user", "content": "hi"}])

    terminals = [e for e in events if is_terminal(e)]
    assert len(terminals) == 1
    assert isinstance(terminals[0], CompletionEnded)
    assert terminals[0].cancelled is True
    assert terminals[0].completion == "Hel"
    assert session.state is SessionState.CANCELLED
    assert controller.active_session is None


def test_transport_failure_emits_error_event() -> None:
    transport = FakeTransport(
        [_line("partial")],
        error=StreamTransportError("Server responded with status code: 500", status_code=500),
    )
    controller, events = _controller(transport=transport)

    session = controller.stream_chat_completion([{"role": "user", "content": "hi"}])

    assert isinstance(events[-1], CompletionErrored)
    assert events[-1].error_message == "Server responded with status code: 500"
    assert not any(isinstance(e, CompletionEnded) for e in events)
    assert session.state is SessionState.ERRORED


def test_template_completion_hands_text_to_on_end() -> None:
    controller, events = _controller()
    captured = []

    controller.stream_template_completion(
        "refactor", selection="x = 1", language="python", on_end=captured.append
    )

    assert captured == [" Hello"]
    assert not any(isinstance(e, CompletionIncremental) for e in events)
    assert isinstance(events[-1], CompletionEnded)
    assert events[-1].completion is None
    assert events[-1].template == "refactor"


def test_failing_on_end_is_contained() -> None:
    controller, events = _controller()

    def broken_on_end(text: str) -> None:
        raise RuntimeError("handler broke")

    session = controller.stream_template_completion("refactor", selection="x", on_end=broken_on_end)

    assert session.state is SessionState.COMPLETED
    assert [type(e) for e in events] == [CompletionStarted, CompletionEnded]
    assert controller.active_session is None


def test_uses_peer_route_requires_attached_peer() -> None:
    with_peer, _ = _controller(config=_config(peer_route_active=True), peer=FakePeer())
    without_peer, _ = _controller(config=_config(peer_route_active=True))

    assert with_peer.uses_peer_route() is True
    assert without_peer.uses_peer_route() is False
    assert with_peer.uses_peer_route(_config()) is False


def test_peer_route_skips_direct_transport_and_rag() -> None:
    peer = FakePeer()
    retrieval = FakeRetrieval()
    transport = FakeTransport([_line("x")])
    controller, events = _controller(
        config=_config(peer_route_active=True, rag_enabled=True),
        transport=transport,
        peer=peer,
        retrieval=retrieval,
    )

    result = controller.stream_chat_completion([{"role": "user", "content": "hi"}])

    assert result is None
    assert transport.requests == []
    assert retrieval.queries == []
    envelope = json.loads(peer.written[0])
    assert envelope["key"] == "inference"
    assert envelope["data"]["key"] == "inference"
    assert [m["role"] for m in envelope["data"]["messages"]] == ["system", "user"]
    assert events == []


def test_peer_completion_is_forwarded_as_incremental() -> None:
    peer = FakePeer()
    controller, events = _controller(peer=peer)

    peer.handlers["inference"]("  answer")

    assert events == [CompletionIncremental(completion="answer")]


def test_new_conversation_notifies_peer() -> None:
    peer = FakePeer()
    controller, _ = _controller(peer=peer)

    controller.new_conversation()

    assert json.loads(peer.written[-1]) == {"key": "newConversation", "data": None}


def test_missing_profile_sends_nothing() -> None:
    transport = FakeTransport([_line("x")])
    controller, events = _controller(config=PipelineConfig(), transport=transport)

    assert controller.stream_chat_completion([{"role": "user", "content": "hi"}]) is None
    assert controller.stream_template_completion("explain", selection="x") is None
    assert transport.requests == []
    assert events == []


def test_chat_prompt_is_augmented_with_selection_and_rag() -> None:
    transport = FakeTransport([_line("ok")])
    controller, _ = _controller(
        config=_config(rag_enabled=True), transport=transport, retrieval=FakeRetrieval()
    )

    controller.stream_chat_completion(
        [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "question"},
        ],
        selection="x = 1",
    )

    messages = transport.requests[0].body["messages"]
    assert messages[0] == {"role": "system", "content": "system prompt"}
    assert messages[1:3] == [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
    ]
    assert messages[-1]["content"] == (
        "question\n\nSelected Code:\nx = 1\n\nAdditional Context:\n"
        "<relevant-files:a.ts>\n\n<relevant-code:function a() {}>"
    )


def test_template_messages_only_use_rag_for_explain() -> None:
    controller, _ = _controller(config=_config(rag_enabled=True), retrieval=FakeRetrieval())

    explain = controller.get_template_messages("explain", selection="x = 1", language="python")
    refactor = controller.get_template_messages("refactor", selection="x = 1")

    assert explain[1].content.startswith("<explain:x = 1>\n\nAdditional Context:\n")
    assert refactor[1].content == "<refactor:x = 1>"
    assert refactor[0].role == "system"


def test_update_config_switches_provider() -> None:
    transport = FakeTransport(['data: {"content": "ok"}'])
    controller, events = _controller(transport=transport)

    controller.update_config(
        _config(
            profile=BackendProfile(
                provider="llamacpp", hostname="localhost", port=8080, path="/completion", model_name="m"
            )
        )
    )
    controller.stream_chat_completion([{"role": "user", "content": "hi"}])

    assert "prompt" in transport.requests[0].body
    assert events[-1].completion == "ok"


def test_repo_failures_do_not_break_streaming() -> None:
    class BrokenRepo:
        def insert_session(self, *args, **kwargs):
            raise SQLAlchemyError("db down")

        def finish_session(self, *args, **kwargs):
            raise SQLAlchemyError("db down")

    controller, events = _controller(repo=BrokenRepo())

    session = controller.stream_chat_completion([{"role": "user", "content": "hi"}])

    assert session.state is SessionState.COMPLETED
    assert isinstance(events[-1], CompletionEnded)


class BlockingTransport:
    """First stream blocks until aborted; later streams finish immediately."""

    def __init__(self):
        self.handles = []
        self.aborted_before_open: list[bool] = []
        self.first_chunk_sent = threading.Event()

    def stream(self, request, abort, timeout_s=None):
        self.aborted_before_open.append(all(handle.aborted for handle in self.handles))
        self.handles.append(abort)
        if len(self.handles) == 1:
            released = threading.Event()
            abort.on_abort(released.set)
            self.first_chunk_sent.set()
            yield _line("one")
            released.wait(5)
            return
        yield _line("two")


def test_new_session_aborts_previous_before_opening() -> None:
    transport = BlockingTransport()
    lock = threading.Lock()
    events = []

    def record(event) -> None:
        with lock:
            events.append(event)

    controller = CompletionController(
        _config(), transport=transport, templates=FakeTemplates(), on_event=record
    )
    results = {}
    worker = threading.Thread(
        target=lambda: results.setdefault(
            "first", controller.stream_chat_completion([{"role": "user", "content": "a"}])
        )
    )
    worker.start()
    assert transport.first_chunk_sent.wait(5)

    second = controller.stream_chat_completion([{"role": "user", "content": "b"}])
    worker.join(5)

    assert transport.aborted_before_open == [True, True]
    assert results["first"].state is SessionState.CANCELLED
    assert second.state is SessionState.COMPLETED
    ended = {e.session_id: e for e in events if isinstance(e, CompletionEnded)}
    assert ended[results["first"].session_id].cancelled is True
    assert ended[second.session_id].completion == "two"
    assert len([e for e in events if is_terminal(e)]) == 2

from __future__ import annotations

import importlib.util
import json
from pathlib import Path

from app.completion.domain.models import BackendProfile, PipelineConfig, RequestOptions, WireRequest
from app.completion.services.controller import CompletionController
from app.completion.services.session import SessionState
from app.completion.services.trace_logger import SessionTrace, preview_text


def _load_replay_module() -> object:
    script_path = Path(__file__).resolve().parents[3] / "scripts" / "replay_session.py"
    spec = importlib.util.spec_from_file_location("replay_session", script_path)
    if not spec or not spec.loader:
        raise RuntimeError("failed_to_load_replay_module")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_trace_logger_and_replay(tmp_path, capsys) -> None:
    trace = SessionTrace("session-1", trace_dir=tmp_path)
    request = WireRequest(options=RequestOptions(hostname="localhost", port=11434, path="/api/chat"))
    trace.start(template="explain", provider="ollama", rag_enabled=False)
    trace.request(request, dialect="ollama", messages_count=2)
    trace.end(SessionState.COMPLETED, "Hello")
    trace.error("boom")

    module = _load_replay_module()
    exit_code = module._replay(tmp_path / "session-1.jsonl")

    captured = capsys.readouterr()
    assert exit_code == 0
    assert "start template=explain provider=ollama" in captured.out
    assert "request dialect=ollama messages_count=2" in captured.out
    assert "end state=completed chars=5 completion=Hello" in captured.out
    assert "error error=boom" in captured.out


def test_replay_missing_trace(tmp_path, capsys) -> None:
    module = _load_replay_module()

    assert module._replay(tmp_path / "nope.jsonl") == 1


def test_tracing_is_off_without_directory(monkeypatch, tmp_path) -> None:
    monkeypatch.delenv("ASSIST_TRACE_DIR", raising=False)
    monkeypatch.chdir(tmp_path)
    trace = SessionTrace("s")

    trace.start(template=None, provider="ollama", rag_enabled=False)

    assert trace.enabled is False
    assert list(tmp_path.iterdir()) == []


def test_trace_dir_from_environment(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("ASSIST_TRACE_DIR", str(tmp_path))

    trace = SessionTrace("s")
    trace.error("stalled")

    assert trace.path == tmp_path / "s.jsonl"
    assert json.loads(trace.path.read_text(encoding="utf-8"))["payload"] == {"error": "stalled"}


def test_preview_text_flattens_and_truncates() -> None:
    assert preview_text("a\nb") == "a b"
    assert preview_text("   ") is None
    assert preview_text("x" * 130) == "x" * 120 + "..."


def test_controller_writes_session_trace(tmp_path) -> None:
    class OneLineTransport:
        def stream(self, request, abort, timeout_s=None):
            yield '{"message": {"content": "Hello"}}'

    class Templates:
        def render(self, name, variables):
            return ""

        def render_system_message(self, name=None):
            return "system"

    config = PipelineConfig(
        profile=BackendProfile(provider="ollama", hostname="localhost", port=11434, model_name="m"),
        trace_dir=str(tmp_path),
    )
    controller = CompletionController(config, transport=OneLineTransport(), templates=Templates())

    session = controller.stream_chat_completion([{"role": "user", "content": "hi"}])

    lines = (tmp_path / f"{session.session_id}.jsonl").read_text(encoding="utf-8").splitlines()
    stages = [json.loads(line)["stage"] for line in lines]
    assert stages == ["start", "request", "end"]
    assert json.loads(lines[-1])["payload"]["completion_preview"] == "Hello"

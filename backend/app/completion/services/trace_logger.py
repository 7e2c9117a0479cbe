"""Per-session JSONL traces of the completion stages (start, request, end, error).

Tracing is off unless a directory is passed in or ``ASSIST_TRACE_DIR`` is set.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from app.completion.domain.models import WireRequest
from app.completion.services.session import SessionState


def resolve_trace_dir(trace_dir: str | Path | None = None) -> Path | None:
    configured = trace_dir or os.getenv("ASSIST_TRACE_DIR")
    if not configured:
        return None
    return Path(configured).expanduser()


def preview_text(text: str | None, limit: int = 120) -> str | None:
    if text is None:
        return None
    cleaned = str(text).replace("\n", " ").strip()
    if not cleaned:
        return None
    if len(cleaned) > limit:
        return f"{cleaned[:limit]}..."
    return cleaned


class SessionTrace:
    def __init__(self, session_id: str, trace_dir: str | Path | None = None) -> None:
        self.session_id = str(session_id)
        directory = resolve_trace_dir(trace_dir)
        self.path = directory / f"{self.session_id}.jsonl" if directory is not None else None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def start(self, *, template: str | None, provider: str, rag_enabled: bool) -> None:
        self._write("start", {"template": template, "provider": provider}, {"rag_enabled": rag_enabled})

    def request(self, request: WireRequest, *, dialect: str, messages_count: int) -> None:
        self._write(
            "request",
            {"url": request.options.url, "dialect": dialect, "messages_count": messages_count},
        )

    def end(self, state: SessionState, text: str) -> None:
        self._write(
            "end",
            {"state": state.value, "chars": len(text), "completion_preview": preview_text(text)},
        )

    def error(self, message: str) -> None:
        self._write("error", {"error": message})

    def _write(self, stage: str, payload: dict[str, Any], meta: dict[str, Any] | None = None) -> None:
        if self.path is None:
            return
        entry = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "session_id": self.session_id,
            "stage": stage,
            "payload": payload,
            "meta": meta or {},
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(entry, ensure_ascii=False, separators=(",", ":")) + "\n")

#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.completion.services.trace_logger import resolve_trace_dir  # noqa: E402


def _preview_text(value: Any, limit: int = 120) -> str | None:
    if value is None:
        return None
    text = str(value).replace("\n", " ").strip()
    if not text:
        return None
    if len(text) > limit:
        return f"{text[:limit]}..."
    return text


def _summarize_stage(stage: str, payload: Any) -> str:
    if not isinstance(payload, dict):
        return str(payload)
    stage = stage.strip().lower()
    if stage == "start":
        parts = []
        for key in ("template", "provider"):
            if payload.get(key) is not None:
                parts.append(f"{key}={payload[key]}")
        return " ".join(parts) if parts else "start"
    if stage == "request":
        parts = []
        for key in ("dialect", "messages_count", "url"):
            if payload.get(key) is not None:
                parts.append(f"{key}={payload[key]}")
        return " ".join(parts) if parts else "request"
    if stage == "end":
        parts = []
        if payload.get("state") is not None:
            parts.append(f"state={payload['state']}")
        if payload.get("chars") is not None:
            parts.append(f"chars={payload['chars']}")
        preview = _preview_text(payload.get("completion_preview"))
        if preview is not None:
            parts.append(f"completion={preview}")
        return " ".join(parts) if parts else "end"
    if stage == "error":
        error = payload.get("error")
        return f"error={error}" if error is not None else "error"
    return f"keys={','.join(sorted(payload.keys()))}"


def _replay(trace_path: Path) -> int:
    if not trace_path.exists():
        print(f"trace file not found: {trace_path}", file=sys.stderr)
        return 1
    with trace_path.open("r", encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            raw = line.strip()
            if not raw:
                continue
            try:
                data = json.loads(raw)
            except json.JSONDecodeError as exc:
                print(f"line {line_no} parse error: {exc}", file=sys.stderr)
                continue
            ts = data.get("ts", "")
            stage = data.get("stage", "")
            summary = _summarize_stage(stage, data.get("payload", {}))
            print(f"{ts} {stage} {summary}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Replay a completion session trace (JSONL)")
    parser.add_argument("--session-id", required=True, help="session id to replay")
    parser.add_argument("--trace-dir", default=None, help="override trace directory")
    args = parser.parse_args(argv)

    trace_dir = resolve_trace_dir(args.trace_dir)
    if trace_dir is None:
        print("no trace directory: pass --trace-dir or set ASSIST_TRACE_DIR", file=sys.stderr)
        return 1
    return _replay(trace_dir / f"{args.session_id}.jsonl")


if __name__ == "__main__":
    raise SystemExit(main())

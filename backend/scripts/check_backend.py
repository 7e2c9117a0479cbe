#!/usr/bin/env python3
"""
Streaming self-check for the configured completion backend.

Sends one short chat request through the same request builder, transport and
decoder the service uses, and prints the decoded text.
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.completion.adapters.context_state import build_profile  # noqa: E402
from app.completion.adapters.transport_http import HttpStreamTransport, StreamTransportError  # noqa: E402
from app.completion.domain.models import Message, SamplingParams  # noqa: E402
from app.completion.services.request_builder import build_request  # noqa: E402
from app.completion.services.session import AbortHandle  # noqa: E402
from app.completion.services.stream_decoder import StreamDecoder  # noqa: E402
from app.config import settings  # noqa: E402


def _preview_text(text: str, limit: int = 120) -> str:
    cleaned = text.replace("\n", " ").strip()
    if len(cleaned) > limit:
        return f"{cleaned[:limit]}..."
    return cleaned


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Check streaming against the completion backend")
    parser.add_argument("--model", help="override ASSIST_MODEL")
    parser.add_argument("--prompt", default="ping", help="user message to send")
    parser.add_argument("--timeout-s", type=float, default=None, help="per-chunk timeout in seconds")
    args = parser.parse_args(argv)

    config = settings.model_copy(update={"assist_model": args.model}) if args.model else settings
    profile = build_profile(config)
    if profile is None:
        print("Error: ASSIST_MODEL and ASSIST_HOSTNAME must be set", file=sys.stderr)
        return 1

    request = build_request(
        profile,
        [Message(role="user", content=args.prompt)],
        SamplingParams(temperature=0.0, num_predict_chat=16),
    )
    decoder = StreamDecoder.for_provider(profile.provider)
    transport = HttpStreamTransport(timeout_s=args.timeout_s or config.assist_chunk_timeout_s)

    chunks = 0
    text = ""
    try:
        for line in transport.stream(request, AbortHandle()):
            chunks += 1
            text += decoder.decode(line)
    except StreamTransportError as exc:
        print(f"Error: backend stream failed: {exc}", file=sys.stderr)
        return 2
    except Exception as exc:  # noqa: BLE001
        print(f"Error: unexpected failure: {exc}", file=sys.stderr)
        return 3

    print(f"OK url: {request.options.url} dialect: {decoder.kind.value}")
    print(f"OK chunks: {chunks}")
    print(f"OK completion: {_preview_text(text)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import json
from typing import Any

from app.completion.adapters.provider_dialects import ProviderDialect, get_dialect
from app.completion.domain.models import ProviderKind

_DATA_PREFIX = "data:"
_DONE_MARKER = "[DONE]"


def is_stream_with_data_prefix(raw: str) -> bool:
    return raw.startswith(_DATA_PREFIX)


def safe_parse_json_response(raw: str | bytes) -> dict[str, Any] | None:
    """Parse one stream payload, returning ``None`` for anything not a JSON object.

    Chunks can split mid-object, so parse failures are expected and silent.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    text = raw.strip()
    if is_stream_with_data_prefix(text):
        text = text[len(_DATA_PREFIX) :].strip()
    if not text or text == _DONE_MARKER:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _decode_line(dialect: ProviderDialect, line: str) -> str:
    data = safe_parse_json_response(line)
    if data is None:
        return ""
    try:
        return dialect.extract_delta(data)
    except (AttributeError, IndexError, KeyError, TypeError):
        return ""


class StreamDecoder:
    """Delta extraction bound to one provider dialect."""

    def __init__(self, dialect: ProviderDialect) -> None:
        self._dialect = dialect

    @classmethod
    def for_provider(cls, provider: str | ProviderKind | None) -> "StreamDecoder":
        return cls(get_dialect(provider))

    @property
    def kind(self) -> ProviderKind:
        return self._dialect.kind

    def decode(self, raw_chunk: str | bytes) -> str:
        if isinstance(raw_chunk, bytes):
            raw_chunk = raw_chunk.decode("utf-8", errors="replace")
        lines = raw_chunk.splitlines() or [raw_chunk]
        if len(lines) == 1:
            return _decode_line(self._dialect, lines[0])
        return "".join(_decode_line(self._dialect, line) for line in lines if line.strip())


def extract_delta(provider: str | ProviderKind | None, raw_chunk: str | bytes) -> str:
    return StreamDecoder.for_provider(provider).decode(raw_chunk)

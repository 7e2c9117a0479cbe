from __future__ import annotations

import json
import time
import urllib.error
import urllib.request
from typing import TYPE_CHECKING, Iterator

from app.completion.adapters.collaborators import StreamTransport
from app.completion.domain.models import WireRequest
from app.logger import LOGGER

if TYPE_CHECKING:
    from app.completion.services.session import AbortHandle


class StreamTransportError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _payload_stats(body: dict) -> tuple[int, int]:
    messages = body.get("messages")
    if isinstance(messages, list):
        return len(messages), sum(len(str(m.get("content", ""))) for m in messages)
    return 0, len(str(body.get("prompt", "")))


class HttpStreamTransport(StreamTransport):
    """Streaming POST over urllib.

    Yields non-empty response lines in arrival order. The socket timeout bounds
    every individual read, so a stalled stream surfaces as an error.
    """

    def __init__(self, *, timeout_s: float = 60.0) -> None:
        self._timeout_s = timeout_s

    def stream(
        self,
        request: WireRequest,
        abort: "AbortHandle",
        timeout_s: float | None = None,
    ) -> Iterator[str]:
        timeout = timeout_s if timeout_s is not None else self._timeout_s
        url = request.options.url
        body = json.dumps(request.body).encode("utf-8")
        message_count, total_chars = _payload_stats(request.body)
        LOGGER.debug(
            "streaming request url=%s timeout_s=%s messages=%s total_chars=%s",
            url,
            timeout,
            message_count,
            total_chars,
        )

        http_request = urllib.request.Request(
            url,
            data=body,
            headers=dict(request.options.headers),
            method=request.options.method,
        )
        start = time.perf_counter()
        try:
            response = urllib.request.urlopen(http_request, timeout=timeout)
        except urllib.error.HTTPError as exc:
            raise StreamTransportError(
                f"Server responded with status code: {exc.code}", status_code=exc.code
            ) from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise StreamTransportError(f"connection to {url} failed: {exc}") from exc

        abort.on_abort(response.close)
        with response:
            try:
                for raw_line in response:
                    if abort.aborted:
                        break
                    line = raw_line.decode("utf-8", errors="replace").strip()
                    if line:
                        yield line
            except (TimeoutError, OSError, ValueError) as exc:
                if abort.aborted:
                    return
                raise StreamTransportError(f"stream from {url} interrupted: {exc}") from exc

        elapsed_ms = int((time.perf_counter() - start) * 1000)
        LOGGER.debug("stream closed url=%s latency_ms=%s aborted=%s", url, elapsed_ms, abort.aborted)

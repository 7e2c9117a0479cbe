from __future__ import annotations

from typing import Any, Iterable, Mapping

from app.completion.adapters.provider_dialects import get_dialect
from app.completion.domain.models import (
    BackendProfile,
    Message,
    RequestOptions,
    SamplingParams,
    WireRequest,
)


def build_headers(profile: BackendProfile) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if profile.api_key:
        headers["Authorization"] = f"Bearer {profile.api_key}"
    return headers


def build_request(
    profile: BackendProfile,
    messages: Iterable[Message | Mapping[str, Any]],
    sampling: SamplingParams | None = None,
) -> WireRequest:
    """Build the provider-shaped streaming request. Pure: no I/O, no state."""
    dialect = get_dialect(profile.provider)
    options = RequestOptions(
        hostname=profile.hostname,
        port=profile.port,
        path=profile.path,
        protocol=profile.protocol,
        method="POST",
        headers=build_headers(profile),
    )
    body = dialect.build_body(profile, list(messages), sampling or SamplingParams())
    return WireRequest(options=options, body=body)

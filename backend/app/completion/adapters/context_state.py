"""Stored context values (global, workspace and session scoped) kept in redis."""

from __future__ import annotations

import json
from typing import Any

from app.config import Settings, settings
from app.completion.domain.models import BackendProfile, PipelineConfig, SamplingParams

CONTEXT_SCOPES = ("global", "workspace", "session")

RERANK_THRESHOLD_KEY = "rerankThreshold"
ENABLE_RAG_KEY = "enableRag"
PEER_CONNECTION_KEY = "peerConnection"


def make_context_key(scope: str, key: str) -> str:
    if scope not in CONTEXT_SCOPES:
        raise ValueError(f"unknown context scope: {scope}")
    return f"assist:context:{scope}:{key}"


def _normalize_ttl(value: int) -> int:
    try:
        ttl = int(value)
    except Exception:
        ttl = 0
    return max(ttl, 0)


def get_context_value(redis_client: Any, scope: str, key: str) -> Any:
    redis_key = make_context_key(scope, key)
    if redis_client is None:
        return None
    raw = redis_client.get(redis_key)
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def set_context_value(redis_client: Any, scope: str, key: str, value: Any) -> None:
    redis_key = make_context_key(scope, key)
    if redis_client is None:
        return
    data = json.dumps(value, ensure_ascii=False, separators=(",", ":"))
    ttl = _normalize_ttl(settings.assist_session_context_ttl_sec) if scope == "session" else 0
    if ttl:
        redis_client.setex(redis_key, ttl, data)
    else:
        redis_client.set(redis_key, data)


def _coerce_float(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number else default


def build_profile(config: Settings) -> BackendProfile | None:
    if not config.assist_model or not config.assist_hostname:
        return None
    return BackendProfile(
        provider=config.assist_provider,
        hostname=config.assist_hostname,
        port=config.assist_port,
        path=config.assist_path,
        protocol=config.assist_protocol,
        api_key=config.assist_api_key,
        model_name=config.assist_model,
        keep_alive=config.assist_keep_alive,
    )


def load_pipeline_config(redis_client: Any, config: Settings | None = None) -> PipelineConfig:
    """Snapshot settings plus stored context into an explicit pipeline config."""
    config = config or settings
    stored_threshold = get_context_value(redis_client, "global", RERANK_THRESHOLD_KEY)
    return PipelineConfig(
        profile=build_profile(config),
        sampling=SamplingParams(
            temperature=config.assist_temperature,
            num_predict_chat=config.assist_num_predict_chat,
        ),
        rag_enabled=bool(get_context_value(redis_client, "workspace", ENABLE_RAG_KEY)),
        peer_route_active=bool(get_context_value(redis_client, "session", PEER_CONNECTION_KEY)),
        rerank_threshold=_coerce_float(stored_threshold, config.assist_rerank_threshold),
        chunk_timeout_s=config.assist_chunk_timeout_s,
        trace_dir=config.assist_trace_dir,
    )

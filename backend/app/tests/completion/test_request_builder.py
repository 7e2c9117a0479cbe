from __future__ import annotations

import pytest

from app.completion.adapters.provider_dialects import LlamaCppDialect
from app.completion.domain.models import BackendProfile, Message, SamplingParams
from app.completion.services.request_builder import build_request
from app.completion.services.stream_decoder import StreamDecoder


def _profile(provider: str, **overrides) -> BackendProfile:
    data = {
        "provider": provider,
        "hostname": "localhost",
        "port": 11434,
        "path": "/v1/chat/completions",
        "model_name": "codellama:7b",
    }
    data.update(overrides)
    return BackendProfile(**data)


MESSAGES = [
    Message(role="system", content="be brief"),
    Message(role="user", content="hi"),
]


def test_ollama_body_carries_options_and_keep_alive() -> None:
    request = build_request(
        _profile("ollama", keep_alive="5m"),
        MESSAGES,
        SamplingParams(temperature=0.1, num_predict_chat=64),
    )

    assert request.options.method == "POST"
    assert request.options.url == "http://localhost:11434/v1/chat/completions"
    assert request.body == {
        "model": "codellama:7b",
        "stream": True,
        "messages": [
            {"role": "system", "content": "be brief"},
            {"role": "user", "content": "hi"},
        ],
        "options": {"temperature": 0.1, "num_predict": 64},
        "keep_alive": "5m",
    }


def test_llamacpp_body_flattens_messages_into_prompt() -> None:
    request = build_request(_profile("llamacpp", port=8080, path="/completion"), MESSAGES)

    assert request.body["prompt"] == LlamaCppDialect.flatten_prompt(MESSAGES)
    assert request.body["prompt"].endswith("### Assistant:\n")
    assert request.body["n_predict"] == 512
    assert request.body["stream"] is True
    assert "messages" not in request.body


def test_litellm_body_uses_max_tokens() -> None:
    request = build_request(_profile("litellm", port=4000), MESSAGES)

    assert request.body["max_tokens"] == 512
    assert request.body["temperature"] == 0.2
    assert "options" not in request.body


def test_unknown_provider_uses_generic_openai_shape() -> None:
    request = build_request(_profile("somecloud", port=None, protocol="https"), MESSAGES)

    assert request.options.url == "https://localhost/v1/chat/completions"
    assert request.body["messages"][1] == {"role": "user", "content": "hi"}


def test_authorization_header_only_with_api_key() -> None:
    without_key = build_request(_profile("litellm"), MESSAGES)
    with_key = build_request(_profile("litellm", api_key="secret"), MESSAGES)

    assert "Authorization" not in without_key.options.headers
    assert with_key.options.headers["Authorization"] == "Bearer secret"
    assert with_key.options.headers["Content-Type"] == "application/json"


@pytest.mark.parametrize(
    ("provider", "body_keys", "chunk"),
    [
        (
            "ollama",
            {"model", "stream", "messages", "options"},
            '{"message": {"role": "assistant", "content": "hello"}}',
        ),
        (
            "openwebui",
            {"model", "stream", "messages", "options"},
            'data: {"choices": [{"delta": {"content": "hello"}}]}',
        ),
        (
            "llamacpp",
            {"prompt", "stream", "n_predict", "temperature", "cache_prompt"},
            'data: {"content": "hello", "stop": false}',
        ),
        (
            "litellm",
            {"model", "stream", "messages", "max_tokens", "temperature"},
            'data: {"choices": [{"delta": {"content": "hello"}}]}',
        ),
    ],
)
def test_built_request_and_decoder_share_a_dialect(provider: str, body_keys: set, chunk: str) -> None:
    profile = _profile(provider)

    request = build_request(profile, MESSAGES)
    decoder = StreamDecoder.for_provider(profile.provider)

    assert set(request.body) == body_keys
    assert request.body["stream"] is True
    assert decoder.kind.value == provider
    assert decoder.decode(chunk) == "hello"

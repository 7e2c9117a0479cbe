"""Per-provider wire dialects.

Each dialect knows how to shape a request body for its backend and how to pull
the text delta out of one decoded stream payload. A dialect is picked once per
backend profile with :func:`get_dialect`.
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from app.completion.domain.models import BackendProfile, Message, ProviderKind, SamplingParams

_UNDEFINED_LITERAL = "undefined"


def _message_dicts(messages: Iterable[Message | Mapping[str, Any]]) -> list[dict[str, Any]]:
    return [Message.model_validate(message).model_dump() for message in messages]


def _first_choice(data: Mapping[str, Any]) -> Mapping[str, Any] | None:
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    return first if isinstance(first, Mapping) else None


def _choice_delta_content(choice: Mapping[str, Any] | None) -> Any:
    if choice is None:
        return None
    delta = choice.get("delta")
    if isinstance(delta, Mapping):
        return delta.get("content")
    return None


def _as_text(value: Any) -> str:
    if not isinstance(value, str) or value == _UNDEFINED_LITERAL:
        return ""
    return value


class ProviderDialect:
    kind: ProviderKind = ProviderKind.GENERIC

    def build_body(
        self,
        profile: BackendProfile,
        messages: Iterable[Message | Mapping[str, Any]],
        sampling: SamplingParams,
    ) -> dict[str, Any]:
        raise NotImplementedError

    def extract_delta(self, data: Mapping[str, Any]) -> str:
        raise NotImplementedError


class OllamaDialect(ProviderDialect):
    kind = ProviderKind.OLLAMA

    def build_body(
        self,
        profile: BackendProfile,
        messages: Iterable[Message | Mapping[str, Any]],
        sampling: SamplingParams,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": profile.model_name,
            "stream": True,
            "messages": _message_dicts(messages),
            "options": {
                "temperature": sampling.temperature,
                "num_predict": sampling.num_predict_chat,
            },
        }
        if profile.keep_alive is not None:
            body["keep_alive"] = profile.keep_alive
        return body

    def extract_delta(self, data: Mapping[str, Any]) -> str:
        choice = _first_choice(data)
        if choice is not None:
            return _as_text(_choice_delta_content(choice))
        message = data.get("message")
        if isinstance(message, Mapping):
            return _as_text(message.get("content"))
        # fill-in-middle / generate endpoint
        return _as_text(data.get("response"))


class OpenWebUIDialect(OllamaDialect):
    kind = ProviderKind.OPENWEBUI


class LlamaCppDialect(ProviderDialect):
    kind = ProviderKind.LLAMACPP

    _ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}

    def build_body(
        self,
        profile: BackendProfile,
        messages: Iterable[Message | Mapping[str, Any]],
        sampling: SamplingParams,
    ) -> dict[str, Any]:
        return {
            "prompt": self.flatten_prompt(messages),
            "stream": True,
            "n_predict": sampling.num_predict_chat,
            "temperature": sampling.temperature,
            "cache_prompt": True,
        }

    @classmethod
    def flatten_prompt(cls, messages: Iterable[Message | Mapping[str, Any]]) -> str:
        blocks = [
            f"### {cls._ROLE_LABELS[item['role']]}:\n{item['content']}"
            for item in _message_dicts(messages)
        ]
        blocks.append("### Assistant:\n")
        return "\n\n".join(blocks)

    def extract_delta(self, data: Mapping[str, Any]) -> str:
        return _as_text(data.get("content"))


class LiteLLMDialect(ProviderDialect):
    kind = ProviderKind.LITELLM

    def build_body(
        self,
        profile: BackendProfile,
        messages: Iterable[Message | Mapping[str, Any]],
        sampling: SamplingParams,
    ) -> dict[str, Any]:
        return {
            "model": profile.model_name,
            "stream": True,
            "messages": _message_dicts(messages),
            "max_tokens": sampling.num_predict_chat,
            "temperature": sampling.temperature,
        }

    def extract_delta(self, data: Mapping[str, Any]) -> str:
        return _as_text(_choice_delta_content(_first_choice(data)))


class GenericDialect(LiteLLMDialect):
    kind = ProviderKind.GENERIC

    def extract_delta(self, data: Mapping[str, Any]) -> str:
        choice = _first_choice(data)
        if choice is None:
            return ""
        content = _choice_delta_content(choice)
        if content is None:
            content = choice.get("text")
        return _as_text(content)


_DIALECTS: dict[ProviderKind, ProviderDialect] = {
    ProviderKind.OLLAMA: OllamaDialect(),
    ProviderKind.OPENWEBUI: OpenWebUIDialect(),
    ProviderKind.LLAMACPP: LlamaCppDialect(),
    ProviderKind.LITELLM: LiteLLMDialect(),
    ProviderKind.GENERIC: GenericDialect(),
}


def get_dialect(provider: str | ProviderKind | None) -> ProviderDialect:
    return _DIALECTS[ProviderKind.resolve(provider)]

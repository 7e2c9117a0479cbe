from __future__ import annotations

import json
from typing import Any, Iterable, Mapping

from app.completion.domain.constants import PEER_EMITTER_KEY_INFERENCE, PEER_MESSAGE_INFERENCE
from app.completion.domain.models import Message


def create_peer_message(key: str, data: Any = None) -> str:
    return json.dumps({"key": key, "data": data}, ensure_ascii=False)


def create_inference_message(messages: Iterable[Message | Mapping[str, Any]]) -> str:
    payload = {
        "messages": [Message.model_validate(message).model_dump() for message in messages],
        "key": PEER_EMITTER_KEY_INFERENCE,
    }
    return create_peer_message(PEER_MESSAGE_INFERENCE, payload)

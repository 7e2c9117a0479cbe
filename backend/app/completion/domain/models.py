from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.completion.domain.constants import (
    DEFAULT_CHUNK_MAX_SIZE,
    DEFAULT_CHUNK_MIN_SIZE,
    DEFAULT_CHUNK_OVERLAP,
    DEFAULT_RERANK_THRESHOLD,
)


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["system", "user", "assistant"]
    content: str = ""


class ProviderKind(str, Enum):
    OLLAMA = "ollama"
    OPENWEBUI = "openwebui"
    LLAMACPP = "llamacpp"
    LITELLM = "litellm"
    GENERIC = "generic"

    @classmethod
    def resolve(cls, value: "str | ProviderKind | None") -> "ProviderKind":
        if isinstance(value, ProviderKind):
            return value
        normalized = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == normalized:
                return kind
        return cls.GENERIC


class BackendProfile(BaseModel):
    provider: str
    hostname: str
    port: Optional[int] = None
    path: str = "/v1/chat/completions"
    protocol: str = "http"
    api_key: Optional[str] = None
    model_name: str
    keep_alive: str | int | None = None

    @property
    def provider_kind(self) -> ProviderKind:
        return ProviderKind.resolve(self.provider)


class SamplingParams(BaseModel):
    temperature: float = 0.2
    num_predict_chat: int = 512


class RequestOptions(BaseModel):
    hostname: str
    port: Optional[int] = None
    path: str
    protocol: str = "http"
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)

    @property
    def url(self) -> str:
        scheme = self.protocol.rstrip(":/") or "http"
        host = f"{self.hostname}:{self.port}" if self.port else self.hostname
        path = self.path if self.path.startswith("/") else f"/{self.path}"
        return f"{scheme}://{host}{path}"


class WireRequest(BaseModel):
    options: RequestOptions
    body: dict[str, Any] = Field(default_factory=dict)


class RetrievalCandidate(BaseModel):
    content: str
    path: Optional[str] = None
    similarity_score: float = 0.0


class ChunkOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_size: int = Field(default=DEFAULT_CHUNK_MIN_SIZE, ge=0)
    max_size: int = Field(default=DEFAULT_CHUNK_MAX_SIZE, gt=0)
    overlap: int = Field(default=DEFAULT_CHUNK_OVERLAP, ge=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> "ChunkOptions":
        if self.overlap >= self.max_size:
            raise ValueError(
                f"chunk overlap ({self.overlap}) must be smaller than max_size ({self.max_size})"
            )
        if self.min_size > self.max_size:
            raise ValueError(
                f"chunk min_size ({self.min_size}) must not exceed max_size ({self.max_size})"
            )
        return self


class PipelineConfig(BaseModel):
    profile: Optional[BackendProfile] = None
    sampling: SamplingParams = Field(default_factory=SamplingParams)
    rag_enabled: bool = False
    peer_route_active: bool = False
    rerank_threshold: float = DEFAULT_RERANK_THRESHOLD
    chunk_timeout_s: float = Field(default=60.0, gt=0)
    trace_dir: Optional[str] = None

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping, Protocol, Sequence

from app.completion.domain.models import WireRequest

if TYPE_CHECKING:
    from app.completion.services.session import AbortHandle


class EmbeddingStore(Protocol):
    def has_table(self, name: str) -> bool:
        ...

    def embed(self, text: str) -> Sequence[float] | None:
        ...

    def query(
        self,
        vector: Sequence[float],
        k: int,
        table: str,
        filter_expr: str | None = None,
    ) -> Sequence[Mapping[str, Any]] | None:
        ...


class Reranker(Protocol):
    def rerank(self, query: str, candidates: Sequence[str]) -> Sequence[float] | None:
        ...


class TemplateRenderer(Protocol):
    def render(self, name: str, variables: Mapping[str, Any]) -> str:
        ...

    def render_system_message(self, name: str | None = None) -> str:
        ...


class PeerTransport(Protocol):
    def write(self, envelope: str) -> None:
        ...

    def on(self, key: str, handler: Callable[[str], None]) -> None:
        ...


class StreamTransport(Protocol):
    def stream(
        self,
        request: WireRequest,
        abort: "AbortHandle",
        timeout_s: float | None = None,
    ) -> Iterator[str]:
        raise NotImplementedError

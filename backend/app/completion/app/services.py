from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Iterator, Mapping

from pydantic import ValidationError
from redis.exceptions import RedisError

from app.completion.adapters.collaborators import (
    EmbeddingStore,
    PeerTransport,
    Reranker,
    StreamTransport,
    TemplateRenderer,
)
from app.completion.adapters.context_state import (
    get_context_value,
    load_pipeline_config,
    set_context_value,
)
from app.completion.adapters.repos_sql import CompletionRepoSQL
from app.completion.adapters.templates import FileTemplateRenderer
from app.completion.adapters.transport_http import HttpStreamTransport
from app.completion.domain.events import (
    CompletionEnded,
    CompletionErrored,
    CompletionIncremental,
    LifecycleEvent,
    event_to_message,
)
from app.completion.domain.models import ChunkOptions, Message, PipelineConfig
from app.completion.services.chunker import get_document_split_chunks
from app.completion.services.controller import CompletionController
from app.completion.services.retrieval import RetrievalEngine
from app.config import settings
from app.deps import get_engine, get_redis
from app.logger import LOGGER

_DONE = object()


@dataclass(frozen=True)
class CompletionServiceError(Exception):
    status_code: int
    detail: str


class CompletionService:
    """
    HTTP-facing wrapper around one ``CompletionController``.

    Each streaming request runs its session on a worker thread; lifecycle
    events raised on that thread are routed to the request's queue and
    yielded as UI messages. A peer-routed request stays open until the peer
    answers on its own thread, or the chunk timeout runs out.
    """

    def __init__(
        self,
        *,
        redis_client: Any,
        transport: StreamTransport,
        templates: TemplateRenderer,
        store: EmbeddingStore | None = None,
        reranker: Reranker | None = None,
        peer: PeerTransport | None = None,
        repo: CompletionRepoSQL | None = None,
        workspace_name: str | None = None,
    ) -> None:
        self.redis = redis_client
        self._local = threading.local()
        self._peer_lock = threading.Lock()
        self._peer_sink: queue.Queue | None = None
        config = self._load_config(None)
        retrieval = RetrievalEngine(
            store,
            reranker,
            workspace_name=workspace_name,
            rerank_threshold=config.rerank_threshold,
        )
        self.controller = CompletionController(
            config,
            transport=transport,
            templates=templates,
            retrieval=retrieval,
            peer=peer,
            on_event=self._route_event,
            repo=repo,
        )

    def _load_config(self, fallback: PipelineConfig | None) -> PipelineConfig:
        try:
            return load_pipeline_config(self.redis)
        except RedisError as exc:
            LOGGER.warning("stored context unavailable, using settings only: %s", exc)
            if fallback is not None:
                return fallback
            return load_pipeline_config(None)

    def refresh_config(self) -> None:
        self.controller.update_config(self._load_config(self.controller.config))

    def _route_event(self, event: LifecycleEvent) -> None:
        # peer replies carry no session id and arrive on the peer's thread
        if isinstance(event, CompletionIncremental) and event.session_id is None:
            with self._peer_lock:
                peer_sink = self._peer_sink
            if peer_sink is not None:
                peer_sink.put(event)
                return
        sink = getattr(self._local, "sink", None)
        if sink is None:
            LOGGER.debug("dropping %s with no listening request", type(event).__name__)
            return
        sink.put(event)

    def _stream(self, peer_route: bool, run: Callable[[], Any]) -> Iterator[dict[str, Any]]:
        events: queue.Queue = queue.Queue()
        timeout_s = self.controller.config.chunk_timeout_s if peer_route else None
        if peer_route:
            with self._peer_lock:
                self._peer_sink = events

        def worker() -> None:
            self._local.sink = events
            done = not peer_route
            try:
                if run() is not None:
                    done = True
            except Exception as exc:  # noqa: BLE001 - reported to the client as onError
                LOGGER.exception("completion worker failed")
                events.put(CompletionErrored(session_id="", error_message=str(exc)))
                done = True
            finally:
                self._local.sink = None
                if done:
                    events.put(_DONE)

        thread = threading.Thread(target=worker, name="completion-session", daemon=True)
        thread.start()
        finished = False
        try:
            while True:
                try:
                    event = events.get(timeout=timeout_s)
                except queue.Empty:
                    LOGGER.warning("peer gave no answer within %ss", timeout_s)
                    yield event_to_message(CompletionErrored(session_id="", error_message="peer_timeout"))
                    finished = True
                    break
                if event is _DONE:
                    finished = True
                    break
                yield event_to_message(event)
                if peer_route and isinstance(event, CompletionIncremental) and event.session_id is None:
                    yield event_to_message(CompletionEnded(session_id="", completion=event.completion))
                    finished = True
                    break
        finally:
            if peer_route:
                with self._peer_lock:
                    if self._peer_sink is events:
                        self._peer_sink = None
            if not finished and thread.is_alive():
                LOGGER.info("client went away, cancelling active completion")
                self.controller.cancel()

    def _require_profile(self) -> None:
        if self.controller.config.profile is None:
            raise CompletionServiceError(status_code=503, detail="no_backend_profile")

    def stream_chat(
        self,
        messages: list[Mapping[str, Any]],
        *,
        selection: str | None = None,
        language: str | None = None,
        template: str | None = None,
    ) -> Iterator[dict[str, Any]]:
        try:
            conversation = [Message.model_validate(message) for message in messages]
        except ValidationError as exc:
            raise CompletionServiceError(status_code=422, detail="invalid_messages") from exc
        if not conversation:
            raise CompletionServiceError(status_code=400, detail="empty_messages_not_allowed")

        self.refresh_config()
        peer_route = self.controller.uses_peer_route()
        if not peer_route:
            self._require_profile()

        return self._stream(
            peer_route,
            lambda: self.controller.stream_chat_completion(
                conversation, selection=selection, language=language, template=template
            )
        )

    def stream_template(
        self,
        template: str,
        *,
        context: str | None = None,
        selection: str | None = None,
        language: str | None = None,
    ) -> Iterator[dict[str, Any]]:
        if not template.strip():
            raise CompletionServiceError(status_code=400, detail="empty_template_not_allowed")

        self.refresh_config()
        peer_route = self.controller.uses_peer_route()
        if not peer_route:
            self._require_profile()

        return self._stream(
            peer_route,
            lambda: self.controller.stream_template_completion(
                template, context=context, selection=selection, language=language
            )
        )

    def stop(self) -> dict[str, Any]:
        session = self.controller.active_session
        self.controller.cancel()
        return {"cancelled": session is not None, "session_id": session.session_id if session else None}

    def new_conversation(self) -> dict[str, Any]:
        self.controller.new_conversation()
        return {"status": "ok"}

    def get_context(self, scope: str, key: str) -> dict[str, Any]:
        try:
            value = get_context_value(self.redis, scope, key)
        except ValueError as exc:
            raise CompletionServiceError(status_code=400, detail=str(exc)) from exc
        return {"scope": scope, "key": key, "value": value}

    def set_context(self, scope: str, key: str, value: Any) -> dict[str, Any]:
        try:
            set_context_value(self.redis, scope, key, value)
        except ValueError as exc:
            raise CompletionServiceError(status_code=400, detail=str(exc)) from exc
        self.refresh_config()
        return {"scope": scope, "key": key, "value": value}

    def chunk(
        self,
        content: str,
        file_path: str,
        options: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        try:
            chunk_options = ChunkOptions.model_validate(dict(options or {}))
        except ValidationError as exc:
            raise CompletionServiceError(status_code=400, detail="invalid_chunk_options") from exc
        chunks = get_document_split_chunks(content, file_path, chunk_options)
        return {"file_path": file_path, "chunks": chunks}


@lru_cache
def _build_completion_service() -> CompletionService:
    repo = CompletionRepoSQL(get_engine()) if settings.database_url else None
    return CompletionService(
        redis_client=get_redis(),
        transport=HttpStreamTransport(timeout_s=settings.assist_chunk_timeout_s),
        templates=FileTemplateRenderer(settings.assist_template_dir),
        repo=repo,
        workspace_name=settings.assist_workspace_name,
    )


def get_completion_service() -> CompletionService:
    return _build_completion_service()

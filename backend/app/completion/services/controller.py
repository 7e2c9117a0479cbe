from __future__ import annotations

import threading
from typing import Any, Callable, Iterable, Mapping

from sqlalchemy.exc import SQLAlchemyError

from app.completion.adapters.collaborators import PeerTransport, StreamTransport, TemplateRenderer
from app.completion.adapters.peer import create_inference_message, create_peer_message
from app.completion.adapters.repos_sql import CompletionRepoSQL
from app.completion.domain.constants import (
    PEER_EMITTER_KEY_INFERENCE,
    PEER_MESSAGE_NEW_CONVERSATION,
    RAG_TEMPLATES,
    SYSTEM,
    USER,
)
from app.completion.domain.events import (
    CompletionEnded,
    CompletionErrored,
    CompletionIncremental,
    CompletionStarted,
    EventHandler,
    LifecycleEvent,
)
from app.completion.domain.models import BackendProfile, Message, PipelineConfig
from app.completion.services.request_builder import build_request
from app.completion.services.retrieval import RetrievalEngine
from app.completion.services.session import CompletionSession, SessionState
from app.completion.services.stream_decoder import StreamDecoder
from app.completion.services.trace_logger import SessionTrace
from app.logger import LOGGER

OnEnd = Callable[[str], None]


def _ignore_event(event: LifecycleEvent) -> None:
    return None


class CompletionController:
    """
    Drives one completion at a time: route selection, prompt augmentation,
    request building, streaming and lifecycle events.

    Starting a session aborts any session that is still streaming, so at most
    one transport stream is live per controller.
    """

    def __init__(
        self,
        config: PipelineConfig,
        *,
        transport: StreamTransport,
        templates: TemplateRenderer,
        retrieval: RetrievalEngine | None = None,
        peer: PeerTransport | None = None,
        on_event: EventHandler | None = None,
        repo: CompletionRepoSQL | None = None,
    ) -> None:
        self._config = config
        self._transport = transport
        self._templates = templates
        self._retrieval = retrieval
        self._peer = peer
        self._on_event = on_event or _ignore_event
        self._repo = repo
        self._lock = threading.Lock()
        self._session: CompletionSession | None = None
        if self._retrieval is not None:
            self._retrieval.rerank_threshold = config.rerank_threshold
        self._setup_peer_listeners()

    @property
    def config(self) -> PipelineConfig:
        return self._config

    def update_config(self, config: PipelineConfig) -> None:
        self._config = config
        if self._retrieval is not None:
            self._retrieval.rerank_threshold = config.rerank_threshold

    @property
    def active_session(self) -> CompletionSession | None:
        with self._lock:
            session = self._session
        if session is not None and session.active:
            return session
        return None

    # --- peer route ---
    def _setup_peer_listeners(self) -> None:
        if self._peer is None:
            return
        self._peer.on(PEER_EMITTER_KEY_INFERENCE, self._on_peer_completion)

    def _on_peer_completion(self, completion: str) -> None:
        self._emit(CompletionIncremental(completion=str(completion or "").lstrip()))

    def uses_peer_route(self, config: PipelineConfig | None = None) -> bool:
        """True when requests under ``config`` go to the peer instead of the backend."""
        config = config or self._config
        return config.peer_route_active and self._peer is not None

    def _peer_for(self, config: PipelineConfig) -> PeerTransport | None:
        if not config.peer_route_active:
            return None
        if self._peer is None:
            LOGGER.warning("peer route is active but no peer transport is attached, using direct route")
        return self._peer

    def _send_to_peer(self, peer: PeerTransport, messages: list[Message]) -> None:
        LOGGER.info("using peer route for inference, messages=%s", len(messages))
        peer.write(create_inference_message(messages))

    def new_conversation(self) -> None:
        if self._peer is None:
            return
        self._peer.write(create_peer_message(PEER_MESSAGE_NEW_CONVERSATION))

    # --- prompt assembly ---
    def get_rag_context(self, text: str | None) -> str | None:
        config = self._config
        if not config.rag_enabled or config.peer_route_active or self._retrieval is None:
            return None

        relevant_files = self._retrieval.get_relevant_files(text)
        relevant_code = self._retrieval.get_relevant_code(
            text, relevant_files, threshold=config.rerank_threshold
        )

        combined = ""
        if relevant_files:
            files_block = self._templates.render(
                "relevant-files", {"code": ", ".join(path for path, _ in relevant_files)}
            )
            combined += f"{files_block}\n\n"
        if relevant_code:
            combined += self._templates.render("relevant-code", {"code": relevant_code})

        return combined.strip() or None

    def _system_message(self, template: str | None) -> Message:
        return Message(role=SYSTEM, content=self._templates.render_system_message(template))

    def _augment_chat_messages(
        self,
        conversation: list[Message],
        selection: str | None,
        template: str | None,
    ) -> list[Message]:
        last_message = conversation[-1]
        additional_context = ""
        if selection:
            additional_context += f"Selected Code:\n{selection}\n\n"
        rag_context = self.get_rag_context(last_message.content)
        if rag_context:
            additional_context += f"Additional Context:\n{rag_context}\n\n"

        updated = [self._system_message(template), *conversation[:-1]]
        if additional_context:
            updated.append(
                Message(
                    role=USER,
                    content=f"{last_message.content}\n\n{additional_context.strip()}",
                )
            )
        else:
            updated.append(last_message)
        return updated

    def get_template_messages(
        self,
        template: str,
        *,
        context: str | None = None,
        selection: str | None = None,
        language: str | None = None,
    ) -> list[Message]:
        selection_context = selection or context or ""
        prompt = self._templates.render(
            template, {"code": selection_context, "language": language or "unknown"}
        )
        rag_context = self.get_rag_context(selection_context) if template in RAG_TEMPLATES else None
        user_content = f"{prompt}\n\nAdditional Context:\n{rag_context}" if rag_context else prompt
        return [self._system_message(template), Message(role=USER, content=user_content)]

    # --- entry points ---
    def stream_chat_completion(
        self,
        messages: Iterable[Message | Mapping[str, Any]],
        *,
        selection: str | None = None,
        language: str | None = None,
        template: str | None = None,
    ) -> CompletionSession | None:
        """Stream a chat answer for ``messages``.

        Returns the finished session, or ``None`` when nothing was sent over
        the direct route (peer-routed, empty conversation, no backend profile).
        """
        conversation = [Message.model_validate(message) for message in messages]
        if not conversation:
            return None

        config = self._config
        peer = self._peer_for(config)
        if peer is not None:
            self._send_to_peer(peer, [self._system_message(template), *conversation])
            return None
        profile = config.profile
        if profile is None:
            LOGGER.warning("no active backend profile, completion request not sent")
            return None

        session = self._begin_session(
            template_id=template, language=language, config=config, profile=profile
        )
        return self._run_stream(
            session,
            config,
            profile,
            lambda: self._augment_chat_messages(conversation, selection, template),
        )

    def stream_template_completion(
        self,
        template: str,
        *,
        context: str | None = None,
        selection: str | None = None,
        language: str | None = None,
        on_end: OnEnd | None = None,
    ) -> CompletionSession | None:
        """Stream a template completion.

        With ``on_end`` set no incremental events are emitted and the final
        text goes to ``on_end``; a failing ``on_end`` is logged, never raised.
        """
        config = self._config

        def prepare() -> list[Message]:
            return self.get_template_messages(
                template, context=context, selection=selection, language=language
            )

        peer = self._peer_for(config)
        if peer is not None:
            self._send_to_peer(peer, prepare())
            return None
        profile = config.profile
        if profile is None:
            LOGGER.warning("no active backend profile, template completion not sent")
            return None

        session = self._begin_session(
            template_id=template, language=language, config=config, profile=profile
        )
        return self._run_stream(session, config, profile, prepare, on_end)

    def cancel(self) -> None:
        session = self.active_session
        if session is None:
            LOGGER.debug("cancel requested with no active completion session")
            return
        LOGGER.info("cancelling completion session %s", session.session_id)
        session.abort_handle.abort()

    # --- session lifecycle ---
    def _emit(self, event: LifecycleEvent) -> None:
        self._on_event(event)

    def _begin_session(
        self,
        *,
        template_id: str | None,
        language: str | None,
        config: PipelineConfig,
        profile: BackendProfile,
    ) -> CompletionSession:
        session = CompletionSession(template_id=template_id, language=language)
        with self._lock:
            previous, self._session = self._session, session
        if previous is not None and previous.active:
            LOGGER.info("aborting completion session %s before starting a new one", previous.session_id)
            previous.abort_handle.abort()

        if self._repo is not None:
            try:
                self._repo.insert_session(
                    session.session_id,
                    template=template_id,
                    route="direct",
                    options={
                        "provider": profile.provider,
                        "model": profile.model_name,
                        "rag_enabled": config.rag_enabled,
                    },
                )
            except SQLAlchemyError as exc:
                LOGGER.warning("failed to record completion session %s: %s", session.session_id, exc)
        return session

    def _run_stream(
        self,
        session: CompletionSession,
        config: PipelineConfig,
        profile: BackendProfile,
        prepare: Callable[[], list[Message]],
        on_end: OnEnd | None = None,
    ) -> CompletionSession:
        trace = SessionTrace(session.session_id, config.trace_dir)
        abort = session.abort_handle

        self._emit(
            CompletionStarted(
                session_id=session.session_id,
                template=session.template_id,
                language=session.language,
            )
        )
        trace.start(template=session.template_id, provider=profile.provider, rag_enabled=config.rag_enabled)

        stream = None
        try:
            messages = prepare()
            if abort.aborted:
                return self._finish(session, SessionState.CANCELLED, trace)

            request = build_request(profile, messages, config.sampling)
            decoder = StreamDecoder.for_provider(profile.provider)
            trace.request(request, dialect=decoder.kind.value, messages_count=len(messages))

            stream = self._transport.stream(request, abort, timeout_s=config.chunk_timeout_s)
            for chunk in stream:
                if abort.aborted:
                    break
                completion = session.append(decoder.decode(chunk))
                if on_end is None:
                    self._emit(
                        CompletionIncremental(
                            completion=completion.lstrip(),
                            session_id=session.session_id,
                            template=session.template_id,
                            language=session.language,
                        )
                    )
        except Exception as exc:
            if abort.aborted:
                return self._finish(session, SessionState.CANCELLED, trace)
            LOGGER.warning("completion session %s failed: %s", session.session_id, exc)
            return self._fail(session, str(exc) or type(exc).__name__, trace)
        finally:
            close = getattr(stream, "close", None)
            if callable(close):
                close()

        if abort.aborted:
            return self._finish(session, SessionState.CANCELLED, trace)
        return self._finish(session, SessionState.COMPLETED, trace, on_end)

    def _release(self, session: CompletionSession) -> None:
        with self._lock:
            if self._session is session:
                self._session = None

    def _record_finish(self, session: CompletionSession) -> None:
        if self._repo is None:
            return
        try:
            self._repo.finish_session(
                session.session_id,
                status=session.state.value,
                completion=session.final_text,
                error=session.error_message,
            )
        except SQLAlchemyError as exc:
            LOGGER.warning("failed to finish completion session record %s: %s", session.session_id, exc)

    def _finish(
        self,
        session: CompletionSession,
        state: SessionState,
        trace: SessionTrace,
        on_end: OnEnd | None = None,
    ) -> CompletionSession:
        if not session.active:
            return session
        text = session.close(state)
        self._release(session)
        self._record_finish(session)
        trace.end(state, text)

        handed_off = on_end is not None and state is SessionState.COMPLETED
        if on_end is not None and handed_off:
            try:
                on_end(text)
            except Exception:  # noqa: BLE001 - caller callback, the session is already closed
                LOGGER.exception("on_end handler failed for completion session %s", session.session_id)

        self._emit(
            CompletionEnded(
                session_id=session.session_id,
                completion=None if handed_off else text.lstrip(),
                cancelled=state is SessionState.CANCELLED,
                template=session.template_id,
                language=session.language,
            )
        )
        return session

    def _fail(self, session: CompletionSession, message: str, trace: SessionTrace) -> CompletionSession:
        if not session.active:
            return session
        session.close(SessionState.ERRORED, error_message=message)
        self._release(session)
        self._record_finish(session)
        trace.error(message)
        self._emit(CompletionErrored(session_id=session.session_id, error_message=message))
        return session

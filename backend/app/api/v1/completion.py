from __future__ import annotations

import json
from typing import Any, Iterator, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from app.completion.app.services import (
    CompletionService,
    CompletionServiceError,
    get_completion_service,
)

router = APIRouter(prefix="/completion", tags=["completion"])
context_router = APIRouter(tags=["context"])


class ChatMessage(BaseModel):
    role: str
    content: str = ""


class ChatCompletionReq(BaseModel):
    messages: list[ChatMessage] = Field(default_factory=list)
    selection: Optional[str] = None
    language: Optional[str] = None
    template: Optional[str] = None


class TemplateCompletionReq(BaseModel):
    template: str
    context: Optional[str] = None
    selection: Optional[str] = None
    language: Optional[str] = None


class StopResp(BaseModel):
    cancelled: bool
    session_id: Optional[str] = None


class ContextValueReq(BaseModel):
    value: Any = None


class ContextValueResp(BaseModel):
    scope: str
    key: str
    value: Any = None


class ChunkReq(BaseModel):
    content: str
    file_path: str
    options: dict[str, Any] = Field(default_factory=dict)


class ChunkResp(BaseModel):
    file_path: str
    chunks: list[str] = Field(default_factory=list)


def _sse(messages: Iterator[dict[str, Any]]) -> Iterator[str]:
    for message in messages:
        yield f"data: {json.dumps(message, ensure_ascii=False)}\n\n"


def _event_stream(messages: Iterator[dict[str, Any]]) -> StreamingResponse:
    return StreamingResponse(
        _sse(messages),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.post("/chat")
def completion_chat(
    req: ChatCompletionReq,
    service: CompletionService = Depends(get_completion_service),
) -> StreamingResponse:
    try:
        messages = service.stream_chat(
            [message.model_dump() for message in req.messages],
            selection=req.selection,
            language=req.language,
            template=req.template,
        )
    except CompletionServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    return _event_stream(messages)


@router.post("/template")
def completion_template(
    req: TemplateCompletionReq,
    service: CompletionService = Depends(get_completion_service),
) -> StreamingResponse:
    try:
        messages = service.stream_template(
            req.template,
            context=req.context,
            selection=req.selection,
            language=req.language,
        )
    except CompletionServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc
    return _event_stream(messages)


@router.post("/stop", response_model=StopResp)
def completion_stop(service: CompletionService = Depends(get_completion_service)) -> StopResp:
    return StopResp(**service.stop())


@router.post("/new-conversation")
def completion_new_conversation(
    service: CompletionService = Depends(get_completion_service),
) -> dict[str, Any]:
    return service.new_conversation()


@context_router.get("/context/{scope}/{key}", response_model=ContextValueResp)
def get_context(
    scope: str,
    key: str,
    service: CompletionService = Depends(get_completion_service),
) -> ContextValueResp:
    try:
        return ContextValueResp(**service.get_context(scope, key))
    except CompletionServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


@context_router.put("/context/{scope}/{key}", response_model=ContextValueResp)
def put_context(
    scope: str,
    key: str,
    req: ContextValueReq,
    service: CompletionService = Depends(get_completion_service),
) -> ContextValueResp:
    try:
        return ContextValueResp(**service.set_context(scope, key, req.value))
    except CompletionServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc


@context_router.post("/chunks", response_model=ChunkResp)
def create_chunks(
    req: ChunkReq,
    service: CompletionService = Depends(get_completion_service),
) -> ChunkResp:
    try:
        return ChunkResp(**service.chunk(req.content, req.file_path, req.options))
    except CompletionServiceError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.detail) from exc

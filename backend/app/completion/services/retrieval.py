from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping, Sequence

from app.completion.adapters.collaborators import EmbeddingStore, Reranker
from app.completion.domain.constants import (
    DEFAULT_RERANK_THRESHOLD,
    DOCUMENTS_TABLE_SUFFIX,
    FILE_PATHS_TABLE_SUFFIX,
    MAX_HYDRATE_FILE_SIZE,
    RELEVANT_CODE_COUNT,
    RELEVANT_FILE_COUNT,
)
from app.completion.domain.models import RetrievalCandidate
from app.logger import LOGGER

FileScore = tuple[str, float]


def _clamp_int(v: Any, default: int, lo: int, hi: int) -> int:
    try:
        n = int(v)
    except Exception:
        n = default
    if n < lo:
        return lo
    if n > hi:
        return hi
    return n


def build_file_filter(paths: Sequence[str]) -> str | None:
    if not paths:
        return None
    quoted = '","'.join(path.replace('"', '\\"') for path in paths)
    return f'file IN ("{quoted}")'


def read_file_content(path: str | None, max_file_size: int = MAX_HYDRATE_FILE_SIZE) -> str | None:
    """Read a whole file for prompt hydration.

    Oversized files return ``None`` (skipped, never truncated); empty files
    return ``""``. I/O errors propagate to the caller.
    """
    if not path:
        return None
    size = os.stat(path).st_size
    if size > max_file_size:
        return None
    if size == 0:
        return ""
    return Path(path).read_text(encoding="utf-8")


class RetrievalEngine:
    """
    Two-stage retrieval against the workspace embedding index:
    file paths first, then code fragments restricted to those files.
    Nothing is cached between calls.
    """

    def __init__(
        self,
        store: EmbeddingStore | None,
        reranker: Reranker | None,
        *,
        workspace_name: str | None,
        rerank_threshold: float = DEFAULT_RERANK_THRESHOLD,
        relevant_file_count: int = RELEVANT_FILE_COUNT,
        relevant_code_count: int = RELEVANT_CODE_COUNT,
        max_file_size: int = MAX_HYDRATE_FILE_SIZE,
    ) -> None:
        self._store = store
        self._reranker = reranker
        self._workspace_name = workspace_name
        self.rerank_threshold = rerank_threshold
        self._relevant_file_count = _clamp_int(relevant_file_count, RELEVANT_FILE_COUNT, 1, 200)
        self._relevant_code_count = _clamp_int(relevant_code_count, RELEVANT_CODE_COUNT, 1, 200)
        self._max_file_size = max_file_size

    def _table(self, suffix: str) -> str:
        return f"{self._workspace_name}-{suffix}"

    def _ready(self, query: str | None) -> bool:
        return bool(self._store is not None and self._reranker is not None and query and self._workspace_name)

    def _lookup(
        self, query: str, table: str, k: int, filter_expr: str | None = None
    ) -> list[Mapping[str, Any]]:
        if self._store is None or not self._store.has_table(table):
            LOGGER.debug("embedding table missing: %s", table)
            return []
        embedding = self._store.embed(query)
        if not embedding:
            return []
        documents = self._store.query(embedding, k, table, filter_expr) or []
        return [doc for doc in documents if isinstance(doc, Mapping)]

    def _rerank(self, query: str, texts: list[str]) -> list[float] | None:
        if self._reranker is None:
            return None
        scores = self._reranker.rerank(query, texts)
        if not scores:
            return None
        return [float(score) for score in scores]

    def get_relevant_files(self, query: str | None) -> list[FileScore]:
        """Return ``(path, score)`` pairs in store order (not sorted by score)."""
        if query is None or not self._ready(query):
            return []
        try:
            documents = self._lookup(
                query, self._table(FILE_PATHS_TABLE_SUFFIX), self._relevant_file_count
            )
            file_paths = [str(doc.get("content") or "") for doc in documents]
            file_paths = [path for path in file_paths if path]
            if not file_paths:
                return []

            LOGGER.debug("reranking %s file candidates, threshold=%s", len(file_paths), self.rerank_threshold)
            scores = self._rerank(query, [os.path.basename(path) for path in file_paths])
        except Exception as exc:  # noqa: BLE001 - retrieval never fails the request
            LOGGER.warning("file retrieval failed: %s", exc)
            return []
        if scores is None:
            return []
        return [(path, score) for path, score in zip(file_paths, scores)]

    def get_relevant_code(
        self,
        query: str | None,
        relevant_files: Sequence[FileScore] | None = None,
        *,
        threshold: float | None = None,
    ) -> str:
        if query is None or not self._ready(query):
            return ""
        threshold = self.rerank_threshold if threshold is None else threshold
        relevant_files = list(relevant_files or [])

        try:
            documents = self._lookup(
                query,
                self._table(DOCUMENTS_TABLE_SUFFIX),
                self._relevant_code_count,
                build_file_filter([path for path, _ in relevant_files]),
            )
            candidates = [
                RetrievalCandidate(content=str(doc.get("content") or ""), path=doc.get("file") or doc.get("path"))
                for doc in documents
            ]
            scores: list[float] | None = []
            if candidates:
                scores = self._rerank(query, [candidate.content.strip() for candidate in candidates])
        except Exception as exc:  # noqa: BLE001 - retrieval never fails the request
            LOGGER.warning("code retrieval failed: %s", exc)
            return ""
        if scores is None:
            return ""

        file_chunks: list[str] = []
        for path, score in relevant_files:
            if score <= threshold:
                continue
            try:
                content = read_file_content(path, self._max_file_size)
            except (OSError, UnicodeDecodeError) as exc:
                LOGGER.warning("error reading file %s: %s", path, exc)
                continue
            if content:
                file_chunks.append(content)

        scored = [
            candidate.model_copy(update={"similarity_score": score})
            for candidate, score in zip(candidates, scores)
        ]
        code_chunks = [
            candidate.content
            for candidate in scored
            if candidate.similarity_score > threshold and candidate.content
        ]

        return "\n\n".join(["\n".join(file_chunks), "\n".join(code_chunks)]).strip()

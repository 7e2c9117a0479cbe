"""Document chunking for retrieval indexes.

Syntax-aware splitting uses tree-sitter grammars when one exists for the file
extension; everything else goes through a sliding byte window.
"""

from __future__ import annotations

from pathlib import PurePath
from typing import TYPE_CHECKING, Any

from tree_sitter_language_pack import get_parser as _load_parser

from app.completion.domain.models import ChunkOptions
from app.logger import LOGGER

if TYPE_CHECKING:
    from tree_sitter import Node, Parser

LANGUAGE_BY_SUFFIX = {
    ".py": "python",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".kt": "kotlin",
    ".swift": "swift",
    ".lua": "lua",
    ".sh": "bash",
}

_PARSERS: dict[str, "Parser"] = {}


def _resolve_options(options: ChunkOptions | dict[str, Any] | None) -> ChunkOptions:
    if options is None:
        return ChunkOptions()
    if isinstance(options, ChunkOptions):
        return options
    return ChunkOptions.model_validate(options)


def get_parser(file_path: str) -> "Parser | None":
    language = LANGUAGE_BY_SUFFIX.get(PurePath(file_path).suffix.lower())
    if language is None:
        return None
    if language not in _PARSERS:
        _PARSERS[language] = _load_parser(language)
    return _PARSERS[language]


def get_split_chunks(root: "Node", source: bytes, options: ChunkOptions) -> list[str]:
    min_size, max_size = options.min_size, options.max_size
    chunks: list[str] = []
    stack = [root]
    while stack:
        node = stack.pop()
        node_text = source[node.start_byte : node.end_byte].decode("utf-8", errors="replace")
        if min_size <= len(node_text) <= max_size:
            chunks.append(node_text)
        elif node.child_count > 0:
            stack.extend(reversed(node.children))
        elif len(node_text) > max_size:
            for start in range(0, len(node_text), max_size):
                chunks.append(node_text[start : start + max_size])
    return chunks


def combine_chunks(
    chunks: list[str], options: ChunkOptions | dict[str, Any] | None = None
) -> list[str]:
    opts = _resolve_options(options)
    min_size, max_size, overlap = opts.min_size, opts.max_size, opts.overlap
    result: list[str] = []
    current = ""

    for chunk in chunks:
        if not chunk:
            continue
        joined = f"{current} {chunk}" if current else chunk
        if len(joined) <= max_size:
            current = joined
            continue

        if not current:
            # a single fragment already over the limit is passed through as is
            result.append(chunk)
            continue

        seed = current[-overlap:] if overlap else ""
        if len(current) < min_size:
            # undersized: fill up to max_size, the rest starts the next chunk
            room = max_size - len(current) - 1
            if room > 0:
                current = f"{current} {chunk[:room]}"
                chunk = chunk[room:]
            seed = ""

        result.append(current)
        if not chunk:
            current = ""
        elif seed and len(seed) + 1 + len(chunk) <= max_size:
            current = f"{seed} {chunk}"
        else:
            current = chunk

    if len(current) >= min_size and current:
        result.append(current)

    return result


def simple_chunk(content: str, options: ChunkOptions | dict[str, Any] | None = None) -> list[str]:
    opts = _resolve_options(options)
    min_size, max_size, overlap = opts.min_size, opts.max_size, opts.overlap
    chunks: list[str] = []
    start = 0

    while start < len(content):
        end = min(start + max_size, len(content))
        chunks.append(content[start:end])
        if end == len(content):
            break
        start = end - overlap

    last = len(chunks) - 1
    return [chunk for index, chunk in enumerate(chunks) if len(chunk) >= min_size or index == last]


def get_document_split_chunks(
    content: str,
    file_path: str,
    options: ChunkOptions | dict[str, Any] | None = None,
) -> list[str]:
    """Split ``content`` into retrieval-sized fragments.

    Raises ``ValueError`` (from option validation) when ``overlap >= max_size``;
    parser problems never escape and fall back to :func:`simple_chunk`.
    """
    opts = _resolve_options(options)
    if not content:
        return []

    try:
        parser = get_parser(file_path)
        if parser is None:
            return simple_chunk(content, opts)
        source = content.encode("utf-8")
        tree = parser.parse(source)
        chunks = get_split_chunks(tree.root_node, source, opts)
        return combine_chunks(chunks, opts)
    except Exception as exc:  # noqa: BLE001 - grammar/load failures degrade to windowing
        LOGGER.warning("failed to parse %s, using window chunking: %s", file_path, exc)
        return simple_chunk(content, opts)

from __future__ import annotations

RELEVANT_FILE_COUNT = 10
RELEVANT_CODE_COUNT = 5
DEFAULT_RERANK_THRESHOLD = 0.47
MAX_HYDRATE_FILE_SIZE = 5 * 1024

DEFAULT_CHUNK_MIN_SIZE = 50
DEFAULT_CHUNK_MAX_SIZE = 500
DEFAULT_CHUNK_OVERLAP = 50

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"

PEER_EMITTER_KEY_INFERENCE = "inference"
PEER_MESSAGE_INFERENCE = "inference"
PEER_MESSAGE_NEW_CONVERSATION = "newConversation"

# templates whose selection is also used as a retrieval query
RAG_TEMPLATES = frozenset({"explain"})

FILE_PATHS_TABLE_SUFFIX = "file-paths"
DOCUMENTS_TABLE_SUFFIX = "documents"

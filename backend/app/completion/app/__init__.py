from app.completion.app.services import (
    CompletionService,
    CompletionServiceError,
    get_completion_service,
)

__all__ = [
    "CompletionService",
    "CompletionServiceError",
    "get_completion_service",
]

from __future__ import annotations

import json

from sqlalchemy import text
from sqlalchemy.engine import Engine


class CompletionRepoSQL:
    """
    Records one row per completion session in ``completion_sessions``.
    Plain SQL through ``text()``; the engine comes from ``app.deps``.
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def insert_session(
        self,
        session_id: str,
        *,
        template: str | None,
        route: str,
        options: dict | None = None,
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    INSERT INTO completion_sessions (id, template, route, options, status)
                    VALUES (:id, :template, :route, CAST(:options AS jsonb), 'streaming')
                    """
                ),
                {
                    "id": session_id,
                    "template": template,
                    "route": route,
                    "options": json.dumps(options or {}),
                },
            )

    def finish_session(
        self,
        session_id: str,
        *,
        status: str,
        completion: str | None,
        error: str | None = None,
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    """
                    UPDATE completion_sessions
                    SET status = :status,
                        completion = :completion,
                        error = :error,
                        finished_at = now()
                    WHERE id = :id
                    """
                ),
                {
                    "id": session_id,
                    "status": status,
                    "completion": completion,
                    "error": error,
                },
            )

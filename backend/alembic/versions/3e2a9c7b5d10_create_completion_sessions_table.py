"""create completion_sessions table

Revision ID: 3e2a9c7b5d10
Revises:
Create Date: 2026-10-18 10:42:11.208113

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3e2a9c7b5d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

def upgrade() -> None:
    op.execute("""
    CREATE EXTENSION IF NOT EXISTS pgcrypto;

    CREATE TABLE IF NOT EXISTS completion_sessions (
        id uuid PRIMARY KEY DEFAULT gen_random_uuid(),

        template text NULL,
        route text NOT NULL DEFAULT 'direct',    -- direct|peer
        options jsonb NOT NULL DEFAULT '{}'::jsonb,

        status text NOT NULL DEFAULT 'streaming', -- streaming|completed|cancelled|errored
        completion text NULL,
        error text NULL,

        created_at timestamptz NOT NULL DEFAULT now(),
        finished_at timestamptz NULL
    );

    CREATE INDEX IF NOT EXISTS idx_completion_sessions_created_at
        ON completion_sessions (created_at DESC);

    CREATE INDEX IF NOT EXISTS idx_completion_sessions_status
        ON completion_sessions (status);
    """)


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS completion_sessions;")

"""Baseline — users, repositories, migrations, migration_jobs.

Revision ID: 0001_baseline
Revises: None
Create Date: 2026-10-17

Idempotent (IF NOT EXISTS throughout) so it can run against a database that
already carries the tables.
"""
from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001_baseline"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    op.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            github_login    VARCHAR(255) NOT NULL,
            access_token    TEXT,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS repositories (
            id                SERIAL PRIMARY KEY,
            user_id           UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            owner             VARCHAR(255) NOT NULL,
            name              VARCHAR(255) NOT NULL,
            full_name         VARCHAR(511) NOT NULL,
            default_branch    VARCHAR(255) NOT NULL DEFAULT 'main',
            migration_status  VARCHAR(20) NOT NULL DEFAULT 'PENDING'
                CHECK (migration_status IN
                    ('PENDING', 'ANALYZING', 'READY', 'MIGRATING', 'COMPLETED', 'FAILED')),
            created_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at        TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (user_id, full_name)
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_repositories_user_owner_name "
        "ON repositories(user_id, owner, name)"
    )

    op.execute("""
        CREATE TABLE IF NOT EXISTS migrations (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            repository_id   INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
            user_id         UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            name            VARCHAR(200) NOT NULL,
            description     TEXT,
            type            VARCHAR(50) NOT NULL,
            source_version  VARCHAR(50),
            target_version  VARCHAR(50),
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)

    op.execute("""
        CREATE TABLE IF NOT EXISTS migration_jobs (
            id              UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            repository_id   INTEGER NOT NULL REFERENCES repositories(id) ON DELETE CASCADE,
            user_id         UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
            migration_id    UUID NOT NULL REFERENCES migrations(id),
            status          VARCHAR(20) NOT NULL DEFAULT 'PENDING'
                CHECK (status IN
                    ('PENDING', 'ANALYZING', 'READY', 'MIGRATING', 'COMPLETED', 'FAILED')),
            progress        INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
            files_changed   JSONB NOT NULL DEFAULT '[]'::jsonb,
            created_at      TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at      TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    """)
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_migration_jobs_repository_created "
        "ON migration_jobs(repository_id, created_at DESC)"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS migration_jobs")
    op.execute("DROP TABLE IF EXISTS migrations")
    op.execute("DROP TABLE IF EXISTS repositories")
    op.execute("DROP TABLE IF EXISTS users")

"""Add repository cache and refresh log tables

Creates repository_cache (one row per cluster) and refresh_log (one row per
refresh attempt).

Revision ID: add_repository_cache
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from typing import Sequence, Union

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "add_repository_cache"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS repository_cache (
            id BIGSERIAL PRIMARY KEY,
            cluster_key VARCHAR(255) NOT NULL,
            member_names JSONB NOT NULL DEFAULT '[]'::jsonb,
            payload JSONB,
            fetched_at TIMESTAMP WITH TIME ZONE,
            expires_at TIMESTAMP WITH TIME ZONE,
            status VARCHAR(20) NOT NULL DEFAULT 'ok',
            last_error TEXT,
            error_count INTEGER NOT NULL DEFAULT 0,
            refreshing_since TIMESTAMP WITH TIME ZONE,
            updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_repository_cache_status
                CHECK (status IN ('ok', 'refreshing', 'error'))
        )
    """
    )
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_repository_cache_cluster_key ON repository_cache (cluster_key)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_repository_cache_fetched_at ON repository_cache (fetched_at)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_repository_cache_status ON repository_cache (status)"
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS refresh_log (
            id BIGSERIAL PRIMARY KEY,
            cluster_key VARCHAR(255) NOT NULL,
            outcome VARCHAR(20) NOT NULL,
            repo_count INTEGER,
            error_message TEXT,
            rate_limit_remaining INTEGER,
            rate_limit_reset TIMESTAMP WITH TIME ZONE,
            duration_ms INTEGER,
            attempted_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            CONSTRAINT ck_refresh_log_outcome CHECK (outcome IN ('success', 'failure'))
        )
    """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_refresh_log_cluster_key ON refresh_log (cluster_key)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_refresh_log_attempted_at ON refresh_log (attempted_at)"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_refresh_log_outcome ON refresh_log (outcome)"
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS refresh_log CASCADE")
    op.execute("DROP TABLE IF EXISTS repository_cache CASCADE")

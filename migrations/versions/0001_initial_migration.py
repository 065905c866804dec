"""Initial migration

Revision ID: 0001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create projects table
    op.create_table(
        "projects",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("repo_url", sa.String(length=500), nullable=False),
        sa.Column("repo_token", sa.Text(), nullable=True),
        sa.Column("monthly_cost_limit_usd", sa.Float(), nullable=True),
        sa.Column("alert_threshold_percent", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    # Create indexing_jobs table
    op.create_table(
        "indexing_jobs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("locked_at", sa.String(length=50), nullable=True),
        sa.Column("locked_by", sa.String(length=100), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.String(length=50), nullable=False),
        sa.Column("updated_at", sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", name="uq_indexing_jobs_project_id"),
    )
    op.create_index(
        "idx_indexing_jobs_status_locked", "indexing_jobs", ["status", "locked_at"]
    )
    op.create_index("idx_indexing_jobs_created_at", "indexing_jobs", ["created_at"])

    # Create code_embeddings table
    op.create_table(
        "code_embeddings",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("file_name", sa.String(length=1000), nullable=False),
        sa.Column("source_code", sa.Text(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=False),
        sa.Column("embedding_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_code_embeddings_project", "code_embeddings", ["project_id"])

    # Create query_metrics table
    op.create_table(
        "query_metrics",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("project_id", sa.String(length=64), nullable=False),
        sa.Column("route_type", sa.String(length=20), nullable=False),
        sa.Column("model_used", sa.String(length=100), nullable=False),
        sa.Column("prompt_tokens", sa.Integer(), nullable=False),
        sa.Column("completion_tokens", sa.Integer(), nullable=False),
        sa.Column("total_tokens", sa.Integer(), nullable=False),
        sa.Column("retrieval_count", sa.Integer(), nullable=False),
        sa.Column("memory_hit_count", sa.Integer(), nullable=False),
        sa.Column("latency_ms", sa.Integer(), nullable=False),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("cache_hit", sa.Boolean(), nullable=False),
        sa.Column("was_cold_start", sa.Boolean(), nullable=False),
        sa.Column("avg_memory_similarity", sa.Float(), nullable=True),
        sa.Column("created_at", sa.String(length=50), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_query_metrics_project_created", "query_metrics", ["project_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_query_metrics_project_created", table_name="query_metrics")
    op.drop_table("query_metrics")

    op.drop_index("idx_code_embeddings_project", table_name="code_embeddings")
    op.drop_table("code_embeddings")

    op.drop_index("idx_indexing_jobs_created_at", table_name="indexing_jobs")
    op.drop_index("idx_indexing_jobs_status_locked", table_name="indexing_jobs")
    op.drop_table("indexing_jobs")

    op.drop_table("projects")

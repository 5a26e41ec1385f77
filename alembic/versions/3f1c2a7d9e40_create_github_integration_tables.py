"""create github integration tables

Revision ID: 3f1c2a7d9e40
Revises:
Create Date: 2026-10-18 09:12:44.108215

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3f1c2a7d9e40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "github_connection",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("project_id", sa.Integer(), nullable=False),
        sa.Column("repository_full_name", sa.String(), nullable=False),
        sa.Column("repository_url", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("webhook_status", sa.String(), nullable=False),
        sa.Column("webhook_id", sa.Integer(), nullable=True),
        sa.Column("error_count", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("access_token_encrypted", sa.String(), nullable=False),
        sa.Column("webhook_secret", sa.String(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_webhook_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_github_connection_project_id"),
        "github_connection",
        ["project_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_github_connection_repository_full_name"),
        "github_connection",
        ["repository_full_name"],
        unique=False,
    )
    op.create_index(
        "uq_live_connection",
        "github_connection",
        ["project_id", "repository_full_name"],
        unique=True,
        postgresql_where=sa.text("status != 'DISCONNECTED'"),
    )

    op.create_table(
        "github_commit",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("sha", sa.String(), nullable=False),
        sa.Column("connection_id", sa.Integer(), nullable=False),
        sa.Column("author_name", sa.String(), nullable=True),
        sa.Column("author_email", sa.String(), nullable=True),
        sa.Column("author_username", sa.String(), nullable=True),
        sa.Column("committer_name", sa.String(), nullable=True),
        sa.Column("committer_email", sa.String(), nullable=True),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("branch_name", sa.String(), nullable=True),
        sa.Column("additions", sa.Integer(), nullable=True),
        sa.Column("deletions", sa.Integer(), nullable=True),
        sa.Column("changed_files", sa.Integer(), nullable=True),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("committed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["connection_id"], ["github_connection.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_github_commit_sha"), "github_commit", ["sha"], unique=True)
    op.create_index(
        op.f("ix_github_commit_connection_id"),
        "github_commit",
        ["connection_id"],
        unique=False,
    )

    op.create_table(
        "github_pull_request",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("connection_id", sa.Integer(), nullable=False),
        sa.Column("number", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("author_username", sa.String(), nullable=True),
        sa.Column("head_branch", sa.String(), nullable=True),
        sa.Column("base_branch", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("merged", sa.Boolean(), nullable=False),
        sa.Column("additions", sa.Integer(), nullable=True),
        sa.Column("deletions", sa.Integer(), nullable=True),
        sa.Column("changed_files", sa.Integer(), nullable=True),
        sa.Column("review_comments", sa.Integer(), nullable=False),
        sa.Column("url", sa.String(), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("merged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["connection_id"], ["github_connection.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "connection_id", "number", name="uq_pull_request_identity"
        ),
    )
    op.create_index(
        op.f("ix_github_pull_request_connection_id"),
        "github_pull_request",
        ["connection_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_github_pull_request_number"),
        "github_pull_request",
        ["number"],
        unique=False,
    )

    op.create_table(
        "github_task_link",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.Integer(), nullable=False),
        sa.Column("link_type", sa.String(), nullable=False),
        sa.Column("reference_text", sa.String(), nullable=True),
        sa.Column("auto_status_update", sa.Boolean(), nullable=False),
        sa.Column("commit_id", sa.Integer(), nullable=True),
        sa.Column("pull_request_id", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "(commit_id IS NULL) <> (pull_request_id IS NULL)",
            name="ck_task_link_single_source",
        ),
        sa.ForeignKeyConstraint(["commit_id"], ["github_commit.id"]),
        sa.ForeignKeyConstraint(["pull_request_id"], ["github_pull_request.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "commit_id", "task_id", "link_type", name="uq_task_link_commit"
        ),
        sa.UniqueConstraint(
            "pull_request_id", "task_id", "link_type", name="uq_task_link_pull_request"
        ),
    )
    op.create_index(
        op.f("ix_github_task_link_task_id"), "github_task_link", ["task_id"], unique=False
    )
    op.create_index(
        op.f("ix_github_task_link_commit_id"),
        "github_task_link",
        ["commit_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_github_task_link_pull_request_id"),
        "github_task_link",
        ["pull_request_id"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("github_task_link")
    op.drop_table("github_pull_request")
    op.drop_table("github_commit")
    op.drop_index("uq_live_connection", table_name="github_connection")
    op.drop_table("github_connection")

"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-18

Users, videos, notifications, and the database-backed job queue tables.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("username", sa.String(100), unique=True, nullable=False),
        sa.Column("role", sa.String(20), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("role IN ('user', 'admin')", name="ck_users_role"),
    )
    op.create_index("ix_users_role", "users", ["role"])

    op.create_table(
        "videos",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("video_id", sa.String(255), unique=True, nullable=False),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("uploader_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("hls_path", sa.String(1024), nullable=True),
        sa.Column("duration", sa.Float, server_default="0"),
        sa.Column("thumbnail", sa.String(1024), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.Column("updated_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("status IN ('pending', 'processing', 'live', 'failed')", name="ck_videos_status"),
    )
    op.create_index("ix_videos_status", "videos", ["status"])
    op.create_index("ix_videos_uploader_id", "videos", ["uploader_id"])

    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("type", sa.String(32), nullable=False),
        sa.Column("target_id", sa.String(64), nullable=True),
        sa.Column("read", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True)),
        sa.CheckConstraint("type IN ('video_ready', 'transcoding_failed')", name="ck_notifications_type"),
    )
    op.create_index("ix_notifications_user_id", "notifications", ["user_id"])

    op.create_table(
        "transcode_jobs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("input_path", sa.String(1024), nullable=False),
        sa.Column("output_dir", sa.String(1024), nullable=False),
        sa.Column("video_id", sa.String(255), nullable=False),
        sa.Column("video_doc_id", sa.String(64), nullable=False),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="1"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("backoff_base", sa.Float, nullable=False, server_default="1.0"),
        sa.Column("backoff_factor", sa.Float, nullable=False, server_default="2.0"),
        sa.Column("enqueued_at", sa.DateTime(timezone=True)),
        sa.Column("available_at", sa.DateTime(timezone=True)),
        sa.Column("claimed_by", sa.String(100), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
    )
    op.create_index("ix_transcode_jobs_available_at", "transcode_jobs", ["available_at"])
    op.create_index("ix_transcode_jobs_claim_expires", "transcode_jobs", ["claim_expires_at"])

    op.create_table(
        "worker_leases",
        sa.Column("slot", sa.Integer, primary_key=True),
        sa.Column("holder", sa.String(100), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("worker_leases")
    op.drop_index("ix_transcode_jobs_claim_expires", table_name="transcode_jobs")
    op.drop_index("ix_transcode_jobs_available_at", table_name="transcode_jobs")
    op.drop_table("transcode_jobs")
    op.drop_index("ix_notifications_user_id", table_name="notifications")
    op.drop_table("notifications")
    op.drop_index("ix_videos_uploader_id", table_name="videos")
    op.drop_index("ix_videos_status", table_name="videos")
    op.drop_table("videos")
    op.drop_index("ix_users_role", table_name="users")
    op.drop_table("users")

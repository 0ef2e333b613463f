from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


users = sa.Table(
    "users",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("username", sa.String(100), unique=True, nullable=False),
    sa.Column(
        "role",
        sa.String(20),
        sa.CheckConstraint("role IN ('user', 'admin')", name="ck_users_role"),
        default="user",
        nullable=False,
    ),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Index("ix_users_role", "role"),
)

videos = sa.Table(
    "videos",
    metadata,
    # Document-style string id (durable record id carried in the job as video_doc_id)
    sa.Column("id", sa.String(64), primary_key=True),
    # Public video id, also the name of the HLS package directory
    sa.Column("video_id", sa.String(255), unique=True, nullable=False),
    sa.Column("title", sa.String(255), nullable=False, default=""),
    sa.Column("uploader_id", sa.Integer, sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'live', 'failed')",
            name="ck_videos_status",
        ),
        default="pending",
        nullable=False,
    ),  # pending, processing, live, failed
    sa.Column("hls_path", sa.String(1024), nullable=True),  # set only on success
    sa.Column("duration", sa.Float, default=0),  # seconds
    sa.Column("thumbnail", sa.String(1024), nullable=True),
    sa.Column("error_message", sa.Text, nullable=True),
    sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),  # set only on terminal failure
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Index("ix_videos_status", "status"),
    sa.Index("ix_videos_uploader_id", "uploader_id"),
)

notifications = sa.Table(
    "notifications",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("user_id", sa.Integer, sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    sa.Column("message", sa.Text, nullable=False),
    sa.Column(
        "type",
        sa.String(32),
        sa.CheckConstraint(
            "type IN ('video_ready', 'transcoding_failed')",
            name="ck_notifications_type",
        ),
        nullable=False,
    ),
    sa.Column("target_id", sa.String(64), nullable=True),
    sa.Column("read", sa.Boolean, default=False, nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), default=utcnow),
    sa.Index("ix_notifications_user_id", "user_id"),
)

# Database-backed job queue (used when JOB_QUEUE_MODE=database)
transcode_jobs = sa.Table(
    "transcode_jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("input_path", sa.String(1024), nullable=False),
    sa.Column("output_dir", sa.String(1024), nullable=False),
    sa.Column("video_id", sa.String(255), nullable=False),
    sa.Column("video_doc_id", sa.String(64), nullable=False),
    # Retry tracking (attempt is 1-based: the attempt that will run next)
    sa.Column("attempt", sa.Integer, default=1, nullable=False),
    sa.Column("max_attempts", sa.Integer, default=3, nullable=False),
    sa.Column("backoff_base", sa.Float, default=1.0, nullable=False),
    sa.Column("backoff_factor", sa.Float, default=2.0, nullable=False),
    sa.Column("enqueued_at", sa.DateTime(timezone=True), default=utcnow),
    # Delayed redelivery
    sa.Column("available_at", sa.DateTime(timezone=True), default=utcnow),
    # Job claiming
    sa.Column("claimed_by", sa.String(100), nullable=True),
    sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("claim_expires_at", sa.DateTime(timezone=True), nullable=True),
    # Terminal states
    sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("last_error", sa.Text, nullable=True),
    sa.Index("ix_transcode_jobs_available_at", "available_at"),
    sa.Index("ix_transcode_jobs_claim_expires", "claim_expires_at"),
)

# Global encode lease slots (row per slot; at most WORKER_CONCURRENCY rows are ever held)
worker_leases = sa.Table(
    "worker_leases",
    metadata,
    sa.Column("slot", sa.Integer, primary_key=True),
    sa.Column("holder", sa.String(100), nullable=False),
    sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
)


def create_tables(url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(url)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")

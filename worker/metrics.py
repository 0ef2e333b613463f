"""
Prometheus metrics for the transcode worker.

Exposed over HTTP on VIDSTREAM_METRICS_PORT when it is non-zero.
"""

import logging

from prometheus_client import Counter, Gauge, Histogram, Info, start_http_server

from config import METRICS_PORT

logger = logging.getLogger(__name__)

APP_INFO = Info("vidstream_worker", "vidstream transcode worker information")

# =============================================================================
# Transcoding Metrics
# =============================================================================

TRANSCODE_JOBS_TOTAL = Counter(
    "vidstream_transcode_jobs_total",
    "Total transcode job outcomes",
    ["result"],  # completed, retried, failed, duplicate
)

TRANSCODE_JOBS_ACTIVE = Gauge(
    "vidstream_transcode_jobs_active",
    "Transcode jobs currently running in this worker",
)

TRANSCODE_JOB_DURATION_SECONDS = Histogram(
    "vidstream_transcode_job_duration_seconds",
    "Wall time of one transcode attempt",
    buckets=[30, 60, 120, 300, 600, 1200, 1800, 3600, 7200],
)

TRANSCODE_STAGE_DURATION_SECONDS = Histogram(
    "vidstream_transcode_stage_duration_seconds",
    "Time spent in each job state",
    ["stage"],  # claimed, validating, encoding, finalizing
    buckets=[0.1, 0.5, 1, 5, 30, 60, 300, 1200, 3600],
)

RENDITIONS_ENCODED_TOTAL = Counter(
    "vidstream_renditions_encoded_total",
    "Renditions published in live packages",
    ["rendition"],
)

# =============================================================================
# Side effects
# =============================================================================

NOTIFICATIONS_TOTAL = Counter(
    "vidstream_notifications_total",
    "Notification dispatches from the worker",
    ["type", "result"],  # result: sent, failed
)

CLEANUP_ERRORS_TOTAL = Counter(
    "vidstream_cleanup_errors_total",
    "Artifacts that could not be removed after a failure",
)

LEASE_LOST_TOTAL = Counter(
    "vidstream_lease_lost_total",
    "Heartbeats that found the encode lease gone",
)


def init_app_info(worker_id: str, queue_backend: str, version: str = "0.1.0"):
    APP_INFO.info({"version": version, "worker_id": worker_id, "queue_backend": queue_backend})


def start_metrics_server(port: int = METRICS_PORT) -> bool:
    """Start the Prometheus HTTP endpoint. Returns False when disabled."""
    if not port:
        return False
    start_http_server(port)
    logger.info(f"Metrics endpoint listening on :{port}")
    return True

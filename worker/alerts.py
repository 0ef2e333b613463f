"""
Operational alerts for the transcode worker.

Provides webhook notifications for:
- Jobs failing terminally (retries exhausted or unrecoverable input)
- Repeated retryable failures for the same video
- Worker startup and shutdown

Includes rate limiting to prevent alert flooding. Alerts are for operators;
user-facing messages go through the notifier bridge.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Dict, Optional, Set

import httpx

from api.errors import truncate_error
from config import ALERT_RATE_LIMIT_SECONDS, ALERT_WEBHOOK_TIMEOUT, ALERT_WEBHOOK_URL, ERROR_DETAIL_MAX_LENGTH

logger = logging.getLogger(__name__)

# Failures of one video before a retryable failure is worth an alert
REPEATED_FAILURE_THRESHOLD = 2


class AlertType(str, Enum):
    """Types of alerts that can be sent."""

    JOB_FAILED_TERMINAL = "job_failed_terminal"
    JOB_REPEATED_FAILURES = "job_repeated_failures"
    WORKER_STARTUP = "worker_startup"
    WORKER_SHUTDOWN = "worker_shutdown"


@dataclass
class AlertMetrics:
    """Tracks counters for alert payloads and rate limiting."""

    jobs_failed_terminal: int = 0
    jobs_failed_retryable: int = 0
    alerts_sent: int = 0
    alerts_rate_limited: int = 0
    alerts_failed: int = 0

    # Last alert timestamps by type (for rate limiting)
    last_alert_time: Dict[str, float] = field(default_factory=dict)

    # Retryable failures per public video id
    video_failure_counts: Dict[str, int] = field(default_factory=dict)

    def increment_failed(self, video_id: str, terminal: bool) -> int:
        """Count a failure; returns the video's failure count so far."""
        if terminal:
            self.jobs_failed_terminal += 1
        else:
            self.jobs_failed_retryable += 1
        self.video_failure_counts[video_id] = self.video_failure_counts.get(video_id, 0) + 1
        return self.video_failure_counts[video_id]

    def clear_video(self, video_id: str) -> None:
        self.video_failure_counts.pop(video_id, None)

    def can_send_alert(self, alert_type: str, rate_limit_seconds: int = ALERT_RATE_LIMIT_SECONDS) -> bool:
        last_time = self.last_alert_time.get(alert_type, 0)
        return (time.time() - last_time) >= rate_limit_seconds

    def record_alert_sent(self, alert_type: str):
        self.last_alert_time[alert_type] = time.time()
        self.alerts_sent += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobs_failed_terminal": self.jobs_failed_terminal,
            "jobs_failed_retryable": self.jobs_failed_retryable,
            "alerts_sent": self.alerts_sent,
            "alerts_rate_limited": self.alerts_rate_limited,
            "alerts_failed": self.alerts_failed,
            "videos_with_failures": len(self.video_failure_counts),
        }


_metrics: Optional[AlertMetrics] = None
# Strong references so pending alert tasks are not garbage collected
_pending_alerts: Set[asyncio.Task] = set()


def get_metrics() -> AlertMetrics:
    """Get or create the global alert metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = AlertMetrics()
    return _metrics


def reset_metrics():
    """Reset metrics (for testing)."""
    global _metrics
    _metrics = AlertMetrics()


def send_alert_fire_and_forget(coro: Awaitable[Any]) -> None:
    """
    Schedule an alert coroutine as a background task.

    Alert failures never reach the worker; they are logged at debug level.
    """

    async def _safe_send():
        try:
            await coro
        except Exception as e:
            logger.debug(f"Failed to send alert (fire-and-forget): {e}")

    try:
        task = asyncio.get_running_loop().create_task(_safe_send())
    except RuntimeError:
        logger.debug("Cannot send alert: no running event loop")
        coro.close()
        return
    _pending_alerts.add(task)
    task.add_done_callback(_pending_alerts.discard)


async def send_webhook_alert(
    alert_type: AlertType,
    details: Dict[str, Any],
    force: bool = False,
    webhook_url: Optional[str] = None,
) -> bool:
    """
    Send an alert to the configured webhook URL.

    Args:
        alert_type: Type of alert being sent
        details: Additional details about the alert
        force: If True, bypass rate limiting
        webhook_url: Override VIDSTREAM_ALERT_WEBHOOK_URL

    Returns:
        True if alert was sent successfully, False otherwise
    """
    webhook_url = ALERT_WEBHOOK_URL if webhook_url is None else webhook_url
    if not webhook_url:
        return False

    metrics = get_metrics()

    if not force and not metrics.can_send_alert(alert_type.value):
        metrics.alerts_rate_limited += 1
        logger.debug(f"Alert {alert_type.value} rate limited")
        return False

    payload = {
        "event": alert_type.value,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "details": details,
        "metrics": metrics.to_dict(),
    }

    try:
        async with httpx.AsyncClient(timeout=ALERT_WEBHOOK_TIMEOUT) as client:
            response = await client.post(webhook_url, json=payload)
            response.raise_for_status()
    except httpx.TimeoutException:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook timed out after {ALERT_WEBHOOK_TIMEOUT}s")
        return False
    except httpx.HTTPStatusError as e:
        metrics.alerts_failed += 1
        logger.warning(f"Alert webhook returned error: {e.response.status_code}")
        return False
    except httpx.HTTPError as e:
        metrics.alerts_failed += 1
        logger.warning(f"Failed to send alert webhook: {e}")
        return False

    metrics.record_alert_sent(alert_type.value)
    logger.info(f"Alert sent: {alert_type.value}")
    return True


async def alert_job_failed(
    video_id: str,
    attempt: int,
    max_attempts: int,
    error: str,
    terminal: bool,
) -> bool:
    """
    Alert on a failed attempt.

    Terminal failures always alert. Retryable failures alert only once the
    same video has failed repeatedly.
    """
    metrics = get_metrics()
    failure_count = metrics.increment_failed(video_id, terminal)
    details = {
        "video_id": video_id,
        "attempt": attempt,
        "max_attempts": max_attempts,
        "error": truncate_error(error, ERROR_DETAIL_MAX_LENGTH),
        "video_failure_count": failure_count,
    }

    if terminal:
        metrics.clear_video(video_id)
        return await send_webhook_alert(AlertType.JOB_FAILED_TERMINAL, details, force=True)
    if failure_count >= REPEATED_FAILURE_THRESHOLD:
        return await send_webhook_alert(AlertType.JOB_REPEATED_FAILURES, details)
    return False


async def alert_worker_startup(worker_id: str, queue_backend: str) -> bool:
    return await send_webhook_alert(
        AlertType.WORKER_STARTUP,
        {"worker_id": worker_id, "queue_backend": queue_backend},
        force=True,
    )


async def alert_worker_shutdown(worker_id: str, jobs_processed: int = 0) -> bool:
    return await send_webhook_alert(
        AlertType.WORKER_SHUTDOWN,
        {
            "worker_id": worker_id,
            "jobs_processed": jobs_processed,
            "final_metrics": get_metrics().to_dict(),
        },
        force=True,
    )

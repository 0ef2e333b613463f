"""Tests for the worker alerting system."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from worker.alerts import (
    AlertMetrics,
    AlertType,
    alert_job_failed,
    alert_worker_shutdown,
    alert_worker_startup,
    get_metrics,
    send_alert_fire_and_forget,
    send_webhook_alert,
)

WEBHOOK = "https://alerts.example.com/hook"


def _client(response=None, error=None):
    client = AsyncMock()
    if error is not None:
        client.post = AsyncMock(side_effect=error)
    else:
        client.post = AsyncMock(return_value=response or MagicMock(raise_for_status=MagicMock()))
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


class TestAlertMetrics:
    def test_increment_failed(self):
        metrics = AlertMetrics()
        assert metrics.increment_failed("video-a", terminal=False) == 1
        assert metrics.increment_failed("video-a", terminal=False) == 2
        assert metrics.increment_failed("video-b", terminal=True) == 1
        assert metrics.jobs_failed_retryable == 2
        assert metrics.jobs_failed_terminal == 1

    def test_rate_limit(self):
        metrics = AlertMetrics()
        assert metrics.can_send_alert("x", rate_limit_seconds=300)
        metrics.record_alert_sent("x")
        assert not metrics.can_send_alert("x", rate_limit_seconds=300)
        assert metrics.can_send_alert("x", rate_limit_seconds=0)


class TestSendWebhookAlert:
    async def test_disabled_without_url(self):
        assert await send_webhook_alert(AlertType.WORKER_STARTUP, {}, webhook_url="") is False

    async def test_posts_payload(self):
        client = _client()
        with patch("worker.alerts.httpx.AsyncClient", return_value=client):
            assert await send_webhook_alert(AlertType.WORKER_STARTUP, {"worker_id": "w1"}, webhook_url=WEBHOOK)

        payload = client.post.call_args[1]["json"]
        assert payload["event"] == "worker_startup"
        assert payload["details"] == {"worker_id": "w1"}
        assert get_metrics().alerts_sent == 1

    async def test_rate_limited_second_alert(self):
        with patch("worker.alerts.httpx.AsyncClient", return_value=_client()):
            assert await send_webhook_alert(AlertType.JOB_REPEATED_FAILURES, {}, webhook_url=WEBHOOK)
            assert not await send_webhook_alert(AlertType.JOB_REPEATED_FAILURES, {}, webhook_url=WEBHOOK)
        assert get_metrics().alerts_rate_limited == 1

    @pytest.mark.parametrize(
        "error",
        [httpx.TimeoutException("slow"), httpx.ConnectError("refused")],
    )
    async def test_transport_errors_return_false(self, error):
        with patch("worker.alerts.httpx.AsyncClient", return_value=_client(error=error)):
            assert await send_webhook_alert(AlertType.WORKER_STARTUP, {}, webhook_url=WEBHOOK) is False
        assert get_metrics().alerts_failed == 1


class TestAlertHelpers:
    async def test_terminal_failure_always_alerts(self):
        with patch("worker.alerts.send_webhook_alert", AsyncMock(return_value=True)) as send:
            await alert_job_failed("video-a", 3, 3, "boom", terminal=True)
            await alert_job_failed("video-b", 3, 3, "boom", terminal=True)

        assert send.await_count == 2
        assert send.call_args[0][0] == AlertType.JOB_FAILED_TERMINAL
        assert send.call_args[1]["force"] is True

    async def test_first_retryable_failure_is_quiet(self):
        with patch("worker.alerts.send_webhook_alert", AsyncMock(return_value=True)) as send:
            assert await alert_job_failed("video-a", 1, 3, "boom", terminal=False) is False
            await alert_job_failed("video-a", 2, 3, "boom", terminal=False)

        send.assert_awaited_once()
        assert send.call_args[0][0] == AlertType.JOB_REPEATED_FAILURES

    async def test_worker_lifecycle_alerts(self):
        with patch("worker.alerts.send_webhook_alert", AsyncMock(return_value=True)) as send:
            await alert_worker_startup("w1", "database")
            await alert_worker_shutdown("w1", jobs_processed=4)

        assert send.call_args_list[0][0][0] == AlertType.WORKER_STARTUP
        assert send.call_args_list[1][0][1]["jobs_processed"] == 4

    async def test_fire_and_forget_swallows_errors(self):
        async def broken():
            raise RuntimeError("webhook exploded")

        send_alert_fire_and_forget(broken())

    def test_fire_and_forget_without_loop_closes_coroutine(self):
        async def never_run():
            raise AssertionError("should not run")

        coro = never_run()
        send_alert_fire_and_forget(coro)
        assert coro.cr_frame is None

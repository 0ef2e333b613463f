"""Tests for the Redis Streams job queue backend and the TranscodeJob message.

Tests cover:
- TranscodeJob serialization and backoff schedule
- Job publishing to the stream
- Global lease acquisition and release
- Claiming new, delayed and abandoned jobs
- Retry scheduling and the dead letter stream
"""

import json
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import RedisError

from api.errors import QueueEnqueueError
from api.job_queue import (
    DEAD_LETTER_STREAM,
    DELAYED_JOBS_KEY,
    JOB_STREAM,
    RELEASE_LEASE_SCRIPT,
    RENEW_LEASE_SCRIPT,
    DatabaseJobQueue,
    RedisJobQueue,
    TranscodeJob,
    create_job_queue,
)


def _job(**overrides):
    values = dict(
        input_path="/uploads/test-video.mp4",
        output_dir="/hls",
        video_id="test-video",
        video_doc_id="doc-1",
    )
    values.update(overrides)
    return TranscodeJob(**values)


@pytest.fixture
def redis():
    client = AsyncMock()
    client.set = AsyncMock(return_value=True)
    client.zrangebyscore = AsyncMock(return_value=[])
    client.xpending_range = AsyncMock(return_value=[])
    client.xreadgroup = AsyncMock(return_value=[])
    client.eval = AsyncMock(return_value=1)
    return client


@pytest.fixture
def queue(redis):
    return RedisJobQueue(consumer_name="worker-a", block_ms=100, redis_getter=AsyncMock(return_value=redis))


class TestTranscodeJob:
    def test_package_dir(self):
        assert _job().package_dir == "/hls/test-video"

    def test_backoff_schedule_is_non_decreasing(self):
        job = _job(backoff_base=1.0, backoff_factor=2.0, max_attempts=4)
        delays = []
        while job.attempt <= job.max_attempts:
            delays.append(job.backoff_delay())
            job = job.next_attempt()
        assert delays == [1.0, 2.0, 4.0, 8.0]

    def test_next_attempt_keeps_identity(self):
        job = _job()
        retry = job.next_attempt()
        assert retry.attempt == 2
        assert retry.job_key == job.job_key
        assert retry.video_doc_id == job.video_doc_id

    def test_stream_round_trip_preserves_retry_policy(self):
        job = _job(attempt=2, max_attempts=5, backoff_base=0.5, backoff_factor=3.0)
        data = job.to_stream_dict()
        assert all(isinstance(v, str) for v in data.values())

        restored = TranscodeJob.from_stream_dict(data, ref="1-0")
        assert (restored.attempt, restored.max_attempts) == (2, 5)
        assert (restored.backoff_base, restored.backoff_factor) == (0.5, 3.0)
        assert restored._ref == "1-0"

    def test_from_stream_dict_defaults(self):
        job = TranscodeJob.from_stream_dict(
            {"input_path": "/in.mp4", "output_dir": "/hls", "video_id": "v", "video_doc_id": "d"}
        )
        assert job.attempt == 1
        assert job.max_attempts == 3
        assert job.enqueued_at is None


class TestPublish:
    async def test_publish_adds_to_stream(self, queue, redis):
        redis.xadd = AsyncMock(return_value="1-0")

        ref = await queue.publish(_job())

        assert ref == "1-0"
        stream, data = redis.xadd.call_args[0]
        assert stream == JOB_STREAM
        assert data["video_id"] == "test-video"

    async def test_publish_without_redis_raises(self):
        queue = RedisJobQueue(consumer_name="worker-a", redis_getter=AsyncMock(return_value=None))
        with pytest.raises(QueueEnqueueError):
            await queue.publish(_job())


class TestClaim:
    async def test_claims_new_message(self, queue, redis):
        redis.xreadgroup = AsyncMock(return_value=[[JOB_STREAM, [("5-0", _job().to_stream_dict())]]])

        job = await queue.claim()

        assert job.video_id == "test-video"
        assert job._ref == "5-0"
        # Lease stays held while the job runs
        assert queue._lease_key is not None
        redis.eval.assert_not_called()

    async def test_no_lease_means_no_job(self, queue, redis):
        redis.set = AsyncMock(return_value=None)

        assert await queue.claim() is None
        redis.xreadgroup.assert_not_called()

    async def test_lease_released_when_stream_is_empty(self, queue, redis):
        assert await queue.claim() is None
        assert redis.eval.call_args[0][0] == RELEASE_LEASE_SCRIPT
        assert queue._lease_key is None

    async def test_lease_set_with_expiry(self, queue, redis):
        await queue.claim()
        _, kwargs = redis.set.call_args
        assert kwargs["nx"] is True
        assert kwargs["px"] == queue.visibility_timeout * 1000

    async def test_due_delayed_jobs_are_promoted(self, queue, redis):
        payload = json.dumps(_job(attempt=2).to_stream_dict(), sort_keys=True)
        redis.zrangebyscore = AsyncMock(return_value=[payload])
        redis.zrem = AsyncMock(return_value=1)

        await queue.claim()

        redis.zrem.assert_awaited_once_with(DELAYED_JOBS_KEY, payload)
        stream, data = redis.xadd.call_args[0]
        assert stream == JOB_STREAM
        assert data["attempt"] == "2"

    async def test_delayed_job_taken_by_another_worker_is_skipped(self, queue, redis):
        redis.zrangebyscore = AsyncMock(return_value=["{}"])
        redis.zrem = AsyncMock(return_value=0)

        await queue.claim()

        redis.xadd.assert_not_called()

    @pytest.mark.parametrize("times_delivered, expected_attempt", [(1, 2), (2, 3)])
    async def test_abandoned_message_recovered_with_spent_attempt(
        self, queue, redis, times_delivered, expected_attempt
    ):
        """Should count every abandoned delivery, including the first, as a spent attempt."""
        redis.xpending_range = AsyncMock(
            return_value=[
                {
                    "message_id": "3-0",
                    "consumer": "dead-worker",
                    "time_since_delivered": 400000,
                    "times_delivered": times_delivered,
                }
            ]
        )
        redis.xclaim = AsyncMock(return_value=[("3-0", _job().to_stream_dict())])

        job = await queue.claim()

        assert job._ref == "3-0"
        assert job.attempt == expected_attempt
        redis.xreadgroup.assert_not_called()

    async def test_recent_pending_message_is_left_alone(self, queue, redis):
        redis.xpending_range = AsyncMock(
            return_value=[{"message_id": "3-0", "consumer": "busy", "time_since_delivered": 1000, "times_delivered": 1}]
        )
        redis.xclaim = AsyncMock()

        await queue.claim()

        redis.xclaim.assert_not_called()

    async def test_redis_error_releases_lease(self, queue, redis):
        redis.xreadgroup = AsyncMock(side_effect=RedisError("connection lost"))

        assert await queue.claim() is None
        assert queue._lease_key is None


class TestCompletion:
    async def _claimed(self, queue, redis, **overrides):
        redis.xreadgroup = AsyncMock(return_value=[[JOB_STREAM, [("7-0", _job(**overrides).to_stream_dict())]]])
        return await queue.claim()

    async def test_ack_removes_message_and_releases(self, queue, redis):
        job = await self._claimed(queue, redis)

        assert await queue.ack(job) is True

        redis.xack.assert_awaited()
        redis.xdel.assert_awaited_with(JOB_STREAM, "7-0")
        assert queue._lease_key is None

    async def test_fail_schedules_next_attempt(self, queue, redis):
        job = await self._claimed(queue, redis, backoff_base=2.0, backoff_factor=3.0, attempt=2)

        delay = await queue.fail(job, "encode failed")

        assert delay == 6.0
        mapping = redis.zadd.call_args[0][1]
        (payload, run_at), = mapping.items()
        assert json.loads(payload)["attempt"] == "3"
        assert run_at > 0
        redis.xack.assert_awaited()
        assert queue._lease_key is None

    async def test_reject_moves_to_dead_letter(self, queue, redis):
        job = await self._claimed(queue, redis)

        assert await queue.reject(job, "no video stream") is True

        stream, data = redis.xadd.call_args[0]
        assert stream == DEAD_LETTER_STREAM
        assert data["error"] == "no video stream"
        assert "failed_at" in data
        assert queue._lease_key is None

    async def test_heartbeat_renews_lease(self, queue, redis):
        job = await self._claimed(queue, redis)

        assert await queue.heartbeat(job) is True
        assert redis.eval.call_args[0][0] == RENEW_LEASE_SCRIPT

    async def test_heartbeat_reports_lost_lease(self, queue, redis):
        job = await self._claimed(queue, redis)
        redis.eval = AsyncMock(return_value=0)

        assert await queue.heartbeat(job) is False


class TestStats:
    async def test_stats(self, queue, redis):
        redis.xlen = AsyncMock(side_effect=[4, 1])
        redis.xpending = AsyncMock(return_value={"pending": 1})
        redis.zcard = AsyncMock(return_value=2)
        redis.get = AsyncMock(return_value=None)

        stats = await queue.stats()

        assert stats["queued"] == 4
        assert stats["in_flight"] == 1
        assert stats["delayed"] == 2
        assert stats["dead_letter"] == 1

    async def test_stats_without_redis(self):
        queue = RedisJobQueue(consumer_name="a", redis_getter=AsyncMock(return_value=None))
        assert (await queue.stats())["available"] is False


class TestCreateJobQueue:
    def test_redis_mode(self):
        assert isinstance(create_job_queue("redis", consumer_name="a"), RedisJobQueue)

    def test_database_mode(self):
        assert isinstance(create_job_queue("database", consumer_name="a"), DatabaseJobQueue)

    def test_unknown_mode_falls_back_to_database(self):
        assert isinstance(create_job_queue("carrier-pigeon", consumer_name="a"), DatabaseJobQueue)

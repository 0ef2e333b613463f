"""Tests for publishing transcode jobs from the upload path."""

from unittest.mock import AsyncMock

import pytest

from api.enums import VideoStatus
from api.errors import QueueEnqueueError
from api.job_queue import DatabaseJobQueue, JobQueue
from api.uploads import enqueue_transcode
from api.video_store import VideoStore


class TestEnqueueTranscode:
    async def test_publishes_job(self, test_database, sample_video, sample_input, test_storage):
        queue = DatabaseJobQueue(consumer_name="api", db=test_database)
        await queue.initialize()
        store = VideoStore(test_database)

        job = await enqueue_transcode(queue, store, sample_video, sample_input, output_dir=test_storage["hls"])

        assert job.video_id == "test-video"
        assert job.video_doc_id == sample_video.id
        assert job.package_dir == str(test_storage["hls"] / "test-video")
        claimed = await queue.claim()
        assert claimed.input_path == str(sample_input)

    async def test_publish_failure_cleans_up_and_marks_failed(
        self, test_database, sample_video, sample_input, test_storage
    ):
        queue = AsyncMock(spec=JobQueue)
        queue.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        store = VideoStore(test_database)
        thumbnail = test_storage["uploads"] / "thumb.jpg"
        thumbnail.write_bytes(b"jpeg")

        with pytest.raises(QueueEnqueueError):
            await enqueue_transcode(
                queue, store, sample_video, sample_input, output_dir=test_storage["hls"], thumbnail_path=thumbnail
            )

        assert not sample_input.exists()
        assert not thumbnail.exists()
        video = await store.get(sample_video.id)
        assert video.status == VideoStatus.FAILED
        assert "Failed to queue" in video.error_message

    async def test_unsafe_video_id_rejected(self, test_database, sample_video, sample_input):
        sample_video.video_id = "../escape"
        queue = AsyncMock(spec=JobQueue)

        with pytest.raises(ValueError):
            await enqueue_transcode(queue, VideoStore(test_database), sample_video, sample_input)

        queue.publish.assert_not_called()
        assert sample_input.exists()

"""Tests for durable video records."""

from api.enums import VideoStatus
from api.video_store import VideoStore


class TestVideoStore:
    async def test_create_and_get(self, test_database, sample_video):
        store = VideoStore(test_database)

        video = await store.get(sample_video.id)

        assert video.video_id == "test-video"
        assert video.status == VideoStatus.PENDING
        assert video.hls_path is None

    async def test_get_missing(self, test_database):
        assert await VideoStore(test_database).get("nope") is None

    async def test_claim_sets_processing(self, test_database, sample_video):
        store = VideoStore(test_database)
        await store.mark_failed(sample_video.id, "earlier failure")

        video = await store.claim_for_processing(sample_video.id)

        assert video.status == VideoStatus.PROCESSING
        assert video.error_message is None

    async def test_mark_live_sets_everything_at_once(self, test_database, sample_video):
        store = VideoStore(test_database)

        await store.mark_live(sample_video.id, "/hls/test-video/master.m3u8", 12.5, "/hls/test-video/thumbnail.jpg")

        video = await store.get(sample_video.id)
        assert video.status == VideoStatus.LIVE
        assert video.hls_path == "/hls/test-video/master.m3u8"
        assert video.duration == 12.5
        assert video.thumbnail == "/hls/test-video/thumbnail.jpg"

    async def test_live_record_is_never_reclaimed(self, test_database, sample_video):
        store = VideoStore(test_database)
        await store.mark_live(sample_video.id, "/hls/test-video/master.m3u8", 12.5)

        video = await store.claim_for_processing(sample_video.id)

        assert video.is_live
        assert video.hls_path == "/hls/test-video/master.m3u8"

    async def test_live_record_is_never_failed(self, test_database, sample_video):
        store = VideoStore(test_database)
        await store.mark_live(sample_video.id, "/hls/test-video/master.m3u8", 12.5)

        await store.mark_failed(sample_video.id, "late duplicate failed")

        video = await store.get(sample_video.id)
        assert video.status == VideoStatus.LIVE
        assert video.error_message is None

    async def test_mark_failed_truncates_error(self, test_database, sample_video):
        store = VideoStore(test_database)

        await store.mark_failed(sample_video.id, "x" * 5000)

        video = await store.get(sample_video.id)
        assert video.status == VideoStatus.FAILED
        assert len(video.error_message) == 500

    async def test_count_by_status(self, test_database, sample_video):
        store = VideoStore(test_database)
        await store.create("other-video", "Other", doc_id="doc-2")
        await store.mark_live("doc-2", "/hls/other-video/master.m3u8", 1.0)

        assert await store.count_by_status(VideoStatus.PENDING) == 1
        assert await store.count_by_status(VideoStatus.LIVE) == 1

    async def test_terminal_failure_is_never_reclaimed(self, test_database, sample_video):
        store = VideoStore(test_database)
        await store.mark_failed(sample_video.id, "Master playlist missing after encode", terminal=True)

        video = await store.claim_for_processing(sample_video.id)

        assert video.status == VideoStatus.FAILED
        assert video.is_failed_permanently
        assert video.failed_at is not None

    async def test_terminal_error_is_not_overwritten(self, test_database, sample_video):
        store = VideoStore(test_database)
        await store.mark_failed(sample_video.id, "first", terminal=True)

        await store.mark_failed(sample_video.id, "late retry failure")

        assert (await store.get(sample_video.id)).error_message == "first"

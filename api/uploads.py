"""
Upload-side producer: hands a stored upload to the transcode queue.

If the job cannot be published the upload is rolled back: the temp file and
any uploaded thumbnail are removed, the record is marked failed and the
caller gets a QueueEnqueueError.
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from api.common import validate_video_id
from api.errors import QueueEnqueueError
from api.job_queue import JobQueue, TranscodeJob
from api.video_store import VideoRecord, VideoStore
from config import HLS_OUTPUT_DIR

logger = logging.getLogger(__name__)


def _remove_quietly(path: Optional[Union[str, Path]]) -> None:
    if not path:
        return
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove {path} after enqueue failure: {e}")


async def enqueue_transcode(
    queue: JobQueue,
    store: VideoStore,
    video: VideoRecord,
    input_path: Union[str, Path],
    output_dir: Union[str, Path] = HLS_OUTPUT_DIR,
    thumbnail_path: Optional[Union[str, Path]] = None,
) -> TranscodeJob:
    """
    Publish a transcode job for an uploaded file.

    Args:
        queue: Job queue to publish to
        store: Video store (used to mark the record failed on error)
        video: The pending video record
        input_path: Stored raw upload
        output_dir: Root directory for HLS packages
        thumbnail_path: Optional uploaded thumbnail to remove on failure

    Returns:
        The published job

    Raises:
        QueueEnqueueError: If the job could not be published
    """
    if not validate_video_id(video.video_id):
        raise ValueError(f"Invalid video id: {video.video_id!r}")

    job = TranscodeJob(
        input_path=str(input_path),
        output_dir=str(output_dir),
        video_id=video.video_id,
        video_doc_id=video.id,
    )
    try:
        await queue.publish(job)
    except Exception as e:
        logger.error(f"Failed to enqueue transcode for video {video.video_id}: {e}")
        _remove_quietly(input_path)
        _remove_quietly(thumbnail_path)
        try:
            await store.mark_failed(video.id, f"Failed to queue video for processing: {e}")
        except Exception as store_error:
            logger.error(f"Failed to mark video {video.video_id} failed after enqueue error: {store_error}")
        raise QueueEnqueueError(f"Failed to queue video {video.video_id} for processing") from e

    logger.info(f"Queued transcode job for video {video.video_id}")
    return job

#!/usr/bin/env python3
"""
Transcode worker: claims jobs from the queue and turns uploads into HLS packages.

One job attempt walks the state machine in api/job_state.py:

    claimed -> validating -> encoding -> finalizing -> completed
                  (any working state) -> failed_retryable | failed_terminal

handle_job() is the only place that catches stage errors. It decides between
retry and terminal failure, updates the video record, runs cleanup and
dispatches notifications. The stages (prober, planner, encoder) only raise.

At most one job runs per worker, and the queue's global lease keeps the whole
deployment at WORKER_CONCURRENCY jobs in flight.
"""

import asyncio
import logging
import os
import signal
import time
import uuid
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence

from api.common import validate_video_id
from api.database import database
from api.enums import VideoStatus
from api.errors import (
    AttemptsExhaustedError,
    InvalidJobError,
    PackageIntegrityError,
    RecordNotFoundError,
    TranscodeError,
    truncate_error,
)
from api.job_queue import JobQueue, TranscodeJob, create_job_queue
from api.job_state import JobState, JobStateMachine
from api.notifications import NotificationStore
from api.pubsub import Publisher
from api.redis_client import RedisClient
from api.video_store import VideoRecord, VideoStore
from config import (
    HLS_MASTER_PLAYLIST,
    JOB_QUEUE_MODE,
    LEASE_HEARTBEAT_INTERVAL,
    LOG_LEVEL,
    THUMBNAIL_ENABLED,
    WORKER_POLL_INTERVAL,
)
from worker.alerts import (
    alert_job_failed,
    alert_worker_shutdown,
    alert_worker_startup,
    send_alert_fire_and_forget,
)
from worker.cleanup import cleanup_failed_job, cleanup_partial_output
from worker.encoder import encode_hls, generate_thumbnail
from worker.manifest import parse_master_playlist
from worker.metrics import (
    CLEANUP_ERRORS_TOTAL,
    LEASE_LOST_TOTAL,
    RENDITIONS_ENCODED_TOTAL,
    TRANSCODE_JOB_DURATION_SECONDS,
    TRANSCODE_JOBS_ACTIVE,
    TRANSCODE_JOBS_TOTAL,
    TRANSCODE_STAGE_DURATION_SECONDS,
    init_app_info,
    start_metrics_server,
)
from worker.notifier import NotifierBridge
from worker.prober import probe_media
from worker.renditions import Rendition, plan_renditions

logger = logging.getLogger(__name__)


class WorkerState:
    """
    Mutable state for a worker instance.

    Kept separate from TranscodeWorker so signal handlers and tests can
    request shutdown without holding the worker.
    """

    def __init__(self, worker_id: Optional[str] = None):
        self.worker_id = worker_id or str(uuid.uuid4())
        self.shutdown_requested = False
        self._shutdown_event: Optional[asyncio.Event] = None

    @property
    def shutdown_event(self) -> asyncio.Event:
        # Created lazily so it binds to the running loop
        if self._shutdown_event is None:
            self._shutdown_event = asyncio.Event()
            if self.shutdown_requested:
                self._shutdown_event.set()
        return self._shutdown_event

    def request_shutdown(self):
        """Stop claiming new jobs; the in-flight job is finished first."""
        self.shutdown_requested = True
        if self._shutdown_event is not None:
            self._shutdown_event.set()


def verify_package(package_dir: Path, plan: Sequence[Rendition]) -> List[tuple]:
    """
    Check the published package before the record goes live.

    Raises:
        PackageIntegrityError: If the master playlist is missing, unparsable,
            or does not list one existing variant per rendition
    """
    master_path = package_dir / HLS_MASTER_PLAYLIST
    if not master_path.is_file():
        raise PackageIntegrityError(f"Master playlist missing after encode: {master_path}")
    try:
        entries = parse_master_playlist(master_path)
    except (OSError, ValueError) as e:
        raise PackageIntegrityError(f"Master playlist unreadable: {e}") from e
    if len(entries) != len(plan):
        raise PackageIntegrityError(
            f"Master playlist lists {len(entries)} variant(s), expected {len(plan)}"
        )
    for _, _, uri in entries:
        if not (package_dir / uri).is_file():
            raise PackageIntegrityError(f"Master playlist references missing variant {uri}")
    return entries


def _remove_input(input_path: str) -> None:
    try:
        os.unlink(input_path)
        logger.info(f"Removed input file {input_path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove input file {input_path}: {e}")


class TranscodeWorker:
    """Claims transcode jobs and drives each one through the pipeline."""

    def __init__(
        self,
        queue: JobQueue,
        store: VideoStore,
        notifier: NotifierBridge,
        state: Optional[WorkerState] = None,
        prober: Callable[..., Awaitable] = probe_media,
        planner: Callable[[int, int], List[Rendition]] = plan_renditions,
        encoder: Callable[..., Awaitable[Path]] = encode_hls,
        thumbnailer: Optional[Callable[..., Awaitable[Optional[Path]]]] = None,
        heartbeat_interval: float = LEASE_HEARTBEAT_INTERVAL,
        poll_interval: float = WORKER_POLL_INTERVAL,
    ) -> None:
        self.queue = queue
        self.store = store
        self.notifier = notifier
        self.state = state or WorkerState()
        self.prober = prober
        self.planner = planner
        self.encoder = encoder
        if thumbnailer is None and THUMBNAIL_ENABLED:
            thumbnailer = generate_thumbnail
        self.thumbnailer = thumbnailer
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.jobs_processed = 0

    # ------------------------------------------------------------------
    # Job handling
    # ------------------------------------------------------------------

    async def handle_job(self, job: TranscodeJob) -> JobState:
        """
        Run one job attempt to a terminal state.

        Returns:
            COMPLETED, FAILED_RETRYABLE or FAILED_TERMINAL
        """
        machine = JobStateMachine(job_label=job.label)
        started = time.monotonic()
        logger.info(f"Starting job {job.label} (attempt {job.attempt}/{job.max_attempts})")

        TRANSCODE_JOBS_ACTIVE.inc()
        heartbeat = asyncio.create_task(self._heartbeat(job))
        try:
            result = await self._run_attempt(job, machine)
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            TRANSCODE_JOBS_ACTIVE.dec()

        TRANSCODE_JOB_DURATION_SECONDS.observe(time.monotonic() - started)
        for stage, seconds in machine.stage_durations().items():
            TRANSCODE_STAGE_DURATION_SECONDS.labels(stage=stage).observe(seconds)
        return result

    async def _run_attempt(self, job: TranscodeJob, machine: JobStateMachine) -> JobState:
        video: Optional[VideoRecord] = None
        package_dir = Path(job.package_dir)

        try:
            if not validate_video_id(job.video_id):
                raise InvalidJobError(f"Invalid video id in job: {job.video_id!r}")
            if job.attempt > job.max_attempts:
                raise AttemptsExhaustedError(
                    f"Job abandoned by a previous worker too many times ({job.attempt - 1} attempts)"
                )

            video = await self.store.claim_for_processing(job.video_doc_id)
            if video is None:
                raise RecordNotFoundError(f"Video record {job.video_doc_id} not found")
            if video.is_live:
                return await self._complete_duplicate(job, machine, video)
            if video.is_failed_permanently:
                return await self._discard_failed_duplicate(job, machine, video)
            await self._announce(video.video_id, VideoStatus.PROCESSING)

            machine.advance(JobState.VALIDATING)
            probe = await self.prober(job.input_path)
            plan = self.planner(probe.width, probe.height)
            logger.info(f"Job {job.label}: plan {', '.join(f'{r.name} {r.resolution}' for r in plan)}")

            machine.advance(JobState.ENCODING)
            master_path = await self.encoder(
                job.input_path,
                package_dir,
                plan,
                probe.has_audio,
                probe.duration,
                self._progress_logger(job),
            )
            thumbnail = None
            if self.thumbnailer is not None:
                thumbnail = await self.thumbnailer(job.input_path, package_dir, probe.duration)

            machine.advance(JobState.FINALIZING)
            verify_package(package_dir, plan)
            await self.store.mark_live(
                job.video_doc_id,
                hls_path=str(master_path),
                duration=probe.duration,
                thumbnail=str(thumbnail) if thumbnail else None,
            )
        except TranscodeError as e:
            return await self._handle_failure(job, machine, video, e)
        except Exception as e:
            # Store/queue errors and anything unexpected: retry like an encode failure
            logger.exception(f"Unexpected error in job {job.label}")
            return await self._handle_failure(job, machine, video, TranscodeError(str(e) or type(e).__name__))

        # The record is live from here on; nothing below may undo it
        _remove_input(job.input_path)
        machine.advance(JobState.COMPLETED)
        await self._ack(job)

        live_video = VideoRecord(
            id=video.id,
            video_id=video.video_id,
            title=video.title,
            uploader_id=video.uploader_id,
            status=VideoStatus.LIVE,
            hls_path=str(master_path),
            duration=probe.duration,
            thumbnail=str(thumbnail) if thumbnail else None,
        )
        self.notifier.dispatch_fire_and_forget(self.notifier.notify_ready(live_video))
        await self._announce(video.video_id, VideoStatus.LIVE, hls_path=str(master_path))

        TRANSCODE_JOBS_TOTAL.labels(result="completed").inc()
        for rendition in plan:
            RENDITIONS_ENCODED_TOTAL.labels(rendition=rendition.name).inc()
        logger.info(f"Job {job.label} completed: {master_path}")
        return machine.state

    async def _complete_duplicate(self, job: TranscodeJob, machine: JobStateMachine, video: VideoRecord) -> JobState:
        logger.info(f"Video {video.video_id} is already live, acknowledging duplicate job {job.label}")
        # Input is left behind if the previous attempt died right after mark_live
        _remove_input(job.input_path)
        machine.advance(JobState.COMPLETED)
        await self._ack(job)
        TRANSCODE_JOBS_TOTAL.labels(result="duplicate").inc()
        return machine.state

    async def _discard_failed_duplicate(
        self, job: TranscodeJob, machine: JobStateMachine, video: VideoRecord
    ) -> JobState:
        logger.info(f"Video {video.video_id} already failed permanently, discarding duplicate job {job.label}")
        machine.fail(retryable=False)
        report = cleanup_failed_job(job.input_path, job.package_dir, output_root=job.output_dir)
        if report.errors:
            CLEANUP_ERRORS_TOTAL.inc(len(report.errors))
        await self._ack(job)
        TRANSCODE_JOBS_TOTAL.labels(result="duplicate").inc()
        return machine.state

    async def _handle_failure(
        self,
        job: TranscodeJob,
        machine: JobStateMachine,
        video: Optional[VideoRecord],
        error: TranscodeError,
    ) -> JobState:
        message = str(error) or type(error).__name__
        retryable = job.attempt < error.attempt_limit(job.max_attempts)
        stage = machine.state.value
        state = machine.fail(retryable)

        if retryable:
            logger.warning(f"Job {job.label} failed during {stage} (will retry): {truncate_error(message)}")
        else:
            logger.error(f"Job {job.label} failed terminally during {stage}: {truncate_error(message)}")

        try:
            await self.store.mark_failed(job.video_doc_id, message, terminal=not retryable)
        except Exception as e:
            logger.error(f"Failed to mark video record {job.video_doc_id} failed: {e}")

        if retryable:
            report = cleanup_partial_output(job.package_dir, output_root=job.output_dir)
            try:
                delay = await self.queue.fail(job, message)
                logger.info(f"Job {job.video_id} will be retried in {delay:.1f}s")
            except Exception as e:
                logger.error(f"Failed to schedule retry for job {job.label}: {e}")
            TRANSCODE_JOBS_TOTAL.labels(result="retried").inc()
        else:
            report = cleanup_failed_job(job.input_path, job.package_dir, output_root=job.output_dir)
            try:
                await self.queue.reject(job, message)
            except Exception as e:
                logger.error(f"Failed to dead-letter job {job.label}: {e}")
            failed_video = video or VideoRecord(
                id=job.video_doc_id,
                video_id=job.video_id,
                title="",
                uploader_id=None,
                status=VideoStatus.FAILED,
            )
            self.notifier.dispatch_fire_and_forget(self.notifier.notify_failure(failed_video, message))
            TRANSCODE_JOBS_TOTAL.labels(result="failed").inc()

        if report.errors:
            CLEANUP_ERRORS_TOTAL.inc(len(report.errors))

        send_alert_fire_and_forget(
            alert_job_failed(
                video_id=job.video_id,
                attempt=job.attempt,
                max_attempts=job.max_attempts,
                error=message,
                terminal=not retryable,
            )
        )
        await self._announce(job.video_id, VideoStatus.FAILED, error=truncate_error(message))
        return state

    async def _ack(self, job: TranscodeJob) -> None:
        try:
            await self.queue.ack(job)
        except Exception as e:
            # Redelivery finds the record live and acknowledges it as a duplicate
            logger.error(f"Failed to acknowledge job {job.label}: {e}")

    async def _announce(self, video_id: str, status: VideoStatus, **extra) -> None:
        try:
            await Publisher.publish_video_status(video_id, status.value, **extra)
        except Exception as e:
            logger.debug(f"Status publish failed for {video_id}: {e}")

    def _progress_logger(self, job: TranscodeJob) -> Callable[[int], Awaitable[None]]:
        last_logged = -10

        async def on_progress(percent: int) -> None:
            nonlocal last_logged
            if percent >= last_logged + 10 or percent == 100:
                last_logged = percent
                logger.info(f"Job {job.label}: encoding {percent}%")

        return on_progress

    async def _heartbeat(self, job: TranscodeJob) -> None:
        """Keep the lease and the job claim alive while the job runs."""
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                renewed = await self.queue.heartbeat(job)
            except Exception as e:
                logger.warning(f"Heartbeat error for job {job.label}: {e}")
                continue
            if not renewed:
                LEASE_LOST_TOTAL.inc()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self.state.shutdown_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run(self) -> None:
        """Claim and process jobs until shutdown is requested."""
        logger.info(f"Transcode worker {self.state.worker_id[:8]} waiting for jobs")
        while not self.state.shutdown_requested:
            try:
                job = await self.queue.claim()
            except Exception as e:
                logger.error(f"Failed to claim job: {e}")
                await self._idle(self.poll_interval)
                continue

            if job is None:
                if not self.queue.blocks_on_claim:
                    await self._idle(self.poll_interval)
                continue

            self.jobs_processed += 1
            await self.handle_job(job)

        logger.info("Shutdown requested, worker loop stopped")


async def worker_main(state: Optional[WorkerState] = None) -> None:
    """Connect everything, run the worker, and tear down cleanly."""
    state = state or WorkerState()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_shutdown, state, sig)

    await database.connect()
    queue = create_job_queue(consumer_name=f"{os.uname().nodename}-{state.worker_id[:8]}")
    notifications = NotificationStore()
    notifier = NotifierBridge(notifications.create_notification, notifications)
    worker = TranscodeWorker(queue, VideoStore(), notifier, state)

    try:
        await queue.initialize()
        init_app_info(state.worker_id, JOB_QUEUE_MODE)
        start_metrics_server()
        logger.info(f"Transcode worker started (ID: {state.worker_id[:8]}, queue: {JOB_QUEUE_MODE})")
        send_alert_fire_and_forget(alert_worker_startup(state.worker_id, JOB_QUEUE_MODE))

        await worker.run()
    finally:
        await notifier.wait_for_pending()
        try:
            await queue.close()
        except Exception as e:
            logger.warning(f"Failed to release encode lease on shutdown: {e}")
        try:
            await alert_worker_shutdown(state.worker_id, worker.jobs_processed)
        except Exception as e:
            logger.debug(f"Shutdown alert failed: {e}")
        await RedisClient.reset_instance()
        await database.disconnect()
        logger.info("Worker stopped gracefully.")


def _signal_shutdown(state: WorkerState, sig: signal.Signals) -> None:
    logger.info(f"{signal.Signals(sig).name} received, finishing current job and shutting down gracefully...")
    state.request_shutdown()


def main() -> None:
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(worker_main())


if __name__ == "__main__":
    main()

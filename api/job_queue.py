"""
Job queue for transcode jobs.

Supports two backends behind one interface:
- Database (default, always works): transcode_jobs table with leased claims
- Redis Streams: consumer group with instant dispatch

Both backends enforce the same contract:
- At most WORKER_CONCURRENCY jobs are in flight deployment-wide. A worker must
  hold a global lease (Redis key or worker_leases row) before it takes a job.
- The lease and the job claim expire after JOB_VISIBILITY_TIMEOUT unless the
  worker heartbeats, so a crashed worker's job is redelivered.
- fail() schedules redelivery after the job's exponential backoff delay.
- reject() moves the job to the dead letter stream/state. No further retries.
"""

import asyncio
import json
import logging
import os
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import sqlalchemy as sa
from databases import Database
from redis.exceptions import RedisError

from api.common import ensure_utc
from api.database import transcode_jobs, utcnow, worker_leases
from api.db_retry import db_execute_with_retry, fetch_all_with_retry, fetch_one_with_retry
from api.enums import QueueMode
from api.errors import QueueEnqueueError, truncate_error
from api.redis_client import get_redis
from config import (
    JOB_QUEUE_MODE,
    JOB_VISIBILITY_TIMEOUT,
    MAX_RETRY_ATTEMPTS,
    REDIS_CONSUMER_BLOCK_MS,
    REDIS_CONSUMER_GROUP,
    REDIS_KEY_PREFIX,
    REDIS_STREAM_MAX_LEN,
    RETRY_BACKOFF_BASE,
    RETRY_BACKOFF_FACTOR,
    WORKER_CONCURRENCY,
)

logger = logging.getLogger(__name__)

JOB_STREAM = f"{REDIS_KEY_PREFIX}:transcode:jobs"
DELAYED_JOBS_KEY = f"{REDIS_KEY_PREFIX}:transcode:delayed"
DEAD_LETTER_STREAM = f"{REDIS_KEY_PREFIX}:transcode:dead-letter"
LEASE_KEY_PREFIX = f"{REDIS_KEY_PREFIX}:transcode:lease"
DEAD_LETTER_MAX_LEN = 1000

# Delete/extend the lease only if we still own it
RELEASE_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""

RENEW_LEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
end
return 0
"""


def default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


@dataclass
class TranscodeJob:
    """A unit of transcoding work as carried on the queue."""

    input_path: str
    output_dir: str
    video_id: str
    video_doc_id: str
    attempt: int = 1
    max_attempts: int = MAX_RETRY_ATTEMPTS
    backoff_base: float = RETRY_BACKOFF_BASE
    backoff_factor: float = RETRY_BACKOFF_FACTOR
    enqueued_at: Optional[datetime] = None
    # Stable identity across retries (log correlation)
    job_key: str = field(default_factory=lambda: uuid.uuid4().hex)
    # Internal: backend reference for ack (stream message id or table row id)
    _ref: Optional[str] = field(default=None, repr=False)

    @property
    def package_dir(self) -> str:
        """Directory holding this video's HLS package."""
        return os.path.join(self.output_dir, self.video_id)

    @property
    def label(self) -> str:
        return f"{self.video_id}#{self.attempt}"

    def backoff_delay(self) -> float:
        """Seconds to wait before the next attempt after the current one fails."""
        return self.backoff_base * (self.backoff_factor ** (self.attempt - 1))

    def next_attempt(self) -> "TranscodeJob":
        return TranscodeJob(
            input_path=self.input_path,
            output_dir=self.output_dir,
            video_id=self.video_id,
            video_doc_id=self.video_doc_id,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            backoff_base=self.backoff_base,
            backoff_factor=self.backoff_factor,
            enqueued_at=self.enqueued_at,
            job_key=self.job_key,
        )

    def to_stream_dict(self) -> Dict[str, str]:
        """Convert to Redis stream message format (all string values)."""
        return {
            "input_path": self.input_path,
            "output_dir": self.output_dir,
            "video_id": self.video_id,
            "video_doc_id": self.video_doc_id,
            "attempt": str(self.attempt),
            "max_attempts": str(self.max_attempts),
            "backoff_base": str(self.backoff_base),
            "backoff_factor": str(self.backoff_factor),
            "enqueued_at": (self.enqueued_at or utcnow()).isoformat(),
            "job_key": self.job_key,
        }

    @classmethod
    def from_stream_dict(cls, data: Dict[str, Any], ref: Optional[str] = None) -> "TranscodeJob":
        """Create from a Redis stream message or a delayed-set payload."""
        enqueued_at = None
        if data.get("enqueued_at"):
            try:
                enqueued_at = datetime.fromisoformat(data["enqueued_at"])
            except (ValueError, TypeError):
                # Invalid/missing date is acceptable
                pass

        job = cls(
            input_path=data["input_path"],
            output_dir=data["output_dir"],
            video_id=data["video_id"],
            video_doc_id=data["video_doc_id"],
            attempt=int(data.get("attempt", 1)),
            max_attempts=int(data.get("max_attempts", MAX_RETRY_ATTEMPTS)),
            backoff_base=float(data.get("backoff_base", RETRY_BACKOFF_BASE)),
            backoff_factor=float(data.get("backoff_factor", RETRY_BACKOFF_FACTOR)),
            enqueued_at=enqueued_at,
            job_key=data.get("job_key") or uuid.uuid4().hex,
        )
        job._ref = ref
        return job


class JobQueue:
    """Interface shared by the queue backends."""

    # True if claim() waits for work itself (the worker then skips its poll sleep)
    blocks_on_claim = False

    def __init__(self, consumer_name: Optional[str] = None) -> None:
        self.consumer_name = consumer_name or default_consumer_name()
        self.visibility_timeout = JOB_VISIBILITY_TIMEOUT
        self.lease_slots = WORKER_CONCURRENCY

    async def initialize(self) -> None:
        raise NotImplementedError

    async def publish(self, job: TranscodeJob) -> str:
        """Publish a new job. Returns the backend reference. Raises on failure."""
        raise NotImplementedError

    async def claim(self) -> Optional[TranscodeJob]:
        """Acquire the global lease and take one job, or return None."""
        raise NotImplementedError

    async def heartbeat(self, job: TranscodeJob) -> bool:
        """Extend the lease and the job claim. Returns False if the lease was lost."""
        raise NotImplementedError

    async def ack(self, job: TranscodeJob) -> bool:
        """Mark the job done and release the lease."""
        raise NotImplementedError

    async def fail(self, job: TranscodeJob, error: str) -> float:
        """Schedule the next attempt after the backoff delay and release the lease. Returns the delay."""
        raise NotImplementedError

    async def reject(self, job: TranscodeJob, error: str) -> bool:
        """Move the job to the dead letter stream/state and release the lease."""
        raise NotImplementedError

    async def release(self) -> None:
        """Release the lease if held."""
        raise NotImplementedError

    async def stats(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self) -> None:
        await self.release()


class RedisJobQueue(JobQueue):
    """Redis Streams backend with a delayed-retry sorted set and dead letter stream."""

    blocks_on_claim = True

    def __init__(
        self,
        consumer_name: Optional[str] = None,
        block_ms: int = REDIS_CONSUMER_BLOCK_MS,
        redis_getter=get_redis,
    ) -> None:
        super().__init__(consumer_name)
        self.block_ms = block_ms
        self._get_redis = redis_getter
        self._lease_key: Optional[str] = None
        self._lease_token: Optional[str] = None

    async def _redis(self):
        redis = await self._get_redis()
        if redis is None:
            raise RedisError("Redis unavailable")
        return redis

    async def initialize(self) -> None:
        redis = await self._redis()
        try:
            await redis.xgroup_create(JOB_STREAM, REDIS_CONSUMER_GROUP, id="0", mkstream=True)
            logger.info(f"Created consumer group {REDIS_CONSUMER_GROUP} on {JOB_STREAM}")
        except RedisError as e:
            if "BUSYGROUP" not in str(e):
                raise
            # Group already exists, that's fine
        logger.info(f"Job queue initialized with Redis Streams (consumer: {self.consumer_name})")

    async def publish(self, job: TranscodeJob) -> str:
        redis = await self._get_redis()
        if redis is None:
            raise QueueEnqueueError("Redis unavailable, cannot publish transcode job")
        if job.enqueued_at is None:
            job.enqueued_at = utcnow()
        message_id = await redis.xadd(JOB_STREAM, job.to_stream_dict(), maxlen=REDIS_STREAM_MAX_LEN)
        logger.debug(f"Published job {job.label} to {JOB_STREAM} ({message_id})")
        return message_id

    # -- lease -------------------------------------------------------------

    async def _acquire_lease(self, redis) -> bool:
        if self._lease_key is not None:
            return True
        token = f"{self.consumer_name}:{uuid.uuid4().hex}"
        for slot in range(self.lease_slots):
            key = f"{LEASE_KEY_PREFIX}:{slot}"
            if await redis.set(key, token, nx=True, px=self.visibility_timeout * 1000):
                self._lease_key = key
                self._lease_token = token
                logger.debug(f"Acquired encode lease {key}")
                return True
        return False

    async def release(self) -> None:
        if self._lease_key is None:
            return
        key, token = self._lease_key, self._lease_token
        self._lease_key = None
        self._lease_token = None
        try:
            redis = await self._redis()
            await redis.eval(RELEASE_LEASE_SCRIPT, 1, key, token)
            logger.debug(f"Released encode lease {key}")
        except RedisError as e:
            # The lease lapses on its own after the visibility timeout
            logger.warning(f"Failed to release encode lease {key}: {e}")

    # -- claiming ----------------------------------------------------------

    async def _promote_delayed(self, redis) -> int:
        """Move retries whose backoff has elapsed back onto the stream."""
        now = utcnow().timestamp()
        due = await redis.zrangebyscore(DELAYED_JOBS_KEY, "-inf", now)
        promoted = 0
        for payload in due:
            # ZREM is the claim: only one worker re-publishes a given retry
            if await redis.zrem(DELAYED_JOBS_KEY, payload):
                await redis.xadd(JOB_STREAM, json.loads(payload), maxlen=REDIS_STREAM_MAX_LEN)
                promoted += 1
        if promoted:
            logger.debug(f"Promoted {promoted} delayed job(s)")
        return promoted

    async def _recover_abandoned(self, redis) -> Optional[TranscodeJob]:
        """Take over a message whose consumer stopped heartbeating."""
        idle_ms = self.visibility_timeout * 1000
        pending = await redis.xpending_range(JOB_STREAM, REDIS_CONSUMER_GROUP, min="-", max="+", count=10)
        for msg in pending:
            if msg.get("time_since_delivered", 0) < idle_ms:
                continue
            claimed = await redis.xclaim(
                JOB_STREAM,
                REDIS_CONSUMER_GROUP,
                self.consumer_name,
                idle_ms,
                [msg["message_id"]],
            )
            if not claimed:
                continue
            message_id, data = claimed[0]
            if not data:
                # Trimmed from the stream; nothing left to run
                await redis.xack(JOB_STREAM, REDIS_CONSUMER_GROUP, message_id)
                continue
            job = TranscodeJob.from_stream_dict(data, ref=message_id)
            # Every earlier delivery of this message was abandoned mid-attempt
            job.attempt += int(msg.get("times_delivered", 1))
            logger.info(
                f"Recovered abandoned job {job.label} from {msg.get('consumer')} "
                f"(idle {msg.get('time_since_delivered')}ms)"
            )
            return job
        return None

    async def _read_new(self, redis) -> Optional[TranscodeJob]:
        messages = await redis.xreadgroup(
            REDIS_CONSUMER_GROUP,
            self.consumer_name,
            {JOB_STREAM: ">"},
            count=1,
            block=self.block_ms,
        )
        if messages:
            # messages format: [[stream_name, [(message_id, data), ...]]]
            _, msg_list = messages[0]
            if msg_list:
                message_id, data = msg_list[0]
                return TranscodeJob.from_stream_dict(data, ref=message_id)
        return None

    async def claim(self) -> Optional[TranscodeJob]:
        try:
            redis = await self._redis()
            if not await self._acquire_lease(redis):
                # Another worker is encoding; wait as long as a blocking read would
                await asyncio.sleep(self.block_ms / 1000)
                return None

            await self._promote_delayed(redis)
            job = await self._recover_abandoned(redis)
            if job is None:
                job = await self._read_new(redis)
        except RedisError as e:
            logger.warning(f"Redis claim failed: {e}")
            await self.release()
            return None

        if job is None:
            await self.release()
        return job

    async def heartbeat(self, job: TranscodeJob) -> bool:
        if self._lease_key is None:
            return False
        try:
            redis = await self._redis()
            renewed = await redis.eval(
                RENEW_LEASE_SCRIPT, 1, self._lease_key, self._lease_token, self.visibility_timeout * 1000
            )
            # Reset the message's idle time so it is not recovered by another worker
            await redis.xclaim(JOB_STREAM, REDIS_CONSUMER_GROUP, self.consumer_name, 0, [job._ref], justid=True)
        except RedisError as e:
            logger.warning(f"Heartbeat failed for job {job.label}: {e}")
            return False
        if not renewed:
            logger.warning(f"Encode lease {self._lease_key} lost while running job {job.label}")
        return bool(renewed)

    async def ack(self, job: TranscodeJob) -> bool:
        try:
            redis = await self._redis()
            await redis.xack(JOB_STREAM, REDIS_CONSUMER_GROUP, job._ref)
            await redis.xdel(JOB_STREAM, job._ref)
            logger.debug(f"Acknowledged job {job.label}")
            return True
        except RedisError as e:
            # Redelivered after the visibility timeout; the worker treats a live video as done
            logger.warning(f"Failed to acknowledge job {job.label}: {e}")
            return False
        finally:
            await self.release()

    async def fail(self, job: TranscodeJob, error: str) -> float:
        delay = job.backoff_delay()
        retry = job.next_attempt()
        try:
            redis = await self._redis()
            run_at = utcnow().timestamp() + delay
            await redis.zadd(DELAYED_JOBS_KEY, {json.dumps(retry.to_stream_dict(), sort_keys=True): run_at})
            await redis.xack(JOB_STREAM, REDIS_CONSUMER_GROUP, job._ref)
            await redis.xdel(JOB_STREAM, job._ref)
            logger.info(f"Job {job.label} scheduled for attempt {retry.attempt} in {delay:.1f}s")
        except RedisError as e:
            logger.warning(f"Failed to schedule retry for job {job.label}: {e}")
        finally:
            await self.release()
        return delay

    async def reject(self, job: TranscodeJob, error: str) -> bool:
        try:
            redis = await self._redis()
            dlq_data = job.to_stream_dict()
            dlq_data["error"] = truncate_error(error) or ""
            dlq_data["failed_at"] = utcnow().isoformat()
            await redis.xadd(DEAD_LETTER_STREAM, dlq_data, maxlen=DEAD_LETTER_MAX_LEN)
            await redis.xack(JOB_STREAM, REDIS_CONSUMER_GROUP, job._ref)
            await redis.xdel(JOB_STREAM, job._ref)
            logger.info(f"Job {job.label} moved to dead letter queue: {error[:100]}")
            return True
        except RedisError as e:
            logger.warning(f"Failed to move job {job.label} to DLQ: {e}")
            return False
        finally:
            await self.release()

    async def stats(self) -> Dict[str, Any]:
        redis = await self._get_redis()
        if redis is None:
            return {"backend": "redis", "available": False}

        stats: Dict[str, Any] = {"backend": "redis", "available": True}
        try:
            stats["queued"] = await redis.xlen(JOB_STREAM)
            pending_info = await redis.xpending(JOB_STREAM, REDIS_CONSUMER_GROUP)
            stats["in_flight"] = pending_info.get("pending", 0) if pending_info else 0
            stats["delayed"] = await redis.zcard(DELAYED_JOBS_KEY)
            stats["dead_letter"] = await redis.xlen(DEAD_LETTER_STREAM)
            leases = {}
            for slot in range(self.lease_slots):
                leases[slot] = await redis.get(f"{LEASE_KEY_PREFIX}:{slot}")
            stats["leases"] = leases
        except RedisError as e:
            logger.warning(f"Failed to get queue stats: {e}")
        return stats


class DatabaseJobQueue(JobQueue):
    """transcode_jobs table backend with worker_leases rows as the global lease."""

    def __init__(self, consumer_name: Optional[str] = None, db: Optional[Database] = None) -> None:
        super().__init__(consumer_name)
        if db is None:
            from api.database import database as db
        self.db = db
        self._lease_slot: Optional[int] = None
        self._token = f"{self.consumer_name}:{uuid.uuid4().hex}"

    def _expiry(self) -> datetime:
        return utcnow() + timedelta(seconds=self.visibility_timeout)

    async def initialize(self) -> None:
        """Ensure a worker_leases row exists for every slot."""
        existing = await fetch_all_with_retry(sa.select(worker_leases.c.slot), db=self.db)
        have = {row["slot"] for row in existing}
        for slot in range(self.lease_slots):
            if slot in have:
                continue
            try:
                await self.db.execute(
                    worker_leases.insert().values(slot=slot, holder="", expires_at=utcnow())
                )
            except Exception as e:
                # Another worker seeded the same slot concurrently
                logger.debug(f"Lease slot {slot} already seeded: {e}")
        logger.info(f"Job queue mode: database (consumer: {self.consumer_name})")

    async def publish(self, job: TranscodeJob) -> str:
        now = utcnow()
        if job.enqueued_at is None:
            job.enqueued_at = now
        row_id = await db_execute_with_retry(
            transcode_jobs.insert().values(
                input_path=job.input_path,
                output_dir=job.output_dir,
                video_id=job.video_id,
                video_doc_id=job.video_doc_id,
                attempt=job.attempt,
                max_attempts=job.max_attempts,
                backoff_base=job.backoff_base,
                backoff_factor=job.backoff_factor,
                enqueued_at=job.enqueued_at,
                available_at=now,
            ),
            db=self.db,
        )
        logger.debug(f"Published job {job.label} as transcode_jobs row {row_id}")
        return str(row_id)

    # -- lease -------------------------------------------------------------

    async def _acquire_lease(self) -> bool:
        if self._lease_slot is not None:
            return True
        now = utcnow()
        for slot in range(self.lease_slots):
            await db_execute_with_retry(
                worker_leases.update()
                .where(worker_leases.c.slot == slot)
                .where(sa.or_(worker_leases.c.expires_at < now, worker_leases.c.holder == ""))
                .values(holder=self._token, expires_at=self._expiry()),
                db=self.db,
            )
            # Verify we won (conditional update, then read back)
            row = await fetch_one_with_retry(
                sa.select(worker_leases.c.holder).where(worker_leases.c.slot == slot), db=self.db
            )
            if row and row["holder"] == self._token:
                self._lease_slot = slot
                logger.debug(f"Acquired encode lease slot {slot}")
                return True
        return False

    async def release(self) -> None:
        if self._lease_slot is None:
            return
        slot = self._lease_slot
        self._lease_slot = None
        await db_execute_with_retry(
            worker_leases.update()
            .where(worker_leases.c.slot == slot)
            .where(worker_leases.c.holder == self._token)
            .values(holder="", expires_at=utcnow()),
            db=self.db,
        )
        logger.debug(f"Released encode lease slot {slot}")

    # -- claiming ----------------------------------------------------------

    def _claimable(self, now: datetime):
        return sa.and_(
            transcode_jobs.c.completed_at.is_(None),
            transcode_jobs.c.failed_at.is_(None),
            transcode_jobs.c.available_at <= now,
            sa.or_(
                transcode_jobs.c.claimed_by.is_(None),
                transcode_jobs.c.claim_expires_at < now,
            ),
        )

    async def claim(self) -> Optional[TranscodeJob]:
        if not await self._acquire_lease():
            return None

        now = utcnow()
        candidate = await fetch_one_with_retry(
            sa.select(transcode_jobs)
            .where(self._claimable(now))
            .order_by(transcode_jobs.c.available_at, transcode_jobs.c.id)
            .limit(1),
            db=self.db,
        )
        if candidate is None:
            await self.release()
            return None

        # An expired claim means the previous worker died mid-attempt
        abandoned = candidate["claimed_by"] is not None
        attempt = candidate["attempt"] + 1 if abandoned else candidate["attempt"]
        await db_execute_with_retry(
            transcode_jobs.update()
            .where(transcode_jobs.c.id == candidate["id"])
            .where(self._claimable(now))
            .values(
                claimed_by=self._token,
                claimed_at=now,
                claim_expires_at=self._expiry(),
                attempt=attempt,
            ),
            db=self.db,
        )
        row = await fetch_one_with_retry(
            sa.select(transcode_jobs).where(transcode_jobs.c.id == candidate["id"]), db=self.db
        )
        if row is None or row["claimed_by"] != self._token:
            # Lost the race to another worker
            await self.release()
            return None

        if abandoned:
            logger.info(f"Recovered abandoned job {row['video_id']} (row {row['id']})")
        return self._row_to_job(row)

    @staticmethod
    def _row_to_job(row) -> TranscodeJob:
        job = TranscodeJob(
            input_path=row["input_path"],
            output_dir=row["output_dir"],
            video_id=row["video_id"],
            video_doc_id=row["video_doc_id"],
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            backoff_base=row["backoff_base"],
            backoff_factor=row["backoff_factor"],
            enqueued_at=ensure_utc(row["enqueued_at"]),
            job_key=str(row["id"]),
        )
        job._ref = str(row["id"])
        return job

    def _owned(self, job: TranscodeJob):
        return sa.and_(
            transcode_jobs.c.id == int(job._ref),
            transcode_jobs.c.claimed_by == self._token,
        )

    async def heartbeat(self, job: TranscodeJob) -> bool:
        if self._lease_slot is None:
            return False
        expiry = self._expiry()
        await db_execute_with_retry(
            worker_leases.update()
            .where(worker_leases.c.slot == self._lease_slot)
            .where(worker_leases.c.holder == self._token)
            .values(expires_at=expiry),
            db=self.db,
        )
        await db_execute_with_retry(
            transcode_jobs.update().where(self._owned(job)).values(claim_expires_at=expiry),
            db=self.db,
        )
        row = await fetch_one_with_retry(
            sa.select(worker_leases.c.holder).where(worker_leases.c.slot == self._lease_slot), db=self.db
        )
        renewed = row is not None and row["holder"] == self._token
        if not renewed:
            logger.warning(f"Encode lease slot {self._lease_slot} lost while running job {job.label}")
        return renewed

    async def ack(self, job: TranscodeJob) -> bool:
        try:
            await db_execute_with_retry(
                transcode_jobs.update()
                .where(self._owned(job))
                .values(completed_at=utcnow(), claimed_by=None, claim_expires_at=None),
                db=self.db,
            )
            logger.debug(f"Acknowledged job {job.label}")
            return True
        finally:
            await self.release()

    async def fail(self, job: TranscodeJob, error: str) -> float:
        delay = job.backoff_delay()
        try:
            await db_execute_with_retry(
                transcode_jobs.update()
                .where(self._owned(job))
                .values(
                    attempt=job.attempt + 1,
                    available_at=utcnow() + timedelta(seconds=delay),
                    claimed_by=None,
                    claim_expires_at=None,
                    last_error=truncate_error(error),
                ),
                db=self.db,
            )
            logger.info(f"Job {job.label} scheduled for attempt {job.attempt + 1} in {delay:.1f}s")
        finally:
            await self.release()
        return delay

    async def reject(self, job: TranscodeJob, error: str) -> bool:
        try:
            await db_execute_with_retry(
                transcode_jobs.update()
                .where(self._owned(job))
                .values(
                    failed_at=utcnow(),
                    claimed_by=None,
                    claim_expires_at=None,
                    last_error=truncate_error(error),
                ),
                db=self.db,
            )
            logger.info(f"Job {job.label} moved to dead letter state: {error[:100]}")
            return True
        finally:
            await self.release()

    async def stats(self) -> Dict[str, Any]:
        now = utcnow()
        open_jobs = sa.and_(transcode_jobs.c.completed_at.is_(None), transcode_jobs.c.failed_at.is_(None))

        async def count(*conditions) -> int:
            query = sa.select(sa.func.count().label("n")).select_from(transcode_jobs).where(*conditions)
            row = await fetch_one_with_retry(query, db=self.db)
            return row["n"] if row else 0

        leases = await fetch_all_with_retry(sa.select(worker_leases), db=self.db)
        return {
            "backend": "database",
            "available": True,
            "queued": await count(open_jobs, transcode_jobs.c.claimed_by.is_(None), transcode_jobs.c.available_at <= now),
            "in_flight": await count(open_jobs, transcode_jobs.c.claimed_by.isnot(None)),
            "delayed": await count(open_jobs, transcode_jobs.c.available_at > now),
            "completed": await count(transcode_jobs.c.completed_at.isnot(None)),
            "dead_letter": await count(transcode_jobs.c.failed_at.isnot(None)),
            "leases": {
                row["slot"]: row["holder"] or None
                for row in leases
                if row["holder"] and ensure_utc(row["expires_at"]) > now
            },
        }


def create_job_queue(mode: str = JOB_QUEUE_MODE, consumer_name: Optional[str] = None) -> JobQueue:
    """Build the queue backend selected by JOB_QUEUE_MODE."""
    if mode == QueueMode.REDIS.value:
        return RedisJobQueue(consumer_name=consumer_name)
    if mode != QueueMode.DATABASE.value:
        logger.warning(f"Unknown job queue mode '{mode}', using database")
    return DatabaseJobQueue(consumer_name=consumer_name)

#!/usr/bin/env python3
"""
vidstream CLI - Command line interface for the transcode pipeline.
"""

import argparse
import asyncio
import re
import shutil
import sys
import uuid
from pathlib import Path

from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn, TimeElapsedColumn
from rich.table import Table

from api.errors import QueueEnqueueError, TranscodeError, truncate_error
from config import DATABASE_URL, ERROR_SUMMARY_MAX_LENGTH, HLS_OUTPUT_DIR, SUPPORTED_VIDEO_EXTENSIONS, UPLOADS_DIR

console = Console()

RESOLUTION_PATTERN = re.compile(r"^(\d+)x(\d+)$")


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def resolution(value: str):
    """Argparse type converter for WIDTHxHEIGHT."""
    match = RESOLUTION_PATTERN.match(value.strip())
    if not match:
        raise argparse.ArgumentTypeError(f"expected WIDTHxHEIGHT, got {value!r}")
    return int(match.group(1)), int(match.group(2))


def validate_file(file_path) -> Path:
    """Check that a source file exists and has a supported extension."""
    path = Path(file_path)
    if not path.is_file():
        raise CLIError(f"File not found: {file_path}")
    if path.suffix.lower() not in SUPPORTED_VIDEO_EXTENSIONS:
        raise CLIError(
            f"Unsupported file type '{path.suffix}'. Supported: {', '.join(sorted(SUPPORTED_VIDEO_EXTENSIONS))}"
        )
    return path


def _run(coro):
    try:
        return asyncio.run(coro)
    except (CLIError, TranscodeError, QueueEnqueueError, ValueError) as e:
        console.print(f"[red]Error:[/red] {truncate_error(str(e), ERROR_SUMMARY_MAX_LENGTH)}")
        sys.exit(1)


async def _with_database(fn):
    from api.database import database

    await database.connect()
    try:
        return await fn(database)
    finally:
        await database.disconnect()


def cmd_init_db(args):
    """Create all tables directly (development; production uses alembic)."""
    from api.database import create_tables

    create_tables()
    console.print(f"Database tables created at {DATABASE_URL}")


def cmd_add_user(args):
    from api.database import users, utcnow

    async def add(db):
        return await db.execute(
            users.insert().values(username=args.username, role=args.role, created_at=utcnow())
        )

    user_id = _run(_with_database(add))
    console.print(f"Created {args.role} '{args.username}' (ID: {user_id})")


def cmd_enqueue(args):
    """Copy a source file into the uploads directory and queue it for transcoding."""
    from api.job_queue import create_job_queue
    from api.uploads import enqueue_transcode
    from api.video_store import VideoStore

    try:
        source = validate_file(args.file)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    video_id = args.video_id or uuid.uuid4().hex[:12]
    title = args.title or source.stem

    async def enqueue(db):
        store = VideoStore(db)
        video = await store.create(video_id, title, uploader_id=args.uploader)
        upload_path = Path(UPLOADS_DIR) / f"{video_id}{source.suffix.lower()}"
        shutil.copy2(source, upload_path)

        queue = create_job_queue()
        await queue.initialize()
        try:
            return await enqueue_transcode(queue, store, video, upload_path, output_dir=HLS_OUTPUT_DIR)
        finally:
            await queue.close()

    job = _run(_with_database(enqueue))
    console.print(f"Queued [bold]{title}[/bold] as video {job.video_id} (record {job.video_doc_id})")


def cmd_worker(args):
    from worker.transcoder import main as worker_main

    worker_main()


def cmd_plan(args):
    """Show the rendition plan for a source resolution."""
    from worker.manifest import bandwidth_for
    from worker.renditions import plan_renditions

    width, height = args.resolution
    try:
        plan = plan_renditions(width, height)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    table = Table(title=f"Renditions for {width}x{height}")
    table.add_column("Variant")
    table.add_column("Name")
    table.add_column("Resolution")
    table.add_column("Bitrate", justify="right")
    table.add_column("BANDWIDTH", justify="right")
    for index, rendition in enumerate(plan):
        table.add_row(
            f"v{index}",
            rendition.name,
            rendition.resolution,
            rendition.bitrate_arg,
            str(bandwidth_for(rendition)),
        )
    console.print(table)


def cmd_probe(args):
    from worker.prober import probe_media

    probe = _run(probe_media(args.file))
    console.print(f"Video:    {probe.width}x{probe.height} ({probe.codec})")
    console.print(f"Audio:    {'yes' if probe.has_audio else 'no'}")
    console.print(f"Duration: {probe.duration:.2f}s")


def cmd_encode(args):
    """Encode a file into an HLS package locally, without the queue."""
    from worker.encoder import encode_hls
    from worker.prober import probe_media
    from worker.renditions import plan_renditions

    try:
        source = validate_file(args.file)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    async def encode():
        probe = await probe_media(source)
        plan = plan_renditions(probe.width, probe.height)
        console.print(f"Encoding {len(plan)} rendition(s): {', '.join(r.name for r in plan)}")

        with Progress(
            TextColumn("[bold blue]{task.description}"),
            BarColumn(),
            TextColumn("{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            task_id = progress.add_task(source.name, total=100)

            async def on_progress(percent: int) -> None:
                progress.update(task_id, completed=percent)

            return await encode_hls(source, Path(args.output), plan, probe.has_audio, probe.duration, on_progress)

    master = _run(encode())
    console.print(f"Master playlist: {master}")


def cmd_queue_stats(args):
    from api.job_queue import create_job_queue

    async def stats(db):
        queue = create_job_queue()
        return await queue.stats()

    result = _run(_with_database(stats))
    table = Table(title=f"Job queue ({result.get('backend', 'unknown')})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for key, value in result.items():
        if key in ("backend", "leases"):
            continue
        table.add_row(key, str(value))
    console.print(table)

    leases = result.get("leases") or {}
    if leases:
        console.print("Active encode leases:")
        for slot, holder in leases.items():
            console.print(f"  slot {slot}: {holder}")
    else:
        console.print("No active encode leases.")


def cmd_notifications(args):
    from api.notifications import NotificationStore

    async def fetch(db):
        return await NotificationStore(db).for_user(args.user_id)

    rows = _run(_with_database(fetch))
    if not rows:
        console.print(f"No notifications for user {args.user_id}.")
        return
    for row in rows:
        marker = " " if row["read"] else "*"
        console.print(f"{marker} [{row['type']}] {row['message']}")


def main():
    parser = argparse.ArgumentParser(prog="vidstream", description="vidstream - HLS transcode pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_parser.set_defaults(func=cmd_init_db)

    user_parser = subparsers.add_parser("add-user", help="Create a user")
    user_parser.add_argument("username", help="Unique username")
    user_parser.add_argument("--role", choices=["user", "admin"], default="user", help="Role (default: user)")
    user_parser.set_defaults(func=cmd_add_user)

    enqueue_parser = subparsers.add_parser("enqueue", help="Queue a video file for transcoding")
    enqueue_parser.add_argument("file", help="Video file to transcode")
    enqueue_parser.add_argument("-t", "--title", help="Video title (default: filename)")
    enqueue_parser.add_argument("--video-id", help="Public video id (default: random)")
    enqueue_parser.add_argument("-u", "--uploader", type=int, help="Uploader user ID")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    worker_parser = subparsers.add_parser("worker", help="Run a transcode worker")
    worker_parser.set_defaults(func=cmd_worker)

    plan_parser = subparsers.add_parser("plan", help="Show renditions for a source resolution")
    plan_parser.add_argument("resolution", type=resolution, help="Source resolution, e.g. 1920x1080")
    plan_parser.set_defaults(func=cmd_plan)

    probe_parser = subparsers.add_parser("probe", help="Probe a video file")
    probe_parser.add_argument("file", help="Video file")
    probe_parser.set_defaults(func=cmd_probe)

    encode_parser = subparsers.add_parser("encode", help="Encode a file to HLS locally")
    encode_parser.add_argument("file", help="Video file")
    encode_parser.add_argument("output", help="Package directory to create")
    encode_parser.set_defaults(func=cmd_encode)

    stats_parser = subparsers.add_parser("queue-stats", help="Show job queue statistics")
    stats_parser.set_defaults(func=cmd_queue_stats)

    notif_parser = subparsers.add_parser("notifications", help="List a user's notifications")
    notif_parser.add_argument("user_id", type=int, help="User ID")
    notif_parser.set_defaults(func=cmd_notifications)

    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()

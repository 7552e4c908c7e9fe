#!/usr/bin/env python3
"""
Media publisher CLI - run the worker and inspect the publish ledger.
"""

import argparse
import asyncio
import sys

from rich.console import Console
from rich.table import Table

from api.errors import truncate_error
from config import (
    CLEANUP_BATCH_SIZE,
    DEFAULT_JOB_PRIORITY,
    ERROR_SUMMARY_MAX_LENGTH,
    MAX_RETRIES,
    ConfigError,
    configure_logging,
    validate_config,
)

console = Console()

JOB_STATUS_STYLES = {
    "pending": "yellow",
    "processing": "cyan",
    "completed": "green",
    "failed": "red",
}


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def positive_int(value: str) -> int:
    """Argparse type converter that validates positive integers."""
    i = int(value)
    if i <= 0:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {i}")
    return i


def _format_time(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


def _styled_status(status: str) -> str:
    style = JOB_STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _run_with_database(coro_factory):
    """Connect the shared database, run one coroutine, disconnect."""
    from api.ledger import database

    async def runner():
        await database.connect()
        try:
            return await coro_factory()
        finally:
            await database.disconnect()

    return asyncio.run(runner())


def build_jobs_table(jobs) -> Table:
    table = Table(title="Publish jobs")
    table.add_column("ID", justify="right")
    table.add_column("File", justify="right")
    table.add_column("Status")
    table.add_column("Priority", justify="right")
    table.add_column("Attempts", justify="right")
    table.add_column("Run after")
    table.add_column("Error")
    for job in jobs:
        table.add_row(
            str(job["id"]),
            str(job["file_id"]) if job["file_id"] is not None else "-",
            _styled_status(job["status"]),
            str(job["priority"]),
            f"{job['retry_count']}/{job['max_retries']}",
            _format_time(job["run_after"]),
            truncate_error(job["error_message"], ERROR_SUMMARY_MAX_LENGTH) or "",
        )
    return table


def build_status_table(statuses) -> Table:
    table = Table(title="Publish status")
    table.add_column("File", justify="right")
    table.add_column("Group")
    table.add_column("Variant")
    table.add_column("Published")
    table.add_column("Job")
    table.add_column("Attempts", justify="right")
    table.add_column("Error")
    for entry in statuses:
        job = entry.get("job")
        table.add_row(
            str(entry["id"]),
            entry["asset_group_id"],
            entry["variant"],
            entry["published_status"],
            _styled_status(job["status"]) if job else "-",
            f"{job['retry_count']}/{job['max_retries']}" if job else "-",
            (truncate_error(job["error_message"], ERROR_SUMMARY_MAX_LENGTH) or "") if job else "",
        )
    return table


def cmd_worker(args):
    """Run the publishing worker until SIGTERM/SIGINT."""
    from worker.publisher import MediaPublisher

    validate_config()
    options = {"http_enabled": not args.no_http}
    if args.concurrency:
        options["concurrency"] = args.concurrency
    asyncio.run(MediaPublisher(**options).run())


def cmd_cleanup(args):
    """Run one cleanup sweep."""
    from worker.cleanup import CleanupProcessor
    from worker.storage import StorageClient

    validate_config()
    processor = CleanupProcessor(StorageClient(), batch_size=args.batch_size)
    cleaned = _run_with_database(processor.process_cleanup)
    console.print(f"Cleaned {cleaned} detached file(s)")


def cmd_jobs(args):
    """List publish jobs."""
    from api import ledger

    jobs = _run_with_database(lambda: ledger.list_jobs(status=args.status, limit=args.limit))
    if not jobs:
        console.print("No publish jobs found.")
        return
    console.print(build_jobs_table(jobs))


def cmd_status(args):
    """Show publish status for file ids."""
    from api import ledger

    statuses = _run_with_database(lambda: ledger.get_publish_status(args.file_ids))
    if not statuses:
        raise CLIError("No matching files found")
    console.print(build_status_table(statuses))


def cmd_enqueue(args):
    """Create a source file row and a pending publish job (what the attach endpoint does)."""
    from api import ledger

    async def enqueue():
        file_id = await ledger.create_source_file(
            asset_group_id=args.asset_group,
            source_key=args.source_key,
            mime_type=args.mime,
            original_name=args.name or args.source_key.rsplit("/", 1)[-1],
            item_id=args.item_id,
        )
        job_id = await ledger.enqueue_publish_job(file_id, priority=args.priority, max_retries=args.max_retries)
        return file_id, job_id

    file_id, job_id = _run_with_database(enqueue)
    console.print(f"Enqueued publish job {job_id} for file {file_id}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="media-publisher", description="Auction media publishing worker")
    parser.add_argument("--log-level", help="Override PUBLISHER_LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    worker_parser = subparsers.add_parser("worker", help="Run the publishing worker")
    worker_parser.add_argument("-c", "--concurrency", type=positive_int, help="Concurrent job slots")
    worker_parser.add_argument("--no-http", action="store_true", help="Do not serve the HTTP endpoints")
    worker_parser.set_defaults(func=cmd_worker)

    cleanup_parser = subparsers.add_parser("cleanup", help="Run one cleanup sweep for detached files")
    cleanup_parser.add_argument(
        "-b", "--batch-size", type=positive_int, default=CLEANUP_BATCH_SIZE, help="Max files per sweep"
    )
    cleanup_parser.set_defaults(func=cmd_cleanup)

    jobs_parser = subparsers.add_parser("jobs", help="List publish jobs")
    jobs_parser.add_argument(
        "-s", "--status", choices=["pending", "processing", "completed", "failed"], help="Filter by status"
    )
    jobs_parser.add_argument("-l", "--limit", type=positive_int, default=50, help="Max jobs to show")
    jobs_parser.set_defaults(func=cmd_jobs)

    status_parser = subparsers.add_parser("status", help="Show publish status of files")
    status_parser.add_argument("file_ids", type=positive_int, nargs="+", help="File ids")
    status_parser.set_defaults(func=cmd_status)

    enqueue_parser = subparsers.add_parser("enqueue", help="Attach a source file and queue a publish job")
    enqueue_parser.add_argument("--source-key", required=True, help="Key of the file on the origin server")
    enqueue_parser.add_argument("--mime", required=True, help="MIME type of the source file")
    enqueue_parser.add_argument("--asset-group", required=True, help="Asset group id")
    enqueue_parser.add_argument("--item-id", help="Inventory item id")
    enqueue_parser.add_argument("--name", help="Original file name (default: last part of the source key)")
    enqueue_parser.add_argument("-p", "--priority", type=int, default=DEFAULT_JOB_PRIORITY, help="Job priority")
    enqueue_parser.add_argument("--max-retries", type=positive_int, default=MAX_RETRIES, help="Retry budget")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(level=args.log_level)

    try:
        args.func(args)
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(2)
    except CLIError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()

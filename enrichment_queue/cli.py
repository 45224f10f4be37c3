#!/usr/bin/env python
"""
CLI for operating the enrichment queue.

Usage:
    python -m enrichment_queue.cli enqueue <subject_id> [--owner <id>] [--priority high]
    python -m enrichment_queue.cli run-once [--max-jobs N]
    python -m enrichment_queue.cli work
    python -m enrichment_queue.cli stats [--window-hours 24]
    python -m enrichment_queue.cli failed [--limit 50]
    python -m enrichment_queue.cli retry <job_id> | --all
    python -m enrichment_queue.cli reap [--timeout-minutes 30]
    python -m enrichment_queue.cli cleanup [--older-than-days 30]

Examples:
    # Cron trigger: drain up to 10 jobs then exit
    python -m enrichment_queue.cli run-once --max-jobs 10

    # Re-queue the whole dead-letter set
    python -m enrichment_queue.cli retry --all
"""

import argparse
import asyncio
import json
import signal
import sys
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

import structlog

from enrichment_queue.config import get_settings
from enrichment_queue.core.lifespan import (
    create_processor,
    create_queue_manager,
    init_database,
)
from enrichment_queue.jobs.errors import QueueError
from enrichment_queue.jobs.models import ProcessingOptions
from enrichment_queue.jobs.worker import EnrichmentWorker, WorkerRunner

# Configure logging for CLI
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=True),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)

logger = structlog.get_logger(__name__)

PASS_FLAGS = {
    "no_embedding": "generate_embedding",
    "no_milestones": "detect_milestones",
    "no_sentiment": "analyze_sentiment",
    "no_insights": "generate_insights",
}


class StoreNotConfigured(Exception):
    pass


@asynccontextmanager
async def open_queue():
    """Yield a queue manager bound to the configured database."""
    settings = get_settings()
    pool = await init_database(settings)
    if pool is None:
        raise StoreNotConfigured("DATABASE_URL is not set or unreachable")
    try:
        yield create_queue_manager(pool, settings)
    finally:
        await pool.close()


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


async def cmd_enqueue(args: argparse.Namespace) -> int:
    """Enqueue a subject."""
    options = ProcessingOptions(
        **{field: not getattr(args, flag) for flag, field in PASS_FLAGS.items()}
    )
    async with open_queue() as manager:
        job_id = await manager.enqueue(
            args.subject_id,
            owner_id=args.owner,
            options=options,
            priority=args.priority,
            max_attempts=args.max_attempts,
        )
    _print_json({"job_id": str(job_id), "status": "queued"})
    return 0


async def cmd_run_once(args: argparse.Namespace) -> int:
    """One worker invocation."""
    settings = get_settings()
    processor = create_processor(settings)
    if processor is None:
        print("Error: PROCESSOR_URL is not set", file=sys.stderr)
        return 1

    try:
        async with open_queue() as manager:
            worker = EnrichmentWorker(manager, processor)
            outcomes = await worker.run_batch(args.max_jobs or settings.job_batch_size)
    finally:
        await processor.close()

    _print_json({"processed": len(outcomes), "jobs": [o.to_dict() for o in outcomes]})
    return 0


async def cmd_work(args: argparse.Namespace) -> int:
    """Long-running polling worker; stops on SIGINT/SIGTERM."""
    settings = get_settings()
    processor = create_processor(settings)
    if processor is None:
        print("Error: PROCESSOR_URL is not set", file=sys.stderr)
        return 1

    try:
        async with open_queue() as manager:
            worker = EnrichmentWorker(manager, processor)
            runner = WorkerRunner(worker, manager, poll_interval_s=args.poll_interval)

            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(
                    sig, lambda: asyncio.ensure_future(runner.stop())
                )

            await runner.start()
    finally:
        await processor.close()
    return 0


async def cmd_stats(args: argparse.Namespace) -> int:
    async with open_queue() as manager:
        stats = await manager.stats(args.window_hours)
    _print_json(stats.to_dict())
    return 0


async def cmd_failed(args: argparse.Namespace) -> int:
    async with open_queue() as manager:
        jobs = await manager.list_failed_jobs(limit=args.limit)
    _print_json([job.to_dict() for job in jobs])
    return 0


async def cmd_retry(args: argparse.Namespace) -> int:
    """Retry one failed job, or all of them."""
    async with open_queue() as manager:
        if args.all:
            retried = await manager.retry_all_failed(limit=args.limit)
            _print_json({"retried_count": retried})
            return 0

        job_id = _parse_uuid(args.job_id)
        if job_id is None:
            print(f"Error: invalid job id: {args.job_id}", file=sys.stderr)
            return 1
        retried = await manager.retry_failed_job(job_id)

    _print_json({"job_id": str(job_id), "retried": retried})
    return 0 if retried else 1


async def cmd_reap(args: argparse.Namespace) -> int:
    async with open_queue() as manager:
        reaped = await manager.reap_stale(args.timeout_minutes)
    _print_json({"reaped": reaped})
    return 0


async def cmd_cleanup(args: argparse.Namespace) -> int:
    async with open_queue() as manager:
        deleted = await manager.cleanup_old_jobs(args.older_than_days)
    _print_json({"deleted": deleted})
    return 0


COMMANDS = {
    "enqueue": cmd_enqueue,
    "run-once": cmd_run_once,
    "work": cmd_work,
    "stats": cmd_stats,
    "failed": cmd_failed,
    "retry": cmd_retry,
    "reap": cmd_reap,
    "cleanup": cmd_cleanup,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Enrichment queue CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a subject")
    enqueue_parser.add_argument("subject_id", help="Record to enrich")
    enqueue_parser.add_argument("--owner", "-o", help="Owner scope (e.g. family id)")
    enqueue_parser.add_argument(
        "--priority",
        "-p",
        choices=["low", "normal", "high"],
        default="normal",
        help="Claim priority (default: normal)",
    )
    enqueue_parser.add_argument(
        "--max-attempts", type=int, help="Attempt ceiling (default from settings)"
    )
    for flag in PASS_FLAGS:
        enqueue_parser.add_argument(
            f"--{flag.replace('_', '-')}",
            action="store_true",
            dest=flag,
            help=f"Disable the {PASS_FLAGS[flag]} pass",
        )

    run_parser = subparsers.add_parser("run-once", help="Process queued jobs and exit")
    run_parser.add_argument(
        "--max-jobs", "-n", type=int, help="Jobs to drain (default from settings)"
    )

    work_parser = subparsers.add_parser("work", help="Run a polling worker")
    work_parser.add_argument(
        "--poll-interval", type=float, help="Seconds to sleep when idle"
    )

    stats_parser = subparsers.add_parser("stats", help="Show queue statistics")
    stats_parser.add_argument("--window-hours", type=int, help="Timing window")

    failed_parser = subparsers.add_parser("failed", help="List failed jobs")
    failed_parser.add_argument("--limit", "-l", type=int, default=50)

    retry_parser = subparsers.add_parser("retry", help="Retry failed jobs")
    retry_parser.add_argument("job_id", nargs="?", help="Failed job to retry")
    retry_parser.add_argument("--all", action="store_true", help="Retry all failed jobs")
    retry_parser.add_argument("--limit", "-l", type=int, default=50)

    reap_parser = subparsers.add_parser("reap", help="Reap stale processing claims")
    reap_parser.add_argument("--timeout-minutes", type=int)

    cleanup_parser = subparsers.add_parser("cleanup", help="Delete old finished jobs")
    cleanup_parser.add_argument("--older-than-days", type=int, default=30)

    return parser


def main(argv: Optional[list[str]] = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "retry" and not args.all and not args.job_id:
        parser.error("retry requires a job id or --all")

    try:
        exit_code = asyncio.run(COMMANDS[args.command](args))
    except StoreNotConfigured as e:
        print(f"Error: {e}", file=sys.stderr)
        exit_code = 1
    except QueueError as e:
        logger.error("command_failed", command=args.command, error=str(e))
        exit_code = 1

    sys.exit(exit_code)


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(value)
    except (TypeError, ValueError):
        return None


if __name__ == "__main__":
    main()

"""Command line interface for the benchmark worker.

    benchmark-worker run --handlers myapp.jobs:registry
    benchmark-worker enqueue evaluate_submission --payload '{"submission_id": "s1"}'
    benchmark-worker stats
    benchmark-worker dlq list --limit 20
    benchmark-worker dlq replay <job-id>
    benchmark-worker dlq purge <job-id>
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Any, Dict, List, Optional

from benchmark_worker.core.config import Settings, get_settings, load_settings_file
from benchmark_worker.core.errors import JobNotFoundError, StoreError
from benchmark_worker.core.job_queue.backends import QueueStore, RedisQueueStore
from benchmark_worker.core.job_queue.core import Job, JobPriority
from benchmark_worker.core.job_queue.dead_letter import DeadLetterAdmin
from benchmark_worker.core.job_queue.producer import JobProducer
from benchmark_worker.core.logging.structured import setup_structured_logging
from benchmark_worker.main import load_registry, run_service

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="benchmark-worker",
        description="Background job worker for the LLM benchmark exchange",
    )
    parser.add_argument("--config", help="JSON settings file layered over the environment")
    parser.add_argument("--redis-url", help="Queue store URL (overrides REDIS_URL)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start the worker pool")
    run.add_argument(
        "--handlers",
        required=True,
        help="HandlerRegistry to load, as module:attr",
    )
    run.add_argument("--workers", type=int, help="Pool size (overrides WORKER_POOL_SIZE)")
    run.add_argument(
        "--scheduler",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Run the recurring maintenance scheduler",
    )

    enqueue = sub.add_parser("enqueue", help="Submit a job")
    enqueue.add_argument("job_type")
    enqueue.add_argument("--payload", default="{}", help="JSON object passed to the handler")
    enqueue.add_argument(
        "--priority",
        choices=[p.value for p in JobPriority.polling_order()],
        default=JobPriority.NORMAL.value,
    )
    enqueue.add_argument("--delay", type=float, help="Seconds before the job becomes runnable")

    sub.add_parser("stats", help="Show queue depths")

    dlq = sub.add_parser("dlq", help="Dead letter administration")
    dlq_sub = dlq.add_subparsers(dest="dlq_command", required=True)
    dlq_list = dlq_sub.add_parser("list", help="List dead-lettered jobs, newest first")
    dlq_list.add_argument("--limit", type=int, default=100)
    dlq_replay = dlq_sub.add_parser("replay", help="Re-enqueue a dead-lettered job")
    dlq_replay.add_argument("job_id")
    dlq_purge = dlq_sub.add_parser("purge", help="Discard a dead-lettered job")
    dlq_purge.add_argument("job_id")

    return parser


def _load_settings(args: argparse.Namespace) -> Settings:
    overrides: Dict[str, Any] = {}
    if args.redis_url:
        overrides["REDIS_URL"] = args.redis_url
    if getattr(args, "workers", None) is not None:
        overrides["WORKER_POOL_SIZE"] = args.workers

    if args.config:
        return load_settings_file(args.config, overrides)
    if overrides:
        return Settings(**overrides)
    return get_settings()


def _open_store(settings: Settings) -> QueueStore:
    return RedisQueueStore.from_url(settings.REDIS_URL, key_prefix=settings.WORKER_KEY_PREFIX)


def _format_job(job: Job) -> str:
    return (
        f"{job.id}  {job.job_type:<24} {job.priority.value:<8} "
        f"retries={job.retry_count}  error={job.error}"
    )


async def _enqueue(store: QueueStore, args: argparse.Namespace) -> int:
    try:
        payload = json.loads(args.payload)
    except ValueError as e:
        print(f"Invalid --payload: {e}", file=sys.stderr)
        return 2
    if not isinstance(payload, dict):
        print("--payload must be a JSON object", file=sys.stderr)
        return 2

    job = await JobProducer(store).enqueue(
        args.job_type,
        payload,
        JobPriority(args.priority),
        delay=args.delay,
    )
    print(job.id)
    return 0


async def _stats(store: QueueStore) -> int:
    for priority in JobPriority.polling_order():
        print(f"{priority.value:<12} {await store.queue_length(store.queue_name(priority))}")
    print(f"{'delayed':<12} {await store.delayed_length()}")
    print(f"{'dead_letter':<12} {await store.dead_letter_length()}")
    return 0


async def _dlq(store: QueueStore, args: argparse.Namespace) -> int:
    admin = DeadLetterAdmin(store)
    if args.dlq_command == "list":
        jobs = await admin.list(args.limit)
        for job in jobs:
            print(_format_job(job))
        print(f"{len(jobs)} of {await admin.count()} dead-lettered jobs")
    elif args.dlq_command == "replay":
        job = await admin.replay(args.job_id)
        print(f"Replayed {job.id} onto {job.priority.value}")
    elif args.dlq_command == "purge":
        job = await admin.purge(args.job_id)
        print(f"Purged {job.id}")
    return 0


async def _admin(settings: Settings, args: argparse.Namespace) -> int:
    store = _open_store(settings)
    try:
        if args.command == "enqueue":
            return await _enqueue(store, args)
        if args.command == "stats":
            return await _stats(store)
        return await _dlq(store, args)
    finally:
        await store.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = _load_settings(args)
    except (OSError, ValueError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    if args.command == "run":
        setup_structured_logging(
            level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
            json_output=settings.LOG_JSON,
        )
        try:
            registry = load_registry(args.handlers)
        except (ImportError, ValueError) as e:
            logger.error(f"Could not load handlers: {e}")
            return 1
        try:
            asyncio.run(run_service(settings, registry, scheduler_enabled=args.scheduler))
        except StoreError as e:
            logger.error(f"Worker failed to start: {e}")
            return 1
        return 0

    try:
        return asyncio.run(_admin(settings, args))
    except JobNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    except StoreError as e:
        print(f"Queue store error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())

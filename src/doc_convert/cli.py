import argparse
import json
import shutil
import sys
import threading
import uuid
from pathlib import Path

from .config import resolve_config
from .errors import DocConvertError
from .logging_setup import configure_logging
from .queue.models import ConversionType
from .runtime import build_runtime


def _add_common(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--db", type=str, help="Queue database path (DATABASE_PATH)")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (LOG_LEVEL)",
    )


def _banner(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def _stage_input(source: Path, uploads_dir: str) -> Path:
    """Copy an input into the uploads dir; the job owns (and later deletes) the copy."""
    target_dir = Path(uploads_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    target = target_dir / f"{uuid.uuid4()}{source.suffix}"
    shutil.copyfile(source, target)
    return target


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="doc-convert: background document conversion jobs"
    )
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    _add_common(serve_parser)
    serve_parser.add_argument("--host", type=str, help="Bind address")
    serve_parser.add_argument("--port", type=int, help="Bind port (PORT)")
    serve_parser.add_argument("--workers", "-w", type=int, help="In-process worker threads")
    serve_parser.add_argument(
        "--no-workers", action="store_true", help="Do not run workers inside the API process"
    )

    # Worker command
    worker_parser = subparsers.add_parser("worker", help="Run a standalone worker pool")
    _add_common(worker_parser)
    worker_parser.add_argument("--workers", "-w", type=int, help="Worker threads (WORKER_CONCURRENCY)")
    worker_parser.add_argument("--timeout", type=float, help="Per-attempt timeout in seconds (JOB_TIMEOUT)")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Process eligible jobs then exit"
    )
    worker_parser.add_argument(
        "--max-jobs", type=int, help="Process at most N jobs then exit (implies --drain)"
    )

    # Enqueue command
    enqueue_parser = subparsers.add_parser("enqueue", help="Submit a conversion job")
    _add_common(enqueue_parser)
    enqueue_parser.add_argument(
        "type", type=str, choices=[t.value for t in ConversionType], help="Conversion type"
    )
    enqueue_parser.add_argument("input", type=str, help="Input file")
    enqueue_parser.add_argument("--options", type=str, help="Converter options as JSON")
    enqueue_parser.add_argument("--max-attempts", type=int, help="Attempt ceiling (JOB_ATTEMPTS)")

    # Status / cancel
    status_parser = subparsers.add_parser("status", help="Show a job's status")
    _add_common(status_parser)
    status_parser.add_argument("job_id", type=str)

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a job")
    _add_common(cancel_parser)
    cancel_parser.add_argument("job_id", type=str)

    # List
    list_parser = subparsers.add_parser("list", help="List jobs")
    _add_common(list_parser)
    list_parser.add_argument("--state", type=str, default="all", help="State filter (default: all)")
    list_parser.add_argument("--limit", type=int, help="Page size per state")
    list_parser.add_argument("--offset", type=int, default=0, help="Offset per state")

    # Queue management
    queue_parser = subparsers.add_parser("queue", help="Manage job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue command")

    stats_parser = queue_subparsers.add_parser("stats", help="Show job counts per state")
    _add_common(stats_parser)

    retry_parser = queue_subparsers.add_parser("retry", help="Re-enqueue failed jobs as new jobs")
    _add_common(retry_parser)

    purge_parser = queue_subparsers.add_parser("purge", help="Delete old finished jobs")
    _add_common(purge_parser)
    purge_parser.add_argument(
        "--older-than",
        type=float,
        required=True,
        help="Age in seconds since the job finished",
    )

    reap_parser = queue_subparsers.add_parser("reap", help="Return jobs with expired leases to waiting")
    _add_common(reap_parser)

    return parser


def _run_worker(runtime, args) -> None:
    if args.drain or args.max_jobs is not None:
        stats = runtime.pool.drain(max_jobs=args.max_jobs)
        _banner("PROCESSING SUMMARY")
        print(f"Completed:            {stats['completed']}")
        print(f"Failed:               {stats['failed']}")
        print(f"Retried (delayed):    {stats['retried']}")
        print(f"Cancelled:            {stats['cancelled']}")
        print(f"Lost claims:          {stats['lost']}")
        print("=" * 60)
        return

    print(f"Starting {runtime.config.workers.concurrency} worker(s); Ctrl+C to stop")
    print(f"Converters: {', '.join(runtime.dispatcher.supported_types()) or '(none)'}")
    with runtime.pool:
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            print("\nStopping workers (running conversions finish their attempt)...")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return
    if args.command == "queue" and args.queue_command is None:
        parser.parse_args(["queue", "--help"])
        return

    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    try:
        config = resolve_config(cli_dict)
    except ValueError as e:
        print(f"❌ Invalid configuration: {e}")
        sys.exit(2)
    configure_logging(config.logging)

    if args.command == "serve":
        from .api.main import run

        if args.no_workers:
            config = config.model_copy(
                update={"api": config.api.model_copy(update={"start_workers": False})}
            )
        run(config=config)
        return

    runtime = build_runtime(config)
    try:
        _dispatch(runtime, args)
    except DocConvertError as e:
        print(f"❌ {e.message}")
        sys.exit(1)
    finally:
        runtime.close()


def _dispatch(runtime, args) -> None:
    service = runtime.service

    if args.command == "worker":
        _run_worker(runtime, args)

    elif args.command == "enqueue":
        source = Path(args.input)
        if not source.is_file():
            print(f"❌ Input not found: {source}")
            sys.exit(1)
        try:
            options = json.loads(args.options) if args.options else {}
        except json.JSONDecodeError as e:
            print(f"❌ --options is not valid JSON: {e.msg}")
            sys.exit(1)
        staged = _stage_input(source, runtime.config.storage.uploads_dir)
        try:
            job_id = service.enqueue(
                args.type,
                {"input_ref": str(staged), "filename": source.name},
                options,
                args.max_attempts,
            )
        except DocConvertError:
            staged.unlink(missing_ok=True)
            raise
        print(f"✅ Enqueued job {job_id}")

    elif args.command == "status":
        view = service.status(args.job_id)
        _banner(f"JOB {view.jobId}")
        print(f"Type:                 {view.type}")
        print(f"State:                {view.state}")
        print(f"Progress:             {view.progress}%")
        print(f"Attempts:             {view.attemptsMade}/{view.maxAttempts}")
        print(f"Created:              {view.createdAt.isoformat()}")
        if view.processedAt:
            print(f"Processed:            {view.processedAt.isoformat()}")
        if view.finishedAt:
            print(f"Finished:             {view.finishedAt.isoformat()}")
        if view.failureReason:
            print(f"Failure:              {view.failureReason}")
        if view.result:
            print(f"Result:               {view.result.get('filename')} ({view.result.get('size')} bytes)")
        print("=" * 60)

    elif args.command == "cancel":
        view = service.cancel(args.job_id)
        print(f"✅ {view.message}")

    elif args.command == "list":
        view = service.list(args.state, args.limit, args.offset)
        for job in view.jobs:
            print(
                f"{job.jobId}  {job.state:<10} {job.progress:>3}%  "
                f"{job.data.get('type')}  {job.data.get('filename') or ''}"
            )
        print(f"\n{view.total} job(s) (limit {view.limit} per state, offset {view.offset})")

    elif args.command == "queue":
        if args.queue_command == "stats":
            stats = service.stats()
            _banner("QUEUE STATUS")
            print(f"Waiting:              {stats['waiting']}")
            print(f"Active:               {stats['active']}")
            print(f"Delayed:              {stats['delayed']}")
            print(f"Completed:            {stats['completed']}")
            print(f"Failed:               {stats['failed']}")
            print(f"Cancelled:            {stats['cancelled']}")
            print(f"Total:                {stats['total']}")
            print("=" * 60)

        elif args.queue_command == "retry":
            count = service.retry_failed()
            print(f"✅ Re-enqueued {count} failed job(s)")

        elif args.queue_command == "purge":
            count = service.purge(args.older_than)
            print(f"✅ Purged {count} finished job(s)")

        elif args.queue_command == "reap":
            reaped = runtime.pool.reap()
            print(f"✅ Reaped {len(reaped)} expired claim(s)")


if __name__ == "__main__":
    main()

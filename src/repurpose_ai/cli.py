import argparse
import logging
import sys
from pathlib import Path

from . import pipeline
from .config import configure_logging, resolve_config
from .errors import FatalConfigError, TransientQueueError
from .queue import Dispatcher

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repurpose-ai", description="Asynchronous video analysis job pipeline"
    )
    parser.add_argument("--config", "-c", type=str, help="Config file (default: config/default.yaml)")
    parser.add_argument("--queue-url", type=str, help="Override queue store URL")
    parser.add_argument("--storage-url", type=str, help="Override analysis store URL")
    parser.add_argument(
        "--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Override log level"
    )
    subparsers = parser.add_subparsers(dest="command", help="Subcommands")

    # SUBMIT
    submit_parser = subparsers.add_parser("submit", help="Enqueue analysis of one video")
    submit_parser.add_argument("--video-id", required=True, type=str, help="Video to analyze")
    submit_parser.add_argument("--user-id", required=True, type=str, help="Owner of the video")
    submit_parser.add_argument("--max-attempts", type=int, help="Override retry budget")

    # WORKER
    worker_parser = subparsers.add_parser("worker", help="Run the worker pool")
    worker_parser.add_argument("--workers", "-w", type=int, help="Number of parallel workers")
    worker_parser.add_argument(
        "--drain", action="store_true", help="Process visible jobs, then exit"
    )
    worker_parser.add_argument("--max-jobs", type=int, help="Max jobs to lease (with --drain)")
    worker_parser.add_argument("--capability", type=str, help="'demo' or 'package.module:attr'")

    # QUEUE subcommands (status, dead, retry, recover)
    queue_parser = subparsers.add_parser("queue", help="Inspect and manage the job queue")
    queue_subparsers = queue_parser.add_subparsers(dest="queue_command", help="Queue commands")
    queue_subparsers.add_parser("status", help="Show job counts per state")
    dead_parser = queue_subparsers.add_parser("dead", help="List dead-lettered jobs")
    dead_parser.add_argument("--limit", type=int, default=50, help="Max jobs to show")
    retry_parser = queue_subparsers.add_parser("retry", help="Requeue a dead job")
    retry_parser.add_argument("job_id", type=str, help="Dead job to requeue")
    retry_parser.add_argument("--max-attempts", type=int, help="Fresh attempt budget")
    queue_subparsers.add_parser("recover", help="Reset expired leases (crash recovery)")

    # CHECK
    subparsers.add_parser("check", help="Validate configuration and exit")

    parser.set_defaults(queue_parser=queue_parser)
    return parser


def _print_queue_status(stats: dict) -> None:
    print("\n" + "=" * 60)
    print("QUEUE STATUS")
    print("=" * 60)
    print(f"Pending:              {stats['pending']}")
    print(f"Active:               {stats['active']}")
    print(f"Failed (retrying):    {stats['failed']}")
    print(f"Completed:            {stats['completed']}")
    print(f"Dead:                 {stats['dead']}")
    print(f"Total:                {stats['total']}")
    print("=" * 60)


def _print_processing_summary(stats: dict) -> None:
    print("\n" + "=" * 60)
    print("PROCESSING SUMMARY")
    print("=" * 60)
    print(f"Completed:            {stats['completed']}")
    print(f"  already committed:  {stats['already_committed']}")
    print(f"Retries scheduled:    {stats['retried']}")
    print(f"Dead-lettered:        {stats['dead']}")
    print(f"Total duration:       {stats['total_duration']:.2f}s")
    print("=" * 60)


def run_command(args: argparse.Namespace) -> int:
    """Execute a parsed command. Returns the process exit code."""
    # Convert args to dict, filtering None
    cli_dict = {k: v for k, v in vars(args).items() if v is not None}
    config_path = Path(args.config) if args.config else None

    config = resolve_config(cli_dict, config_path=config_path)
    configure_logging(config)

    if args.command == "check":
        print("✅ Configuration OK")
        print(f"Queue:       {config.queue.url}")
        print(f"Storage:     {config.storage.url}")
        print(f"Workers:     {config.worker.concurrency}")
        print(f"Capability:  {config.capability.target}")
        return 0

    if args.command == "submit":
        with pipeline.open_handles(config) as handles:
            job_id = pipeline.submit_analysis_job(
                handles.queue, args.video_id, args.user_id, config.retry.max_attempts
            )
        print(f"Enqueued job {job_id} for video {args.video_id}")
        return 0

    if args.command == "worker":
        handles = pipeline.build_handles(config)
        if args.drain:
            try:
                stats = pipeline.process_queue(config, handles, max_jobs=args.max_jobs)
            finally:
                handles.close()
            _print_processing_summary(stats)
            return 0

        dispatcher = Dispatcher.from_config(
            config, handles.queue, handles.store, handles.capability
        )
        dispatcher.run_forever()
        return 0

    if args.command == "queue":
        with pipeline.open_handles(config) as handles:
            if args.queue_command == "status":
                _print_queue_status(pipeline.get_queue_stats(handles.queue))

            elif args.queue_command == "dead":
                jobs = pipeline.list_dead_jobs(handles.queue, limit=args.limit)
                if not jobs:
                    print("No dead jobs.")
                for job in jobs:
                    print(
                        f"{job.job_id}  video={job.video_id}  attempts={job.attempt}/"
                        f"{job.max_attempts}  error={job.last_error}"
                    )

            elif args.queue_command == "retry":
                requeued = pipeline.retry_dead_job(
                    handles.queue, args.job_id, config.retry.max_attempts
                )
                if not requeued:
                    print(f"❌ Job {args.job_id} is not dead (or does not exist)")
                    return 1
                print(f"Requeued job {args.job_id}")

            elif args.queue_command == "recover":
                count = pipeline.recover_abandoned(handles.queue)
                print(f"Recovered {count} job(s) with expired leases")

            else:
                args.queue_parser.print_help()
        return 0

    return 0


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        return

    try:
        code = run_command(args)
    except FatalConfigError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)
    except TransientQueueError as e:
        logger.error("Queue store unavailable: %s", e)
        sys.exit(1)

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()

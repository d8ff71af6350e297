"""Command line entry point: python -m harvester {serve,run-once,scheduler,init-db}."""
import argparse
import asyncio
import logging
import signal
import sys

from core.exceptions import HarvesterError, QuotaExceededError
from harvester.models import PROFILE_FETCHER_JOB

logger = logging.getLogger("harvester")


def _print_run(history):
    print(f"Job:             {history.job_name}")
    print(f"Status:          {history.status}")
    print(f"Duration:        {history.duration_seconds}s")
    print(f"Processed:       {history.total_processed} "
          f"(ok={history.successful_count}, failed={history.failed_count})")
    print(f"API calls made:  {history.api_calls_made}")
    print(f"Quota remaining: {history.quota_remaining}")
    if history.error_summary:
        print(f"Errors:          {history.error_summary}")


async def _run_once(job_name: str) -> int:
    from harvester.scheduler import build_scheduler
    from services.job_service import JobService

    scheduler = build_scheduler()
    JobService.ensure_default_configs(scheduler.settings)
    try:
        history = await scheduler.trigger_now(job_name)
    except QuotaExceededError as e:
        print(f"Quota exceeded: {e}", file=sys.stderr)
        if e.history is not None:
            _print_run(e.history)
        return 2
    except LookupError as e:
        print(str(e), file=sys.stderr)
        return 1
    if hasattr(history, "status"):
        _print_run(history)
    return 0


async def _run_scheduler() -> int:
    from harvester.scheduler import build_scheduler

    scheduler = build_scheduler()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    scheduler.start()
    for nr in scheduler.get_next_runs():
        logger.info("[SCHEDULER] %s next run at %s", nr["name"], nr["next_run"])
    await stop.wait()
    logger.info("[SCHEDULER] Signal received, shutting down")
    await scheduler.stop()
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="harvester", description="Profile acquisition pipeline")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the admin API with the scheduler")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8002)

    run_once = sub.add_parser("run-once", help="Run one job now and print its summary")
    run_once.add_argument("--job", default=PROFILE_FETCHER_JOB, help="Job name (default: %(default)s)")

    sub.add_parser("scheduler", help="Run the scheduler until SIGINT/SIGTERM")
    sub.add_parser("init-db", help="Create database tables")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    from harvester.database import init_db

    try:
        if args.command == "init-db":
            init_db()
            print("Database initialized")
            return 0

        if args.command == "serve":
            import uvicorn
            from harvester.app import app
            uvicorn.run(app, host=args.host, port=args.port)
            return 0

        init_db()
        if args.command == "run-once":
            return asyncio.run(_run_once(args.job))
        return asyncio.run(_run_scheduler())
    except HarvesterError as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())

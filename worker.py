"""
Standalone cloud compute worker for NeuroData Hub.

Polls ``cloud_compute_jobs`` for pending jobs and executes them node by
node with Gemini, outside the API process. Run one instance per host:

    python worker.py --poll-seconds 5 --max-jobs 3
"""

import argparse
import signal
import sys
import threading

from api.jobs import CloudComputeWorker, JobManager
from api.shared.logger import get_logger, setup_logging
from api.shared.settings import get_settings

logger = get_logger("worker")


def main(argv=None) -> int:
    settings = get_settings()

    parser = argparse.ArgumentParser(description="NeuroData Hub cloud compute worker")
    parser.add_argument(
        "--poll-seconds",
        type=float,
        default=settings.worker_poll_seconds,
        help="Seconds between polls (default: CLOUD_WORKER_POLL_SECONDS or 5)",
    )
    parser.add_argument(
        "--max-jobs",
        type=int,
        default=settings.worker_max_jobs,
        help="Concurrent jobs (default: CLOUD_WORKER_MAX_JOBS or 3)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=settings.log_level,
        help="Log level (default: NEURODATA_LOG_LEVEL or INFO)",
    )
    args = parser.parse_args(argv)

    setup_logging(args.log_level)

    if not settings.gemini_configured:
        logger.error("GOOGLE_GEMINI_API_KEY is not set; the worker cannot process jobs")
        return 1

    manager = JobManager(max_workers=args.max_jobs)
    worker = CloudComputeWorker(manager=manager, max_jobs=args.max_jobs, poll_seconds=args.poll_seconds)
    stop_event = threading.Event()

    def handle_signal(signum, frame):
        logger.info("Received signal %d, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    logger.info("Cloud compute worker started")
    worker.run_forever(stop_event)
    manager.shutdown(wait=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Command-line entry point: web server, scheduler worker and one-off ticks."""

from __future__ import annotations

import argparse
import json
import logging
import threading
from dataclasses import replace
from pathlib import Path

from photolessons.app import create_app
from photolessons.config import ensure_storage_dirs, get_paths, load_settings
from photolessons.logging_setup import setup_logging
from photolessons.services.enqueue import scan_uploads
from photolessons.services.jobs import Scheduler, start_background
from photolessons.services.pipeline_orchestrator import build_context
from photolessons.services.queue import QueueStore

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="photolessons")
    parser.add_argument("--root", type=Path, default=None, help="Data root directory")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the upload and queue monitor server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=5000)
    serve.add_argument(
        "--with-worker",
        action="store_true",
        help="Also run the scheduler on a background thread",
    )

    worker = subparsers.add_parser("worker", help="Scan uploads and tick the scheduler forever")
    worker.add_argument("--interval", type=int, default=None, help="Seconds between ticks")

    subparsers.add_parser("tick", help="Run one scheduler tick and exit")
    subparsers.add_parser("scan", help="Queue every photo waiting in uploads")
    return parser


class _ScanningScheduler(Scheduler):
    """Scheduler that also picks up new uploads before each tick."""

    def tick(self):
        scan_uploads(self.store, self.context.paths, self.settings.valid_categories)
        return super().tick()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    paths = get_paths(args.root)
    settings = load_settings()
    setup_logging(paths.logs_dir, role=args.command)
    ensure_storage_dirs(paths)
    store = QueueStore(paths.db_path)

    if args.command == "scan":
        queued = scan_uploads(store, paths, settings.valid_categories)
        print(json.dumps({"queued": [job.id for job in queued]}))
        return 0

    if args.command == "serve":
        stop = threading.Event()
        if args.with_worker:
            start_background(_ScanningScheduler(build_context(paths, settings, store)), stop)
        try:
            create_app(paths.root, store).run(host=args.host, port=args.port)
        finally:
            stop.set()
        return 0

    if args.command == "worker" and args.interval is not None:
        settings = replace(settings, tick_interval_seconds=args.interval)
    scheduler = _ScanningScheduler(build_context(paths, settings, store))
    if args.command == "tick":
        outcome = scheduler.tick()
        print(json.dumps({"action": outcome.action, "jobId": outcome.job_id, "detail": outcome.detail}))
        return 0

    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        logger.info("Worker stopped", extra={"event": "worker_stopped"})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

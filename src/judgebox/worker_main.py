from __future__ import annotations

import argparse
import signal
import threading
from typing import List, Optional

from .bootstrap import build_pool, build_service
from .core.settings import load_settings
from .logging import setup_logging


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="judgebox-worker", description="Run the judge worker pool")
    p.add_argument("--concurrency", type=int, default=None, help="override JUDGE_MAX_CONCURRENT")
    p.add_argument("--log-level", default=None, help="override JUDGE_LOG_LEVEL")
    p.add_argument("--no-sweep", action="store_true", help="skip removing stale workspaces at startup")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    overrides = {}
    if args.concurrency is not None:
        overrides["max_concurrent"] = args.concurrency
    if args.log_level:
        overrides["log_level"] = args.log_level
    if overrides:
        settings = settings.model_copy(update=overrides)

    log = setup_logging(settings.log_level)
    service = build_service(settings)
    if not args.no_sweep:
        service.sandbox.storage.sweep_stale()
    pool = build_pool(service)

    stop = threading.Event()

    def _on_signal(signum, _frame):
        log.info("worker_signal", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    pool.start()
    log.info("worker_ready", concurrency=settings.max_concurrent, queue=settings.queue_name)
    while not stop.wait(1.0):
        pass
    pool.stop(timeout=settings.compile_timeout_s + settings.max_time_limit_ms / 1000.0)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

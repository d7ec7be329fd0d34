"""
Background worker process.

    trademaster-worker run             worker pool + sweep scheduler
    trademaster-worker pool            worker pool only
    trademaster-worker scheduler       sweep scheduler only
    trademaster-worker sweep NAME      run one sweep now and exit
    trademaster-worker stats           print queue counters and exit

SIGTERM/SIGINT stop claiming new jobs; in-flight jobs finish before exit.
"""
import argparse
import json
import logging
import signal
import sys
import threading

from trademaster.core.config import settings
from trademaster.core.database import init_db
from trademaster.logging import setup_logging
from trademaster.runtime import Runtime, build_runtime
from trademaster.scheduler.core import (
    SWEEP_ANALYSIS_CLEANUP,
    SWEEP_TRADE_ANALYSIS,
    SWEEP_USAGE_STATISTICS,
    SWEEP_WEEKLY_INSIGHTS,
)

log = logging.getLogger("trademaster.worker")

SWEEP_NAMES = (SWEEP_TRADE_ANALYSIS, SWEEP_ANALYSIS_CLEANUP, SWEEP_USAGE_STATISTICS, SWEEP_WEEKLY_INSIGHTS)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="trademaster-worker", description="TradeMaster AI analysis worker")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("run", help="worker pool and sweep scheduler")
    sub.add_parser("pool", help="worker pool only")
    sub.add_parser("scheduler", help="sweep scheduler only")
    sweep = sub.add_parser("sweep", help="run one sweep now")
    sweep.add_argument("name", choices=SWEEP_NAMES)
    sub.add_parser("stats", help="print queue counters")
    return parser


def _serve(runtime: Runtime, *, pool: bool, scheduler: bool) -> None:
    stop = threading.Event()

    def _handle_signal(signum, frame):
        log.info("Received %s, shutting down gracefully", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if pool:
        runtime.pool.start()
    if scheduler:
        runtime.scheduler.start()
    log.info(
        "worker running queue=%s pool=%s scheduler=%s concurrency=%s",
        runtime.store.queue_name,
        pool,
        scheduler,
        runtime.pool.concurrency,
    )
    while not stop.is_set():
        stop.wait(1.0)
    runtime.shutdown()
    log.info("worker stopped")


def main(argv: list[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(level=args.log_level.upper())
    init_db()
    runtime = build_runtime(settings)

    if args.command in ("sweep", "stats"):
        try:
            if args.command == "sweep":
                result = runtime.scheduler.run_sweep(args.name)
                print(json.dumps({"sweep": args.name, **result.as_dict()}))
            else:
                print(
                    json.dumps(
                        {
                            "queue": runtime.store.queue_name,
                            "paused": runtime.store.is_paused(),
                            "counts": runtime.store.counts(),
                            "kinds": runtime.store.kind_stats(),
                            "workers": runtime.store.worker_status(),
                        },
                        indent=2,
                    )
                )
        finally:
            runtime.executor.close()
        return 0
    _serve(
        runtime,
        pool=args.command in ("run", "pool"),
        scheduler=args.command in ("run", "scheduler"),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

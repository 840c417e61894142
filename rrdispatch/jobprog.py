"""
Worker program backing one dispatched job.

The service-time argument is only a hint for logging: the worker keeps
running until it is told to stop. Suspension and resumption are handled by
the kernel (SIGSTOP / SIGCONT), so no state is lost across a pause.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import time

READY_BANNER = "ready"

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rr-jobprog",
        description="Job worker that runs until the dispatcher stops it.",
    )
    parser.add_argument("service_hint", type=int, help="Service time hint (informational only).")
    parser.add_argument(
        "--work-interval",
        type=float,
        default=0.05,
        help="Seconds per unit of simulated work (default: 0.05).",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="[job pid=%(process)d] %(message)s")

    stopping = False

    def _request_stop(signum, frame) -> None:
        nonlocal stopping
        stopping = True

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    # Handlers are in place; from here on a stop request cannot be lost.
    print(f"{READY_BANNER} pid={os.getpid()} service_hint={args.service_hint}", flush=True)
    logger.info("started, service_hint=%d", args.service_hint)

    units = 0
    while not stopping:
        time.sleep(args.work_interval)
        units += 1

    logger.info("stopped after %d work units", units)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

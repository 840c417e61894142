from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .dispatcher import Dispatcher
from .gantt import build_rich_gantt, render_trace_strip, trace_to_slices
from .metrics import summarize_job_stats
from .models import DispatchResult, Job
from .workers import ProcessWorkerControl, SimulatedWorkerControl, WorkerControl
from .workload_io import load_jobs


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rr-dispatch",
        description="Round-Robin dispatcher (quantum = 1 tick) driving one worker per job.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level for dispatcher events (default: WARNING).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Dispatch the jobs in a job list file.")
    run_parser.add_argument(
        "--workload",
        "-w",
        required=True,
        help="Path to CSV (arrival,id,service) or JSON job list.",
    )
    run_parser.add_argument(
        "--worker",
        choices=["process", "simulated"],
        default="process",
        help="Back each job with a real OS process or an in-memory stand-in (default: process).",
    )
    run_parser.add_argument(
        "--tick-seconds",
        type=float,
        default=None,
        help="Wall-clock length of one tick (default: 1.0 for process workers, 0 for simulated).",
    )
    run_parser.add_argument(
        "--ready-timeout",
        type=float,
        default=5.0,
        help="Seconds to wait for a new worker to report ready (default: 5.0).",
    )
    run_parser.add_argument(
        "--stop-timeout",
        type=float,
        default=2.0,
        help="Seconds to wait for a stopped worker to exit before killing it (default: 2.0).",
    )
    run_parser.add_argument(
        "--events",
        action="store_true",
        help="Print the tick-by-tick event log.",
    )

    return parser


def _make_control(args: argparse.Namespace) -> WorkerControl:
    if args.worker == "simulated":
        return SimulatedWorkerControl()
    return ProcessWorkerControl(ready_timeout=args.ready_timeout, stop_timeout=args.stop_timeout)


def _print_job_table(jobs: List[Job], console: Console) -> None:
    table = Table(title="Job table", box=box.SIMPLE_HEAVY)
    table.add_column("Job", justify="center")
    table.add_column("Arrival", justify="right")
    table.add_column("Service", justify="right")
    for job in jobs:
        table.add_row(f"J{job.job_id}", str(job.arrival_time), str(job.service_time))
    console.print(table)


def _print_events(result: DispatchResult, console: Console) -> None:
    table = Table(title="Events", box=box.SIMPLE_HEAVY)
    table.add_column("Tick", justify="right")
    table.add_column("Job", justify="center")
    table.add_column("Event")
    table.add_column("Detail")
    for ev in result.events:
        table.add_row(str(ev.tick), f"J{ev.job_id}", ev.kind.value, ev.detail)
    console.print(table)


def _print_result(result: DispatchResult, console: Console) -> None:
    panel, time_marks = build_rich_gantt(trace_to_slices(result.trace))
    console.print(panel)
    if time_marks:
        console.print(time_marks)
    console.print()
    console.print(render_trace_strip(result.trace), highlight=False)
    console.print()

    headers = ["Job", "Arrive", "Service", "Start", "Complete", "Wait", "Turnaround", "Response", "Note"]

    job_table = Table(title="Per-job metrics", box=box.SIMPLE_HEAVY)
    for h in headers:
        justify = "center" if h in {"Job", "Note"} else "right"
        job_table.add_column(h, justify=justify)

    for s in result.jobs:
        job_table.add_row(
            f"J{s.job_id}",
            str(s.arrival_time),
            str(s.service_time),
            str(s.start_tick),
            str(s.completion_tick),
            str(s.waiting_time),
            str(s.turnaround_time),
            str(s.response_time),
            "exited early" if s.reconciled else "",
        )

    console.print(job_table)

    if result.failed:
        failed_table = Table(title="Failed jobs", box=box.SIMPLE_HEAVY)
        failed_table.add_column("Job", justify="center")
        failed_table.add_column("Arrive", justify="right")
        failed_table.add_column("Reason")
        for f in result.failed:
            failed_table.add_row(f"J{f.job_id}", str(f.arrival_time), f.reason)
        console.print(failed_table)

    console.print()

    summary = summarize_job_stats(result.jobs)
    if result.system:
        sys = result.system
        sys_table = Table(title="System metrics", box=box.SIMPLE_HEAVY)
        sys_table.add_column("Metric")
        sys_table.add_column("Value", justify="right")

        sys_table.add_row("Avg waiting", f"{summary['avg_waiting']:.2f}")
        sys_table.add_row("Avg turnaround", f"{summary['avg_turnaround']:.2f}")
        sys_table.add_row("Avg response", f"{summary['avg_response']:.2f}")
        sys_table.add_row("Makespan (ticks)", str(sys.makespan))
        sys_table.add_row("Idle ticks", str(sys.idle_ticks))
        sys_table.add_row("Throughput (jobs/tick)", f"{sys.throughput:.3f}")
        sys_table.add_row("CPU utilization", f"{sys.cpu_utilization*100:.1f}%")

        console.print(sys_table)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    console = Console()
    logging.basicConfig(
        level=args.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    if args.command == "run":
        try:
            jobs = load_jobs(Path(args.workload))
        except (OSError, ValueError) as exc:
            console.print(f"[red]Error: {exc}[/red]")
            return 1

        tick_seconds = args.tick_seconds
        if tick_seconds is None:
            tick_seconds = 1.0 if args.worker == "process" else 0.0

        _print_job_table(jobs, console)
        dispatcher = Dispatcher(jobs, _make_control(args), tick_seconds=tick_seconds)
        try:
            result = dispatcher.run()
        except KeyboardInterrupt:
            console.print(f"[yellow]Interrupted at tick {dispatcher.tick}.[/yellow]")
            return 130

        console.print("[bold]Dispatcher done.[/bold]")
        if args.events:
            _print_events(result, console)
        _print_result(result, console)
        return 0

    parser.error(f"Unknown command: {args.command}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())

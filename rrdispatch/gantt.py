from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .models import TraceSlice


def trace_to_slices(trace: Sequence[Optional[int]]) -> List[TraceSlice]:
    """
    Collapse consecutive ticks of the same job into slices; idle ticks are dropped.
    """
    slices: List[TraceSlice] = []
    for tick, job_id in enumerate(trace):
        if job_id is None:
            continue
        if slices and slices[-1].job_id == job_id and slices[-1].end_tick == tick:
            last = slices[-1]
            slices[-1] = TraceSlice(job_id=job_id, start_tick=last.start_tick, end_tick=tick + 1)
        else:
            slices.append(TraceSlice(job_id=job_id, start_tick=tick, end_tick=tick + 1))
    return slices


def render_trace_strip(trace: Sequence[Optional[int]]) -> str:
    """
    Plain-text, tick-indexed strip: one column per tick, ``-`` for idle.
    """
    if not trace:
        return "(no execution)"

    times = "".join(f"{t:<4}" for t in range(len(trace)))
    cpu = "".join(" -  " if job_id is None else f"J{job_id:<3}" for job_id in trace)
    return "\n".join(
        [
            "Time:  " + times.rstrip(),
            "CPU:   " + cpu.rstrip(),
        ]
    )


def build_rich_gantt(slices: List[TraceSlice]) -> tuple[Panel, str]:
    """
    Build a Rich Panel containing a colored Gantt chart and a string with time marks.
    """
    if not slices:
        panel = Panel("No execution", title="Gantt Chart")
        return panel, ""

    slices = sorted(slices, key=lambda s: (s.start_tick, s.end_tick))

    colors = ["red", "green", "yellow", "blue", "magenta", "cyan"]
    job_to_color: Dict[int, str] = {}

    def job_color(job_id: int) -> str:
        if job_id not in job_to_color:
            idx = len(job_to_color) % len(colors)
            job_to_color[job_id] = colors[idx]
        return job_to_color[job_id]

    # Each tick is drawn three cells wide so two-digit ids still fit.
    cell = 3
    timeline = Text()
    labels = Text()
    time_marks = "0"
    last_tick = 0

    for sl in slices:
        idle_gap = sl.start_tick - last_tick
        if idle_gap > 0:
            timeline.append(" " * (idle_gap * cell))
            labels.append(" " * (idle_gap * cell))
            last_tick = sl.start_tick
            time_marks += f"{last_tick:>{idle_gap * cell}}"

        width = (sl.end_tick - sl.start_tick) * cell
        timeline.append(" " * width, style=f"on {job_color(sl.job_id)}")
        labels.append(f"J{sl.job_id}"[:width].ljust(width), style="bold")

        last_tick = sl.end_tick
        time_marks += f"{last_tick:>{width}}"

    table = Table.grid(padding=(0, 0))
    table.add_row(timeline)
    table.add_row(labels)

    panel = Panel.fit(table, title="Gantt Chart")
    return panel, time_marks

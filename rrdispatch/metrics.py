from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from .models import FailedJob, JobRecord, JobState, JobStats, SystemMetrics


def compute_job_stats(records: Iterable[JobRecord]) -> List[JobStats]:
    """
    Turnaround, waiting and response times for every completed job.

    Jobs that failed to start have no timings and are left out; see
    ``failed_jobs``. Raises ValueError if any job is still in flight.
    """
    stats: List[JobStats] = []
    for r in records:
        if r.state is JobState.FAILED:
            continue
        if r.state is not JobState.COMPLETED or r.completion_tick is None:
            raise ValueError(f"Job {r.job_id} has not finished ({r.state.value})")

        job = r.job
        turnaround_time = r.completion_tick - job.arrival_time
        start_tick = r.start_tick
        stats.append(
            JobStats(
                job_id=job.job_id,
                arrival_time=job.arrival_time,
                service_time=job.service_time,
                start_tick=start_tick,
                completion_tick=r.completion_tick,
                turnaround_time=turnaround_time,
                waiting_time=turnaround_time - job.service_time,
                response_time=start_tick - job.arrival_time,
                reconciled=r.reconciled,
            )
        )
    return stats


def failed_jobs(records: Iterable[JobRecord]) -> List[FailedJob]:
    return [
        FailedJob(
            job_id=r.job_id,
            arrival_time=r.job.arrival_time,
            service_time=r.job.service_time,
            reason=r.failure_reason or "",
        )
        for r in records
        if r.state is JobState.FAILED
    ]


def compute_system_metrics(stats: Sequence[JobStats], trace: Sequence[Optional[int]]) -> SystemMetrics:
    """
    Compute throughput and CPU utilization from the per-job stats and trace.
    """
    makespan = len(trace)
    cpu_busy_time = sum(1 for entry in trace if entry is not None)

    throughput = len(stats) / makespan if makespan > 0 else 0.0
    cpu_utilization = cpu_busy_time / makespan if makespan > 0 else 0.0

    return SystemMetrics(
        cpu_busy_time=cpu_busy_time,
        makespan=makespan,
        idle_ticks=makespan - cpu_busy_time,
        throughput=throughput,
        cpu_utilization=cpu_utilization,
    )


def summarize_job_stats(stats: Sequence[JobStats]) -> dict:
    """
    Return averages of the key per-job metrics for quick comparison.
    """
    if not stats:
        return {"avg_waiting": 0.0, "avg_turnaround": 0.0, "avg_response": 0.0}

    n = len(stats)
    return {
        "avg_waiting": sum(s.waiting_time for s in stats) / n,
        "avg_turnaround": sum(s.turnaround_time for s in stats) / n,
        "avg_response": sum(s.response_time for s in stats) / n,
    }


def ticks_per_job(trace: Sequence[Optional[int]]) -> dict:
    """
    Count how many ticks each job id occupied the CPU.
    """
    counts: dict = {}
    for entry in trace:
        if entry is not None:
            counts[entry] = counts.get(entry, 0) + 1
    return counts

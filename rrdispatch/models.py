from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Tuple

# Trace entry for a tick in which no job held the CPU.
IDLE = None


class JobState(Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"


class EventKind(Enum):
    ARRIVED = "arrived"
    STARTED = "started"
    RESUMED = "resumed"
    PREEMPTED = "preempted"
    COMPLETED = "completed"
    START_FAILED = "start_failed"
    RECONCILED = "reconciled"
    FORCED_STOP = "forced_stop"


@dataclass(frozen=True)
class Job:
    job_id: int
    arrival_time: int
    service_time: int

    def __post_init__(self) -> None:
        if self.job_id <= 0:
            raise ValueError(f"job id must be positive, got {self.job_id}")
        if self.arrival_time < 0:
            raise ValueError(f"job {self.job_id}: arrival time must be >= 0")
        if self.service_time <= 0:
            raise ValueError(f"job {self.job_id}: service time must be > 0")


@dataclass
class JobRecord:
    """
    Registry-owned bookkeeping for one job.

    ``remaining`` is the dispatcher's own count of service ticks still owed;
    the worker behind ``handle`` is never asked how far it got.
    """

    job: Job
    remaining: int
    state: JobState = JobState.NOT_STARTED
    handle: Any = None
    start_tick: Optional[int] = None
    completion_tick: Optional[int] = None
    failure_reason: Optional[str] = None
    reconciled: bool = False

    @property
    def job_id(self) -> int:
        return self.job.job_id

    @property
    def label(self) -> str:
        return f"J{self.job.job_id}"


@dataclass(frozen=True)
class DispatchEvent:
    tick: int
    job_id: int
    kind: EventKind
    detail: str = ""


@dataclass(frozen=True)
class TraceSlice:
    """
    One contiguous run of ticks for a job in the Gantt chart.
    """

    job_id: int
    start_tick: int
    end_tick: int


@dataclass(frozen=True)
class JobStats:
    job_id: int
    arrival_time: int
    service_time: int
    start_tick: int
    completion_tick: int
    turnaround_time: int
    waiting_time: int
    response_time: int
    reconciled: bool = False


@dataclass(frozen=True)
class FailedJob:
    job_id: int
    arrival_time: int
    service_time: int
    reason: str


@dataclass(frozen=True)
class SystemMetrics:
    cpu_busy_time: int
    makespan: int
    idle_ticks: int
    throughput: float
    cpu_utilization: float


@dataclass(frozen=True)
class DispatchResult:
    trace: Tuple[Optional[int], ...]
    jobs: Tuple[JobStats, ...] = field(default_factory=tuple)
    failed: Tuple[FailedJob, ...] = field(default_factory=tuple)
    events: Tuple[DispatchEvent, ...] = field(default_factory=tuple)
    system: Optional[SystemMetrics] = None

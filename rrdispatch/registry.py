from __future__ import annotations

from typing import Dict, Iterable, Iterator, List

from .models import Job, JobRecord, JobState


class SchedulingInvariantError(RuntimeError):
    """
    Raised when the dispatcher attempts a life-cycle move the state machine forbids.

    This signals a logic fault in the dispatcher, never a runtime condition.
    """


_ALLOWED = {
    JobState.NOT_STARTED: {JobState.RUNNING, JobState.FAILED},
    JobState.RUNNING: {JobState.SUSPENDED, JobState.COMPLETED},
    JobState.SUSPENDED: {JobState.RUNNING},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


class JobRegistry:
    """
    Owns every JobRecord of one dispatch run and all of their state transitions.
    """

    def __init__(self, jobs: Iterable[Job]) -> None:
        self._records: Dict[int, JobRecord] = {}
        # Input order is kept for stable tie-breaking in the arrival queue.
        self._order: List[int] = []
        for job in jobs:
            if job.job_id in self._records:
                raise ValueError(f"Duplicate job id: {job.job_id}")
            self._records[job.job_id] = JobRecord(job=job, remaining=job.service_time)
            self._order.append(job.job_id)

    def __iter__(self) -> Iterator[JobRecord]:
        return (self._records[job_id] for job_id in self._order)

    def get(self, job_id: int) -> JobRecord:
        return self._records[job_id]

    def transition(self, record: JobRecord, new_state: JobState) -> None:
        if new_state not in _ALLOWED[record.state]:
            raise SchedulingInvariantError(
                f"Illegal transition for job {record.job_id}: "
                f"{record.state.value} -> {new_state.value}"
            )
        record.state = new_state

    def reconcile(self, record: JobRecord) -> None:
        """
        Force a job whose worker exited on its own into COMPLETED.
        """
        if record.state not in (JobState.RUNNING, JobState.SUSPENDED):
            raise SchedulingInvariantError(
                f"Cannot reconcile job {record.job_id} in state {record.state.value}"
            )
        record.state = JobState.COMPLETED
        record.reconciled = True

    def all_settled(self) -> bool:
        return all(r.state in (JobState.COMPLETED, JobState.FAILED) for r in self)

"""
Round-Robin dispatcher (quantum = 1 tick).

Each tick runs, in order: admission, preemption of the running job if
anything was just admitted, dispatch from the ready-queue head, trace
recording, service accounting, completion, preemption on contention,
and reconciliation of workers that exited on their own.

A same-tick arrival preempts *before* the running job is charged for the
tick; contention preempts *after* the charge. Both rules are needed to
reproduce the reference Round-Robin timing diagram.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Iterable, List, Optional

from .metrics import compute_job_stats, compute_system_metrics, failed_jobs
from .models import IDLE, DispatchEvent, DispatchResult, EventKind, Job, JobRecord, JobState
from .queues import ArrivalQueue, ReadyQueue
from .registry import JobRegistry, SchedulingInvariantError
from .workers import (
    SimulatedWorkerControl,
    WorkerControl,
    WorkerError,
    WorkerExitedError,
    WorkerStartError,
)

logger = logging.getLogger(__name__)


class Dispatcher:
    def __init__(
        self,
        jobs: Iterable[Job],
        control: WorkerControl,
        tick_seconds: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = JobRegistry(jobs)
        self.arrivals = ArrivalQueue(self.registry)
        self.ready = ReadyQueue()
        self.control = control
        self.tick_seconds = tick_seconds
        self._sleep = sleep

        self.tick = 0
        self.current: Optional[JobRecord] = None
        self.trace: List[Optional[int]] = []
        self.events: List[DispatchEvent] = []

    @property
    def finished(self) -> bool:
        return not self.arrivals and not self.ready and self.current is None

    def step(self) -> Optional[int]:
        """
        Simulate one tick and return its trace entry (job id or IDLE).
        """
        admitted = self._admit()

        if self.current is not None and admitted:
            self._preempt(self.current, reason="arrival")

        if self.current is None:
            self._dispatch_next()

        entry = self.current.job_id if self.current is not None else IDLE
        self.trace.append(entry)

        if self.current is not None:
            self._charge(self.current)

        if self.tick_seconds > 0:
            self._sleep(self.tick_seconds)
        self.tick += 1
        return entry

    def run(self) -> DispatchResult:
        try:
            while not self.finished:
                self.step()
        except BaseException:
            # Workers never exit on their own; reclaim them before propagating.
            self.shutdown()
            raise
        return self.result()

    def shutdown(self) -> None:
        """
        Stop every worker that is still alive, e.g. after an aborted run.

        A worker that cannot be stopped is logged and skipped so the rest are
        still reclaimed.
        """
        for record in self.registry:
            if record.state not in (JobState.RUNNING, JobState.SUSPENDED):
                continue
            try:
                self.control.stop(record.handle)
            except WorkerError as exc:
                logger.error("[t=%d] could not stop %s on shutdown: %s", self.tick, record.label, exc)
                continue
            logger.info("[t=%d] stopped %s on shutdown", self.tick, record.label)

    def result(self) -> DispatchResult:
        if not self.finished or not self.registry.all_settled():
            raise SchedulingInvariantError(f"Dispatch still in progress at tick {self.tick}")

        trace = tuple(self.trace)
        stats = compute_job_stats(self.registry)
        return DispatchResult(
            trace=trace,
            jobs=tuple(stats),
            failed=tuple(failed_jobs(self.registry)),
            events=tuple(self.events),
            system=compute_system_metrics(stats, trace),
        )

    # -- per-tick phases -------------------------------------------------

    def _admit(self) -> List[JobRecord]:
        admitted = self.arrivals.admit(self.tick)
        for record in admitted:
            self.ready.push(record)
            self._event(record, EventKind.ARRIVED, f"service={record.job.service_time}")
            logger.info("[t=%d] %s arrived (service=%d)", self.tick, record.label, record.job.service_time)
        return admitted

    def _dispatch_next(self) -> None:
        while self.ready:
            record = self.ready.pop()

            if record.state is JobState.NOT_STARTED:
                try:
                    record.handle = self.control.start(record.job.service_time, record.label)
                except WorkerStartError as exc:
                    record.failure_reason = str(exc)
                    self.registry.transition(record, JobState.FAILED)
                    self._event(record, EventKind.START_FAILED, str(exc))
                    logger.warning("[t=%d] %s worker failed to start: %s", self.tick, record.label, exc)
                    continue
                self.registry.transition(record, JobState.RUNNING)
                record.start_tick = self.tick
                self._event(record, EventKind.STARTED)
                logger.info("[t=%d] start %s", self.tick, record.label)

            elif record.state is JobState.SUSPENDED:
                try:
                    self.control.resume(record.handle)
                except WorkerExitedError as exc:
                    self._reconcile(record, self.tick, f"exited while suspended: {exc}")
                    continue
                self.registry.transition(record, JobState.RUNNING)
                self._event(record, EventKind.RESUMED)
                logger.info("[t=%d] resume %s", self.tick, record.label)

            else:
                raise SchedulingInvariantError(
                    f"Job {record.job_id} found in ready queue while {record.state.value}"
                )

            self.current = record
            return

    def _charge(self, record: JobRecord) -> None:
        if record.remaining <= 0:
            raise SchedulingInvariantError(f"Job {record.job_id} charged with no service time left")

        record.remaining -= 1
        logger.debug("[t=%d] ran %s (remaining %d)", self.tick, record.label, record.remaining)

        if record.remaining == 0:
            self._complete(record)
        elif self.ready:
            self._preempt(record, reason="contention")
        elif self.control.has_exited_unexpectedly(record.handle):
            self._reconcile(record, self.tick + 1, "worker exited on its own")

    def _preempt(self, record: JobRecord, reason: str) -> None:
        try:
            self.control.pause(record.handle)
        except WorkerExitedError as exc:
            # Contention preemption happens after this tick was charged.
            completion = self.tick + 1 if reason == "contention" else self.tick
            self._reconcile(record, completion, f"exited before pause: {exc}")
            return

        self.registry.transition(record, JobState.SUSPENDED)
        self.ready.push(record)
        self.current = None
        self._event(record, EventKind.PREEMPTED, reason)
        logger.info("[t=%d] preempt %s (%s)", self.tick, record.label, reason)

    def _complete(self, record: JobRecord) -> None:
        self._stop_worker(record)
        record.completion_tick = self.tick + 1
        self.registry.transition(record, JobState.COMPLETED)
        self.current = None
        self._event(record, EventKind.COMPLETED)
        logger.info("[t=%d] finish %s", self.tick, record.label)

    def _reconcile(self, record: JobRecord, completion_tick: int, detail: str) -> None:
        self.registry.reconcile(record)
        record.completion_tick = completion_tick
        # Reap whatever is left of the worker.
        self._stop_worker(record)
        if self.current is record:
            self.current = None
        self._event(record, EventKind.RECONCILED, detail)
        logger.warning(
            "[t=%d] %s %s; treated as completed with %d tick(s) unserved",
            self.tick,
            record.label,
            detail,
            record.remaining,
        )

    def _stop_worker(self, record: JobRecord) -> None:
        if not self.control.stop(record.handle):
            self._event(record, EventKind.FORCED_STOP)
            logger.warning("[t=%d] %s did not exit on request and was killed", self.tick, record.label)

    def _event(self, record: JobRecord, kind: EventKind, detail: str = "") -> None:
        self.events.append(DispatchEvent(tick=self.tick, job_id=record.job_id, kind=kind, detail=detail))


def schedule_round_robin(
    jobs: Iterable[Job],
    control: Optional[WorkerControl] = None,
    tick_seconds: float = 0.0,
) -> DispatchResult:
    """
    Dispatch ``jobs`` Round-Robin until every job has completed or failed.
    """
    dispatcher = Dispatcher(jobs, control or SimulatedWorkerControl(), tick_seconds=tick_seconds)
    return dispatcher.run()

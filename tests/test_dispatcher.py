import pytest

from rrdispatch.dispatcher import Dispatcher, schedule_round_robin
from rrdispatch.metrics import ticks_per_job
from rrdispatch.models import EventKind, Job, JobState
from rrdispatch.registry import SchedulingInvariantError
from rrdispatch.workers import SimulatedWorkerControl, WorkerControlError


def _three_jobs():
    return [
        Job(1, arrival_time=0, service_time=3),
        Job(2, arrival_time=1, service_time=2),
        Job(3, arrival_time=3, service_time=1),
    ]


def _five_jobs():
    return [
        Job(1, arrival_time=0, service_time=3),
        Job(2, arrival_time=2, service_time=6),
        Job(3, arrival_time=4, service_time=4),
        Job(4, arrival_time=6, service_time=5),
        Job(5, arrival_time=8, service_time=2),
    ]


def _by_id(result):
    return {s.job_id: s for s in result.jobs}


def test_three_job_reference_trace():
    res = schedule_round_robin(_three_jobs())
    # J2 arriving at t=1 bumps J1 before J1 is charged for that tick.
    assert res.trace == (1, 2, 1, 2, 1, 3)
    stats = _by_id(res)
    assert stats[1].completion_tick == 5
    assert stats[2].completion_tick == 4
    assert stats[3].completion_tick == 6
    assert stats[1].waiting_time == 2
    assert stats[2].waiting_time == 1
    assert stats[3].waiting_time == 2


def test_five_job_reference_trace():
    res = schedule_round_robin(_five_jobs())
    assert res.trace == (1, 1, 2, 1, 2, 3, 2, 3, 4, 2, 3, 5, 4, 2, 3, 5, 4, 2, 4, 4)
    stats = _by_id(res)
    assert {j: s.completion_tick for j, s in stats.items()} == {1: 4, 2: 18, 3: 15, 4: 20, 5: 16}
    assert {j: s.turnaround_time for j, s in stats.items()} == {1: 4, 2: 16, 3: 11, 4: 14, 5: 8}
    assert {j: s.waiting_time for j, s in stats.items()} == {1: 1, 2: 10, 3: 7, 4: 9, 5: 6}
    assert res.system.makespan == 20
    assert res.system.idle_ticks == 0


def test_service_time_is_conserved():
    jobs = _five_jobs()
    res = schedule_round_robin(jobs)
    assert ticks_per_job(res.trace) == {j.job_id: j.service_time for j in jobs}


def test_completion_never_precedes_arrival_plus_service():
    for jobs in (_three_jobs(), _five_jobs()):
        res = schedule_round_robin(jobs)
        for s in res.jobs:
            assert s.completion_tick >= s.arrival_time + s.service_time


def test_idle_ticks_until_next_arrival():
    res = schedule_round_robin([Job(1, 2, 2), Job(2, 6, 1)])
    assert res.trace == (None, None, 1, 1, None, None, 2)
    assert res.system.idle_ticks == 4
    assert res.system.cpu_busy_time == 3


def test_same_tick_arrivals_admitted_once_in_input_order():
    res = schedule_round_robin([Job(1, 0, 2), Job(2, 0, 1), Job(3, 0, 2)])
    assert res.trace == (1, 2, 3, 1, 3)
    arrivals = [e.job_id for e in res.events if e.kind is EventKind.ARRIVED]
    assert arrivals == [1, 2, 3]


def test_equal_arrival_ties_follow_input_order():
    res = schedule_round_robin([Job(5, 0, 1), Job(2, 0, 1)])
    assert res.trace == (5, 2)


def test_arrival_queue_sorts_by_arrival_time():
    res = schedule_round_robin([Job(1, 3, 1), Job(2, 0, 1)])
    assert res.trace == (2, None, None, 1)


def test_lone_job_keeps_cpu_without_pausing():
    control = SimulatedWorkerControl()
    res = schedule_round_robin([Job(7, 0, 3)], control=control)
    assert res.trace == (7, 7, 7)
    assert control.calls == [("start", "J7"), ("stop", "J7")]


def test_control_signal_order_for_three_jobs():
    control = SimulatedWorkerControl()
    schedule_round_robin(_three_jobs(), control=control)
    assert control.calls == [
        ("start", "J1"),
        ("pause", "J1"),
        ("start", "J2"),
        ("pause", "J2"),
        ("resume", "J1"),
        ("pause", "J1"),
        ("resume", "J2"),
        ("stop", "J2"),
        ("resume", "J1"),
        ("stop", "J1"),
        ("start", "J3"),
        ("stop", "J3"),
    ]


def test_preemption_reasons_are_distinguished():
    res = schedule_round_robin(_three_jobs())
    preempts = [(e.tick, e.job_id, e.detail) for e in res.events if e.kind is EventKind.PREEMPTED]
    assert preempts == [(1, 1, "arrival"), (1, 2, "contention"), (2, 1, "contention")]


def test_step_returns_trace_entries():
    d = Dispatcher([Job(1, 1, 1)], SimulatedWorkerControl())
    assert d.step() is None
    assert not d.finished
    assert d.step() == 1
    assert d.finished
    assert d.registry.get(1).state is JobState.COMPLETED


def test_tick_sleep_runs_once_per_tick():
    slept = []
    d = Dispatcher(_three_jobs(), SimulatedWorkerControl(), tick_seconds=0.5, sleep=slept.append)
    res = d.run()
    assert slept == [0.5] * len(res.trace)


def test_empty_job_list():
    res = schedule_round_robin([])
    assert res.trace == ()
    assert res.jobs == ()
    assert res.system.makespan == 0


def test_worker_start_failure_marks_job_failed():
    control = SimulatedWorkerControl(fail_to_start={"J1"})
    res = schedule_round_robin([Job(1, 0, 2), Job(2, 0, 1)], control=control)
    assert res.trace == (2,)
    assert [f.job_id for f in res.failed] == [1]
    assert "simulated start failure" in res.failed[0].reason
    assert [s.job_id for s in res.jobs] == [2]
    assert any(e.kind is EventKind.START_FAILED and e.job_id == 1 for e in res.events)


def test_unexpected_exit_is_reconciled():
    control = SimulatedWorkerControl(exit_after_polls={"J1": 1})
    res = schedule_round_robin([Job(1, 0, 3)], control=control)
    assert res.trace == (1,)
    (stats,) = res.jobs
    assert stats.reconciled
    assert stats.completion_tick == 1
    assert any(e.kind is EventKind.RECONCILED for e in res.events)


def test_worker_dead_while_suspended_is_reconciled_on_resume():
    control = SimulatedWorkerControl()
    d = Dispatcher([Job(1, 0, 3), Job(2, 0, 3)], control)
    d.step()  # J1 runs, then is paused for J2
    control.crash("J1")
    d.step()  # J2 runs
    d.step()  # J1 found dead, J2 runs again
    assert d.trace == [1, 2, 2]
    record = d.registry.get(1)
    assert record.state is JobState.COMPLETED
    assert record.reconciled
    assert record.completion_tick == 2
    res = d.run()
    assert res.trace == (1, 2, 2, 2)


def test_forced_stop_still_completes():
    control = SimulatedWorkerControl(ignore_stop={"J1"})
    res = schedule_round_robin([Job(1, 0, 1), Job(2, 1, 1)], control=control)
    assert res.trace == (1, 2)
    assert control.workers["J1"].state == "killed"
    forced = [e.job_id for e in res.events if e.kind is EventKind.FORCED_STOP]
    assert forced == [1]


def test_duplicate_job_ids_rejected():
    with pytest.raises(ValueError):
        Dispatcher([Job(1, 0, 1), Job(1, 2, 1)], SimulatedWorkerControl())


def test_result_before_finish_is_an_invariant_error():
    d = Dispatcher(_three_jobs(), SimulatedWorkerControl())
    d.step()
    with pytest.raises(SchedulingInvariantError):
        d.result()


def test_shutdown_stops_live_workers():
    control = SimulatedWorkerControl()
    d = Dispatcher([Job(1, 0, 3), Job(2, 0, 3)], control)
    d.step()
    d.step()
    d.shutdown()
    assert control.workers["J1"].state == "stopped"
    assert control.workers["J2"].state == "stopped"


def test_rerun_gives_identical_result():
    jobs = _five_jobs()
    assert schedule_round_robin(jobs) == schedule_round_robin(jobs)


def test_arrival_bumping_dead_worker_reconciles_at_current_tick():
    control = SimulatedWorkerControl()
    d = Dispatcher([Job(1, 0, 3), Job(2, 1, 1)], control)
    d.step()
    control.crash("J1")
    res = d.run()
    assert res.trace == (1, 2)
    stats = _by_id(res)
    # J1 never received tick 1, so it is settled as of tick 1.
    assert stats[1].completion_tick == 1
    assert stats[1].reconciled
    assert stats[2].completion_tick == 2
    assert not stats[2].reconciled
    reconciled = [(e.tick, e.job_id) for e in res.events if e.kind is EventKind.RECONCILED]
    assert reconciled == [(1, 1)]


def test_contention_pause_on_dead_worker_counts_charged_tick():
    control = SimulatedWorkerControl(exit_on_pause={"J1"})
    res = schedule_round_robin([Job(1, 0, 3), Job(2, 0, 1)], control=control)
    assert res.trace == (1, 2)
    stats = _by_id(res)
    # J1 was charged for tick 0 before the pause found it gone.
    assert stats[1].completion_tick == 1
    assert stats[1].reconciled
    assert stats[2].completion_tick == 2
    reconciled = [(e.tick, e.job_id) for e in res.events if e.kind is EventKind.RECONCILED]
    assert reconciled == [(0, 1)]
    assert not any(e.kind is EventKind.PREEMPTED for e in res.events)


class _PauseRefused(SimulatedWorkerControl):
    def pause(self, handle):
        self.calls.append(("pause", handle.label))
        raise WorkerControlError(f"{handle.label}: pause not acknowledged")


class _StopRefused(SimulatedWorkerControl):
    def stop(self, handle):
        if handle.label == "J1":
            raise WorkerControlError("J1: stop not acknowledged")
        return super().stop(handle)


def test_failed_run_stops_started_workers():
    control = _PauseRefused()
    d = Dispatcher([Job(1, 0, 3), Job(2, 1, 1)], control)
    with pytest.raises(WorkerControlError):
        d.run()
    assert control.workers["J1"].state == "stopped"
    assert "J2" not in control.workers


def test_invariant_violation_stops_workers_and_propagates():
    control = SimulatedWorkerControl()
    d = Dispatcher([Job(1, 0, 3)], control)
    d.step()
    d.registry.get(1).remaining = 0
    with pytest.raises(SchedulingInvariantError):
        d.run()
    assert control.workers["J1"].state == "stopped"


def test_shutdown_continues_past_unstoppable_worker():
    control = _StopRefused()
    d = Dispatcher([Job(1, 0, 3), Job(2, 0, 3)], control)
    d.step()
    d.step()
    d.shutdown()
    assert control.workers["J1"].state == "paused"
    assert control.workers["J2"].state == "stopped"

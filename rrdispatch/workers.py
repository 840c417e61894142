from __future__ import annotations

import logging
import os
import selectors
import subprocess
import sys
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import psutil

from .jobprog import READY_BANNER

logger = logging.getLogger(__name__)


class WorkerError(Exception):
    """Base class for worker control failures."""


class WorkerStartError(WorkerError):
    """The worker could not be launched or never signalled readiness."""


class WorkerExitedError(WorkerError):
    """A pause or resume was sent to a worker that had already exited."""


class WorkerControlError(WorkerError):
    """A control signal was not acknowledged, or was sent in the wrong state."""


class WorkerControl(ABC):
    """
    Capability the dispatcher uses to drive the worker behind each job.

    Implementations must not decide when a job is done: the dispatcher owns
    remaining-time bookkeeping and calls ``stop`` itself.
    """

    @abstractmethod
    def start(self, service_budget: int, label: str = "") -> Any:
        """Launch a worker and block until it is ready for control signals."""

    @abstractmethod
    def pause(self, handle: Any) -> None:
        ...

    @abstractmethod
    def resume(self, handle: Any) -> None:
        ...

    @abstractmethod
    def stop(self, handle: Any) -> bool:
        """
        Stop the worker and wait for it to exit.

        Returns True when it exited gracefully, False when it had to be killed.
        """

    @abstractmethod
    def has_exited_unexpectedly(self, handle: Any) -> bool:
        ...


# ---------------------------------------------------------------------------
# In-memory workers
# ---------------------------------------------------------------------------


@dataclass
class SimulatedWorker:
    pid: int
    label: str
    service_budget: int
    state: str = "running"  # running, paused, exited, stopped, killed
    polls: int = 0


class SimulatedWorkerControl(WorkerControl):
    """
    Workers that exist only as records, for tests and dry runs.

    Every control call is appended to ``calls`` as ``(action, label)``.
    Faults can be injected per label:

    - ``fail_to_start``: ``start`` raises WorkerStartError.
    - ``exit_after_polls``: the worker reports an unexpected exit on the Nth
      liveness poll made while it is running.
    - ``ignore_stop``: graceful stop is ignored and the worker is killed.
    - ``exit_on_pause``: the worker exits just as a pause request reaches it.
    """

    def __init__(
        self,
        fail_to_start: Iterable[str] = (),
        exit_after_polls: Optional[Mapping[str, int]] = None,
        ignore_stop: Iterable[str] = (),
        exit_on_pause: Iterable[str] = (),
    ) -> None:
        self.fail_to_start = set(fail_to_start)
        self.exit_after_polls: Dict[str, int] = dict(exit_after_polls or {})
        self.ignore_stop = set(ignore_stop)
        self.exit_on_pause = set(exit_on_pause)
        self.calls: List[Tuple[str, str]] = []
        self.workers: Dict[str, SimulatedWorker] = {}
        self._next_pid = 1000

    def start(self, service_budget: int, label: str = "") -> SimulatedWorker:
        self.calls.append(("start", label))
        if label in self.fail_to_start:
            raise WorkerStartError(f"{label}: simulated start failure")
        self._next_pid += 1
        worker = SimulatedWorker(pid=self._next_pid, label=label, service_budget=service_budget)
        self.workers[label] = worker
        return worker

    def pause(self, handle: SimulatedWorker) -> None:
        self.calls.append(("pause", handle.label))
        if handle.label in self.exit_on_pause and handle.state == "running":
            handle.state = "exited"
        self._expect(handle, "running")
        handle.state = "paused"

    def resume(self, handle: SimulatedWorker) -> None:
        self.calls.append(("resume", handle.label))
        self._expect(handle, "paused")
        handle.state = "running"

    def stop(self, handle: SimulatedWorker) -> bool:
        self.calls.append(("stop", handle.label))
        if handle.state == "exited":
            return True
        if handle.label in self.ignore_stop:
            handle.state = "killed"
            return False
        handle.state = "stopped"
        return True

    def has_exited_unexpectedly(self, handle: SimulatedWorker) -> bool:
        if handle.state == "exited":
            return True
        if handle.state != "running":
            return False
        handle.polls += 1
        limit = self.exit_after_polls.get(handle.label)
        if limit is not None and handle.polls >= limit:
            handle.state = "exited"
            return True
        return False

    def crash(self, label: str) -> None:
        """Make a worker vanish as if it had exited on its own."""
        self.workers[label].state = "exited"

    def actions_for(self, label: str) -> List[str]:
        return [action for action, lbl in self.calls if lbl == label]

    @staticmethod
    def _expect(handle: SimulatedWorker, state: str) -> None:
        if handle.state == "exited":
            raise WorkerExitedError(f"{handle.label}: worker pid={handle.pid} has exited")
        if handle.state != state:
            raise WorkerControlError(
                f"{handle.label}: expected worker to be {state}, found {handle.state}"
            )


# ---------------------------------------------------------------------------
# OS process workers
# ---------------------------------------------------------------------------


@dataclass
class ProcessHandle:
    label: str
    process: psutil.Popen
    service_budget: int
    banner: str = field(default="", repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid


def _read_line(fd: int, timeout: float) -> Optional[str]:
    """
    Read one newline-terminated line from ``fd`` within ``timeout`` seconds.

    Returns None on timeout or if the stream closed before a full line.
    """
    deadline = time.monotonic() + timeout
    buf = bytearray()
    with selectors.DefaultSelector() as selector:
        selector.register(fd, selectors.EVENT_READ)
        while not buf.endswith(b"\n"):
            remaining = deadline - time.monotonic()
            if remaining <= 0 or not selector.select(remaining):
                return None
            chunk = os.read(fd, 1)
            if not chunk:
                return None
            buf += chunk
    return buf.decode("utf-8", errors="replace").strip()


class ProcessWorkerControl(WorkerControl):
    """
    Runs each job as a separate OS process (``rrdispatch.jobprog`` by default).

    Start blocks on the worker's readiness banner. Pause and resume are
    acknowledged by watching the process status change, so no signal is sent
    before the previous one has landed.
    """

    def __init__(
        self,
        command: Optional[List[str]] = None,
        ready_timeout: float = 5.0,
        signal_timeout: float = 2.0,
        stop_timeout: float = 2.0,
        poll_interval: float = 0.005,
    ) -> None:
        self.command = list(command) if command else [sys.executable, "-m", "rrdispatch.jobprog"]
        self.ready_timeout = ready_timeout
        self.signal_timeout = signal_timeout
        self.stop_timeout = stop_timeout
        self.poll_interval = poll_interval

    def start(self, service_budget: int, label: str = "") -> ProcessHandle:
        argv = [*self.command, str(service_budget)]
        try:
            proc = psutil.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                bufsize=0,
            )
        except OSError as exc:
            raise WorkerStartError(f"{label}: could not launch {argv[0]}: {exc}") from exc

        banner = _read_line(proc.stdout.fileno(), self.ready_timeout)
        if banner is None or not banner.startswith(READY_BANNER):
            self._reclaim(proc)
            proc.stdout.close()
            raise WorkerStartError(
                f"{label}: worker pid={proc.pid} did not report ready within {self.ready_timeout}s"
            )

        logger.debug("%s: worker pid=%d ready (%s)", label, proc.pid, banner)
        return ProcessHandle(label=label, process=proc, service_budget=service_budget, banner=banner)

    def pause(self, handle: ProcessHandle) -> None:
        try:
            handle.process.suspend()
        except psutil.NoSuchProcess as exc:
            raise WorkerExitedError(f"{handle.label}: worker pid={handle.pid} has exited") from exc
        self._await_status(handle, lambda status: status == psutil.STATUS_STOPPED, "stopped")

    def resume(self, handle: ProcessHandle) -> None:
        try:
            handle.process.resume()
        except psutil.NoSuchProcess as exc:
            raise WorkerExitedError(f"{handle.label}: worker pid={handle.pid} has exited") from exc
        self._await_status(handle, lambda status: status != psutil.STATUS_STOPPED, "running")

    def stop(self, handle: ProcessHandle) -> bool:
        proc = handle.process
        graceful = True
        if proc.poll() is None:
            try:
                # A stopped process would only see SIGTERM after SIGCONT.
                if proc.status() == psutil.STATUS_STOPPED:
                    proc.resume()
                proc.terminate()
                proc.wait(timeout=self.stop_timeout)
            except psutil.TimeoutExpired:
                logger.warning(
                    "%s: worker pid=%d ignored SIGTERM for %.1fs, killing",
                    handle.label,
                    handle.pid,
                    self.stop_timeout,
                )
                self._reclaim(proc)
                graceful = False
            except psutil.NoSuchProcess:
                pass
        if proc.stdout is not None:
            proc.stdout.close()
        return graceful

    def has_exited_unexpectedly(self, handle: ProcessHandle) -> bool:
        return handle.process.poll() is not None

    def _await_status(self, handle: ProcessHandle, predicate: Callable[[str], bool], wanted: str) -> None:
        deadline = time.monotonic() + self.signal_timeout
        while True:
            try:
                status = handle.process.status()
            except psutil.NoSuchProcess as exc:
                raise WorkerExitedError(f"{handle.label}: worker pid={handle.pid} has exited") from exc
            if status in (psutil.STATUS_ZOMBIE, psutil.STATUS_DEAD):
                raise WorkerExitedError(f"{handle.label}: worker pid={handle.pid} has exited")
            if predicate(status):
                return
            if time.monotonic() >= deadline:
                raise WorkerControlError(
                    f"{handle.label}: worker pid={handle.pid} not {wanted} after "
                    f"{self.signal_timeout}s (status {status})"
                )
            time.sleep(self.poll_interval)

    @staticmethod
    def _reclaim(proc: psutil.Popen) -> None:
        try:
            proc.kill()
            proc.wait()
        except psutil.NoSuchProcess:
            pass

from __future__ import annotations

from collections import deque
from typing import Deque, Iterable, List, Optional

from .models import JobRecord


class ArrivalQueue:
    """
    Jobs not yet admitted, ordered by arrival time.

    Ties keep input order (``sorted`` is stable).
    """

    def __init__(self, records: Iterable[JobRecord]) -> None:
        self._pending: Deque[JobRecord] = deque(
            sorted(records, key=lambda r: r.job.arrival_time)
        )

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)

    def admit(self, tick: int) -> List[JobRecord]:
        """
        Remove and return, in arrival order, every job due at or before ``tick``.
        """
        admitted: List[JobRecord] = []
        while self._pending and self._pending[0].job.arrival_time <= tick:
            admitted.append(self._pending.popleft())
        return admitted


class ReadyQueue:
    """
    FIFO of admitted jobs waiting for the CPU.
    """

    def __init__(self) -> None:
        self._queue: Deque[JobRecord] = deque()

    def __len__(self) -> int:
        return len(self._queue)

    def __bool__(self) -> bool:
        return bool(self._queue)

    def push(self, record: JobRecord) -> None:
        self._queue.append(record)

    def pop(self) -> Optional[JobRecord]:
        return self._queue.popleft() if self._queue else None

    def job_ids(self) -> List[int]:
        return [r.job_id for r in self._queue]

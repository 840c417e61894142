from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .models import Job

logger = logging.getLogger(__name__)


def load_jobs(path: str | Path) -> List[Job]:
    """
    Load a job list from a CSV or JSON file.

    CSV rows are positional ``arrival,id,service``; lines starting with ``#``
    and blank lines are ignored. JSON is a list of objects with
    ``arrival_time``, ``job_id`` and ``service_time``. Malformed entries and
    repeated job ids are skipped with a warning.
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix == ".json":
        jobs = _load_json(path)
    elif suffix == ".csv":
        jobs = _load_csv(path)
    else:
        raise ValueError(f"Unsupported job list format: {suffix} (use .csv or .json)")

    return _drop_duplicates(jobs, path)


def _load_json(path: Path) -> List[Job]:
    with path.open("r", encoding="utf-8") as f:
        raw = json.load(f)

    if not isinstance(raw, list):
        raise ValueError("JSON job list must be a list of job objects")

    jobs: List[Job] = []
    for idx, entry in enumerate(raw):
        job = _job_from_mapping(entry)
        if job is None:
            logger.warning("%s: skipping malformed entry %d: %r", path, idx, entry)
            continue
        jobs.append(job)
    return jobs


def _load_csv(path: Path) -> List[Job]:
    jobs: List[Job] = []
    with path.open("r", encoding="utf-8", newline="") as f:
        for lineno, row in enumerate(csv.reader(f), start=1):
            if not row or not "".join(row).strip() or row[0].lstrip().startswith("#"):
                continue
            job = _job_from_row(row)
            if job is None:
                logger.warning("%s:%d: skipping malformed row: %s", path, lineno, ",".join(row))
                continue
            jobs.append(job)
    return jobs


def _job_from_row(row: Sequence[str]) -> Optional[Job]:
    try:
        arrival_time, job_id, service_time = (int(field) for field in row[:3])
    except ValueError:
        return None
    return _make_job(job_id, arrival_time, service_time)


def _job_from_mapping(mapping) -> Optional[Job]:
    try:
        job_id = int(mapping["job_id"])
        arrival_time = int(mapping["arrival_time"])
        service_time = int(mapping["service_time"])
    except (KeyError, TypeError, ValueError):
        return None
    return _make_job(job_id, arrival_time, service_time)


def _make_job(job_id: int, arrival_time: int, service_time: int) -> Optional[Job]:
    try:
        return Job(job_id=job_id, arrival_time=arrival_time, service_time=service_time)
    except ValueError as exc:
        logger.debug("rejected job: %s", exc)
        return None


def _drop_duplicates(jobs: Iterable[Job], path: Path) -> List[Job]:
    seen = set()
    unique: List[Job] = []
    for job in jobs:
        if job.job_id in seen:
            logger.warning("%s: skipping duplicate job id %d", path, job.job_id)
            continue
        seen.add(job.job_id)
        unique.append(job)
    return unique

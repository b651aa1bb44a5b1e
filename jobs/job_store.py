"""
Job storage for import jobs.

The default store is a process-local dict: job state is not shared between
processes, so a horizontally scaled deployment needs a shared JobStore.
"""
from abc import ABC, abstractmethod
from typing import Iterable, Optional

from models.import_job_state import ImportJob


class JobStore(ABC):

    @abstractmethod
    def get(self, job_id: str) -> Optional[ImportJob]:
        ...

    @abstractmethod
    def set(self, job: ImportJob) -> None:
        ...

    @abstractmethod
    def delete(self, job_id: str) -> None:
        ...

    @abstractmethod
    def scan(self) -> Iterable[ImportJob]:
        ...


class InMemoryJobStore(JobStore):
    """Dict-backed store; scan() returns a snapshot safe to iterate while mutating."""

    def __init__(self):
        self._jobs = {}

    def get(self, job_id: str) -> Optional[ImportJob]:
        return self._jobs.get(job_id)

    def set(self, job: ImportJob) -> None:
        self._jobs[job.id] = job

    def delete(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)

    def scan(self) -> Iterable[ImportJob]:
        return list(self._jobs.values())

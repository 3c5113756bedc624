"""
Job Store - In-memory document store for jobs and auditors.

Implements the store contract the orchestrator relies on: get-by-id,
query by field equality, newest-first listing and a conditional update
(compare-and-swap on status and version). In production, replace with a
document database that offers the same conditional write.
"""

import asyncio
from typing import Any, Optional

from demoforge.errors import ValidationError
from demoforge.models import Auditor, Job, JobStatus


class JobStore:
    """In-memory job collection. Every read returns a deep copy."""

    def __init__(self):
        self._jobs: dict[str, Job] = {}
        # Guards only dictionary access; never held across network I/O.
        self._lock = asyncio.Lock()

    async def create(self, job: Job) -> Job:
        """Create a new job."""
        async with self._lock:
            if job.id in self._jobs:
                raise ValidationError(f"job {job.id} already exists")
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    async def get(self, job_id: str) -> Optional[Job]:
        """Get a job by ID."""
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def compare_and_swap(
        self,
        updated: Job,
        expected_status: JobStatus,
        expected_version: int,
    ) -> bool:
        """Replace the stored job only if status and version are unchanged."""
        async with self._lock:
            current = self._jobs.get(updated.id)
            if current is None:
                return False
            if current.status != expected_status or current.version != expected_version:
                return False
            self._jobs[updated.id] = updated.model_copy(deep=True)
            return True

    async def query(
        self,
        field: str,
        value: Any,
        limit: Optional[int] = None,
        *,
        where: Optional[dict[str, Any]] = None,
        oldest_first: bool = False,
    ) -> list[Job]:
        """
        Jobs whose ``field`` equals ``value`` (and every ``where`` pair).

        Ordered by ``created_at``, newest first unless ``oldest_first``;
        ``limit`` applies after ordering.
        """
        conditions = {field: value, **(where or {})}
        jobs = [
            j for j in self._jobs.values()
            if all(getattr(j, k) == v for k, v in conditions.items())
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=not oldest_first)
        if limit is not None:
            jobs = jobs[:limit]
        return [j.model_copy(deep=True) for j in jobs]

    async def list_recent(
        self,
        limit: int = 10,
        order_by: str = "created_at",
    ) -> list[Job]:
        """Jobs ordered by ``order_by`` descending."""
        jobs = sorted(self._jobs.values(), key=lambda j: getattr(j, order_by), reverse=True)
        return [j.model_copy(deep=True) for j in jobs[:limit]]

    async def list(
        self,
        page: int = 1,
        page_size: int = 20,
        status: Optional[JobStatus] = None,
    ) -> list[Job]:
        """List jobs with pagination and optional status filter."""
        jobs = list(self._jobs.values())

        # Filter by status
        if status:
            jobs = [j for j in jobs if j.status == status]

        # Sort by created_at descending
        jobs.sort(key=lambda j: j.created_at, reverse=True)

        # Paginate
        start = (page - 1) * page_size
        end = start + page_size
        return [j.model_copy(deep=True) for j in jobs[start:end]]

    async def count(self, status: Optional[JobStatus] = None) -> int:
        """Count jobs with optional status filter."""
        if status:
            return len([j for j in self._jobs.values() if j.status == status])
        return len(self._jobs)


class AuditorStore:
    """In-memory auditor collection keyed by id, unique by email."""

    def __init__(self):
        self._auditors: dict[str, Auditor] = {}
        self._lock = asyncio.Lock()

    async def create(self, auditor: Auditor) -> Auditor:
        """Create an auditor; emails are unique case-insensitively."""
        async with self._lock:
            email = auditor.email.lower()
            if any(a.email.lower() == email for a in self._auditors.values()):
                raise ValidationError(f"auditor with email {auditor.email} already exists")
            self._auditors[auditor.id] = auditor.model_copy(deep=True)
        return auditor

    async def get(self, auditor_id: str) -> Optional[Auditor]:
        auditor = self._auditors.get(auditor_id)
        return auditor.model_copy(deep=True) if auditor else None

    async def list(self, active_only: bool = True) -> list[Auditor]:
        auditors = [a for a in self._auditors.values() if a.active or not active_only]
        auditors.sort(key=lambda a: a.created_at)
        return [a.model_copy(deep=True) for a in auditors]

    async def increment_assigned(self, auditor_id: str, count: int) -> None:
        async with self._lock:
            auditor = self._auditors.get(auditor_id)
            if auditor is not None:
                auditor.assigned_count += count

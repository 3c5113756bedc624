"""
Job State Machine - the canonical lifecycle of a demo-site job.

Flow:
  queued -> scanning -> generating_content -> provisioning -> pending_audit
  pending_audit -> approved | rejected
  rejected --(resubmit, policy-gated)--> provisioning
  any non-terminal status -> failed

Every write is a single conditional update against the store, keyed on
the status and version that were read. A writer that loses the race
re-reads the job and re-validates its transition against the new state.
"""

import re
import uuid
from types import MappingProxyType
from typing import Any, Callable, Optional

import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import (
    ConcurrentModificationError,
    ErrorKind,
    InvalidTransitionError,
    JobNotFoundError,
)
from demoforge.models import (
    Job,
    JobCreateRequest,
    JobEvent,
    JobStatus,
    LogEntry,
    utcnow,
)
from demoforge.services.job_store import JobStore
from demoforge.services.notifications import JOB_UPDATED, JobEventBus, JobNotification

logger = structlog.get_logger()


TERMINAL_STATUSES = frozenset({JobStatus.APPROVED, JobStatus.FAILED})

# Stages that reset progress on entry.
WORKING_STATUSES = frozenset({
    JobStatus.SCANNING,
    JobStatus.GENERATING_CONTENT,
    JobStatus.PROVISIONING,
})

# Statuses the orchestrator advances without human input.
ACTIVE_STATUSES = (
    JobStatus.QUEUED,
    JobStatus.SCANNING,
    JobStatus.GENERATING_CONTENT,
    JobStatus.PROVISIONING,
)

TRANSITIONS = MappingProxyType({
    (JobStatus.QUEUED, JobEvent.START): JobStatus.SCANNING,
    (JobStatus.SCANNING, JobEvent.SCAN_OK): JobStatus.GENERATING_CONTENT,
    (JobStatus.SCANNING, JobEvent.SCAN_FAIL): JobStatus.FAILED,
    (JobStatus.GENERATING_CONTENT, JobEvent.CONTENT_OK): JobStatus.PROVISIONING,
    (JobStatus.GENERATING_CONTENT, JobEvent.CONTENT_FAIL): JobStatus.FAILED,
    (JobStatus.PROVISIONING, JobEvent.DEPLOY_OK): JobStatus.PENDING_AUDIT,
    (JobStatus.PROVISIONING, JobEvent.DEPLOY_FAIL): JobStatus.FAILED,
    (JobStatus.PENDING_AUDIT, JobEvent.APPROVE): JobStatus.APPROVED,
    (JobStatus.PENDING_AUDIT, JobEvent.REJECT): JobStatus.REJECTED,
    (JobStatus.REJECTED, JobEvent.RESUBMIT): JobStatus.PROVISIONING,
})


def next_status(status: JobStatus, event: JobEvent) -> JobStatus:
    """Resolve the status reached by applying ``event`` to ``status``."""
    if event is JobEvent.FAIL:
        if status in TERMINAL_STATUSES:
            raise InvalidTransitionError(status.value, event.value)
        return JobStatus.FAILED
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransitionError(status.value, event.value) from None


def slugify(name: str) -> str:
    """Convert a business name to a DNS-label-safe client slug."""
    slug = name.lower()
    slug = re.sub(r"[^a-z0-9]+", "-", slug)
    slug = re.sub(r"^-+|-+$", "", slug)
    return slug[:50].rstrip("-") or "site"


class JobStateMachine:
    """Owns status, progress and log mutation for every job."""

    def __init__(
        self,
        store: JobStore,
        bus: Optional[JobEventBus] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.bus = bus or JobEventBus()
        self.settings = settings or get_settings()

    # ========================================================================
    # Reads
    # ========================================================================

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def eligible_jobs(
        self,
        include_rejected: bool = False,
        limit: int = 50,
    ) -> list[Job]:
        """Jobs the orchestrator may advance, oldest first."""
        statuses = list(ACTIVE_STATUSES)
        if include_rejected:
            statuses.append(JobStatus.REJECTED)
        jobs: list[Job] = []
        for status in statuses:
            jobs.extend(await self.store.query("status", status, limit=limit, oldest_first=True))
        jobs.sort(key=lambda j: j.created_at)
        return jobs[:limit]

    # ========================================================================
    # Writes
    # ========================================================================

    async def create_job(self, request: JobCreateRequest) -> Job:
        """Persist a new Queued job."""
        slug = request.client_slug or slugify(request.business_name)
        job = Job(
            id=str(uuid.uuid4()),
            request=request,
            client_slug=slug,
            logs=[LogEntry(
                message=f"Job queued for {request.business_name} "
                f"(blueprint {request.blueprint_id}, slug {slug})",
            )],
        )
        await self.store.create(job)
        logger.info("Job created", job_id=job.id, business_name=request.business_name, slug=slug)
        await self._notify(job)
        return job

    async def transition(
        self,
        job_id: str,
        event: JobEvent,
        message: str,
        *,
        expected: Optional[JobStatus] = None,
        result: Optional[dict[str, Any]] = None,
        reason: Optional[ErrorKind] = None,
    ) -> Job:
        """
        Apply ``event`` to the job as one conditional write.

        Args:
            job_id: The job to advance
            event: The lifecycle event
            message: Log line appended with the transition
            expected: Status the caller believes the job is in; a mismatch
                raises InvalidTransitionError instead of applying the event
            result: Fields to set on ``job.result`` in the same write
            reason: Failure classification when the event leads to Failed

        Returns:
            The job as persisted after the transition
        """
        def apply(job: Job) -> None:
            if expected is not None and job.status != expected:
                raise InvalidTransitionError(
                    job.status.value,
                    event.value,
                    detail=f"expected status {expected.value}",
                )
            self._apply_event(job, event, message, result=result, reason=reason)

        return await self._commit(job_id, apply)

    async def fail(
        self,
        job_id: str,
        reason: ErrorKind,
        detail: str,
        *,
        event: JobEvent = JobEvent.FAIL,
        expected: Optional[JobStatus] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> Job:
        """Move a job to Failed, recording the reason in result and logs."""
        return await self.transition(
            job_id,
            event,
            f"Failed ({reason.value}): {detail}",
            expected=expected,
            result=result,
            reason=reason,
        )

    async def report_progress(
        self,
        job_id: str,
        stage: JobStatus,
        percent: int,
        message: Optional[str] = None,
    ) -> Job:
        """Raise progress within ``stage``; lower values never win."""
        def apply(job: Job) -> None:
            if job.status != stage:
                raise InvalidTransitionError(job.status.value, "progress")
            job.progress = max(job.progress, min(100, max(0, percent)))
            job.last_progress_at = utcnow()
            if message:
                job.logs.append(LogEntry(message=f"[{job.progress}%] {message}"))

        return await self._commit(job_id, apply)

    async def annotate(self, job_id: str, message: str, level: str = "info") -> Job:
        """Append a log line without changing status."""
        def apply(job: Job) -> None:
            job.logs.append(LogEntry(level=level, message=message))

        return await self._commit(job_id, apply)

    async def update_fields(
        self,
        job_id: str,
        mutate: Callable[[Job], None],
        message: Optional[str] = None,
    ) -> Job:
        """
        Conditional write of non-status fields on behalf of another owner.

        ``mutate`` may raise to abort the write; it must not touch status.
        """
        def apply(job: Job) -> None:
            status = job.status
            mutate(job)
            if job.status != status:
                raise InvalidTransitionError(status.value, "update_fields")
            if message:
                job.logs.append(LogEntry(message=message))

        return await self._commit(job_id, apply)

    async def resubmit(self, job_id: str) -> Job:
        """
        Route a Rejected job back to Provisioning.

        Allowed at most ``max_resubmits`` times; past that the job fails
        with MaxRetriesExceeded.
        """
        limit = self.settings.max_resubmits

        def apply(job: Job) -> None:
            if job.status != JobStatus.REJECTED:
                raise InvalidTransitionError(job.status.value, JobEvent.RESUBMIT.value)
            if not self.settings.allow_resubmit:
                raise InvalidTransitionError(
                    job.status.value,
                    JobEvent.RESUBMIT.value,
                    detail="resubmission disabled by policy",
                )
            if job.resubmit_count >= limit:
                self._apply_event(
                    job,
                    JobEvent.FAIL,
                    f"Failed ({ErrorKind.MAX_RETRIES_EXCEEDED.value}): "
                    f"resubmit limit of {limit} reached",
                    reason=ErrorKind.MAX_RETRIES_EXCEEDED,
                )
                return
            issues = "; ".join(job.result.issues) or "none recorded"
            self._apply_event(
                job,
                JobEvent.RESUBMIT,
                f"Resubmitted for provisioning ({job.resubmit_count + 1}/{limit}); "
                f"audit issues: {issues}",
            )

        return await self._commit(job_id, apply)

    # ========================================================================
    # Internals
    # ========================================================================

    def _apply_event(
        self,
        job: Job,
        event: JobEvent,
        message: str,
        *,
        result: Optional[dict[str, Any]] = None,
        reason: Optional[ErrorKind] = None,
    ) -> None:
        target = next_status(job.status, event)
        now = utcnow()

        job.status = target
        if target in WORKING_STATUSES:
            job.progress = 0
        elif target != JobStatus.FAILED:
            job.progress = 100
        job.stage_entered_at = now
        job.last_progress_at = now

        for key, value in (result or {}).items():
            setattr(job.result, key, value)
        if target == JobStatus.FAILED:
            job.result.failure_reason = reason or ErrorKind.PERMANENT
        if event is JobEvent.RESUBMIT:
            job.resubmit_count += 1
            job.result.issues = []

        level = "error" if target == JobStatus.FAILED else "info"
        job.logs.append(LogEntry(level=level, message=message))

    async def _commit(self, job_id: str, apply: Callable[[Job], None]) -> Job:
        for _ in range(self.settings.cas_max_attempts):
            current = await self.get_job(job_id)
            updated = current.model_copy(deep=True)
            apply(updated)
            updated.version = current.version + 1
            updated.updated_at = utcnow()

            if await self.store.compare_and_swap(updated, current.status, current.version):
                if updated.status != current.status:
                    logger.info(
                        "Job transitioned",
                        job_id=job_id,
                        from_status=current.status.value,
                        to_status=updated.status.value,
                    )
                await self._notify(updated)
                return updated

            logger.debug("Conditional write lost, re-reading", job_id=job_id)

        raise ConcurrentModificationError(
            f"job {job_id} kept changing under concurrent writers",
        )

    async def _notify(self, job: Job) -> None:
        await self.bus.publish(JobNotification(topic=JOB_UPDATED, job_id=job.id, job=job))

"""
Audit Coordinator - human review of provisioned jobs.

Auditors are registered by an admin, get jobs assigned in batches and
approve or reject them. Every job write goes through the state machine's
conditional-write path; the coordinator owns ``auditor_id`` and the
approve/reject decision.
"""

import uuid
from typing import Iterable, Optional

import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import InvalidTransitionError, JobNotFoundError, NotFoundError, ValidationError
from demoforge.models import (
    AssignmentReport,
    AuditDecision,
    Auditor,
    Job,
    JobEvent,
    JobStatus,
)
from demoforge.services.job_store import AuditorStore
from demoforge.services.notifications import AUDIT_UPDATED, JobEventBus, JobNotification
from demoforge.services.state_machine import JobStateMachine

logger = structlog.get_logger()


class AuditCoordinator:
    """Auditor records, job assignment and review decisions."""

    def __init__(
        self,
        state_machine: JobStateMachine,
        auditors: AuditorStore,
        bus: Optional[JobEventBus] = None,
        settings: Optional[Settings] = None,
    ):
        self.state_machine = state_machine
        self.auditors = auditors
        self.bus = bus or state_machine.bus
        self.settings = settings or get_settings()

    # ========================================================================
    # Auditors
    # ========================================================================

    async def create_auditor(self, name: str, email: str) -> Auditor:
        """Register an auditor; a duplicate email is a ValidationError."""
        email = email.strip()
        if "@" not in email:
            raise ValidationError(f"invalid email: {email!r}")

        auditor = Auditor(id=str(uuid.uuid4()), name=name.strip(), email=email)
        await self.auditors.create(auditor)
        logger.info("Auditor created", auditor_id=auditor.id, email=email)
        await self._notify(paths=["/auditors"])
        return auditor

    async def list_auditors(self, active_only: bool = True) -> list[Auditor]:
        return await self.auditors.list(active_only=active_only)

    async def get_auditor(self, auditor_id: str) -> Auditor:
        auditor = await self.auditors.get(auditor_id)
        if auditor is None:
            raise NotFoundError(f"auditor {auditor_id} not found")
        return auditor

    # ========================================================================
    # Assignment
    # ========================================================================

    async def assign(self, job_ids: Iterable[str], auditor_id: str) -> AssignmentReport:
        """
        Assign jobs to an auditor, best effort.

        Unknown jobs and jobs not awaiting audit are skipped, not errors.
        """
        auditor = await self.get_auditor(auditor_id)
        report = AssignmentReport(auditor_id=auditor_id)

        for job_id in dict.fromkeys(job_ids):
            def mutate(job: Job) -> None:
                if not self.settings.assign_any_state and job.status != JobStatus.PENDING_AUDIT:
                    raise InvalidTransitionError(job.status.value, "assign")
                job.auditor_id = auditor_id

            try:
                await self.state_machine.update_fields(
                    job_id,
                    mutate,
                    message=f"Assigned to auditor {auditor.name} ({auditor.email})",
                )
            except (JobNotFoundError, InvalidTransitionError) as e:
                logger.info("Skipping job in assignment", job_id=job_id, auditor_id=auditor_id, reason=str(e))
                report.skipped.append(job_id)
                continue
            report.assigned.append(job_id)

        if report.assigned:
            await self.auditors.increment_assigned(auditor_id, len(report.assigned))
            await self._notify(paths=["/audit", f"/auditors/{auditor_id}"])

        logger.info(
            "Jobs assigned",
            auditor_id=auditor_id,
            assigned=len(report.assigned),
            skipped=len(report.skipped),
        )
        return report

    # ========================================================================
    # Review
    # ========================================================================

    async def review(
        self,
        job_id: str,
        decision: AuditDecision,
        issues: Optional[list[str]] = None,
    ) -> Job:
        """
        Record an auditor's decision on a PendingAudit job.

        Raises:
            InvalidTransitionError: The job is not awaiting audit; nothing is written
            JobNotFoundError: Unknown job
        """
        issues = list(issues or [])

        if decision == AuditDecision.APPROVE:
            job = await self.state_machine.transition(
                job_id,
                JobEvent.APPROVE,
                "Approved by auditor",
                expected=JobStatus.PENDING_AUDIT,
            )
        else:
            summary = "; ".join(issues) or "no issues listed"
            job = await self.state_machine.transition(
                job_id,
                JobEvent.REJECT,
                f"Rejected by auditor: {summary}",
                expected=JobStatus.PENDING_AUDIT,
                result={"issues": issues},
            )

        logger.info("Job reviewed", job_id=job_id, decision=decision.value, auditor_id=job.auditor_id)
        await self._notify(job_id=job_id, paths=["/audit", f"/jobs/{job_id}"])
        return job

    # ========================================================================
    # Queries
    # ========================================================================

    async def jobs_for_auditor(self, auditor_id: str, limit: int = 50) -> list[Job]:
        """Jobs assigned to an auditor, newest first."""
        await self.get_auditor(auditor_id)
        return await self.state_machine.store.query("auditor_id", auditor_id, limit=limit)

    async def jobs_pending_assignment(self, limit: int = 50) -> list[Job]:
        """PendingAudit jobs with no auditor yet, newest first."""
        return await self.state_machine.store.query(
            "status",
            JobStatus.PENDING_AUDIT,
            limit=limit,
            where={"auditor_id": None},
        )

    async def _notify(self, job_id: str = "", paths: Optional[list[str]] = None) -> None:
        await self.bus.publish(JobNotification(topic=AUDIT_UPDATED, job_id=job_id, paths=paths or []))

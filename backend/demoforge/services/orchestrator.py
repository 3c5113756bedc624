"""
Job Orchestrator - drives jobs through their automated stages.

Pipeline per job:
1. Queued -> Scanning
2. Scan the target site
3. Generate content with AI
4. Plan and execute the deployment
5. Stop at PendingAudit until an auditor decides

A single control loop polls for eligible jobs and hands each to a driver
task. Drivers are bounded by a worker pool, provisioning by its own
smaller cap, and a job never has more than one driver.
"""

import asyncio
import time
from typing import Awaitable, Optional, TypeVar

import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import (
    DemoforgeError,
    ErrorKind,
    InvalidTransitionError,
    StageTimeoutError,
    ValidationError,
)
from demoforge.models import Job, JobEvent, JobStatus
from demoforge.services.ai_engine import ContentGenerator
from demoforge.services.deployer import DeploymentPlanner
from demoforge.services.scanner import SiteScanner
from demoforge.services.state_machine import TERMINAL_STATUSES, JobStateMachine

logger = structlog.get_logger()

T = TypeVar("T")

STAGE_FAIL_EVENTS = {
    JobStatus.SCANNING: JobEvent.SCAN_FAIL,
    JobStatus.GENERATING_CONTENT: JobEvent.CONTENT_FAIL,
    JobStatus.PROVISIONING: JobEvent.DEPLOY_FAIL,
}

# Stages whose work was interrupted if a job is found in them at startup.
RESUMABLE_STATUSES = frozenset(STAGE_FAIL_EVENTS)


class ProgressWatchdog:
    """Cancels work that stops reporting progress."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self.last_progress = time.monotonic()

    def touch(self) -> None:
        self.last_progress = time.monotonic()

    async def run(self, work: Awaitable[T]) -> T:
        """Await ``work``; raise StageTimeoutError if it stalls for ``timeout``."""
        task = asyncio.ensure_future(work)
        try:
            while True:
                remaining = self.timeout - (time.monotonic() - self.last_progress)
                if remaining <= 0:
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)
                    raise StageTimeoutError(f"no progress for {self.timeout:g}s")
                done, _ = await asyncio.wait({task}, timeout=remaining)
                if done:
                    return task.result()
        finally:
            if not task.done():
                task.cancel()


class Orchestrator:
    """Control loop and per-job drivers."""

    def __init__(
        self,
        state_machine: JobStateMachine,
        scanner: Optional[SiteScanner] = None,
        content_generator: Optional[ContentGenerator] = None,
        planner: Optional[DeploymentPlanner] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.state_machine = state_machine
        self.scanner = scanner or SiteScanner(self.settings)
        self.content_generator = content_generator or ContentGenerator(self.settings)
        self.planner = planner or DeploymentPlanner(settings=self.settings)

        self._workers = asyncio.Semaphore(self.settings.max_concurrent_jobs)
        self._provisioning = asyncio.Semaphore(self.settings.max_concurrent_provisioning)
        self._active: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._running = False
        self._first_tick = True

    # ========================================================================
    # Control loop
    # ========================================================================

    async def start(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run_forever())
            logger.info("Orchestrator started", workers=self.settings.max_concurrent_jobs)

    async def stop(self) -> None:
        """Stop polling and cancel in-flight drivers; their jobs resume on next start."""
        self._running = False
        tasks = list(self._tasks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._loop_task = None
        logger.info("Orchestrator stopped", cancelled=len(tasks))

    async def run_forever(self) -> None:
        self._running = True
        while self._running:
            try:
                await self.tick()
            except Exception:
                logger.exception("Orchestrator tick failed")
            await asyncio.sleep(self.settings.poll_interval_seconds)

    async def tick(self) -> int:
        """Dispatch a driver for every eligible job without one; returns how many."""
        include_rejected = self.settings.auto_resubmit_rejected and self.settings.allow_resubmit
        jobs = await self.state_machine.eligible_jobs(include_rejected=include_rejected)

        resuming = self._first_tick
        self._first_tick = False

        dispatched = 0
        for job in jobs:
            if not self._claim(job.id):
                continue
            resumed = resuming and job.status in RESUMABLE_STATUSES
            task = asyncio.create_task(self._supervise(job.id, resumed))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched += 1

        if dispatched:
            logger.info("Jobs dispatched", count=dispatched)
        return dispatched

    async def drain(self) -> None:
        """Wait until every dispatched driver has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def drive(self, job_id: str) -> Job:
        """Advance one job until it waits for a human or is terminal."""
        if not self._claim(job_id):
            logger.info("Job already has a driver", job_id=job_id)
            return await self.state_machine.get_job(job_id)
        return await self._drive_claimed(job_id, resumed=False)

    # ========================================================================
    # Drivers
    # ========================================================================

    def _claim(self, job_id: str) -> bool:
        if job_id in self._active:
            return False
        self._active.add(job_id)
        return True

    async def _supervise(self, job_id: str, resumed: bool) -> None:
        try:
            await self._drive_claimed(job_id, resumed)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Job driver crashed", job_id=job_id)

    async def _drive_claimed(self, job_id: str, resumed: bool) -> Job:
        try:
            async with self._workers:
                if resumed:
                    job = await self.state_machine.get_job(job_id)
                    await self.state_machine.annotate(
                        job_id,
                        f"Resumed after restart in {job.status.value}",
                        level="warning",
                    )
                return await self._advance(job_id)
        finally:
            self._active.discard(job_id)

    def _actionable(self, job: Job) -> bool:
        if job.status in TERMINAL_STATUSES or job.status == JobStatus.PENDING_AUDIT:
            return False
        if job.status == JobStatus.REJECTED:
            return self.settings.auto_resubmit_rejected and self.settings.allow_resubmit
        return True

    async def _advance(self, job_id: str) -> Job:
        while True:
            job = await self.state_machine.get_job(job_id)
            if not self._actionable(job):
                return job

            await self._run_stage(job)

            latest = await self.state_machine.get_job(job_id)
            if latest.status == job.status:
                # Stage left the job where it was; the next tick retries it
                return latest

    async def _run_stage(self, job: Job) -> None:
        status = job.status
        log = logger.bind(job_id=job.id, status=status.value)

        try:
            if status == JobStatus.QUEUED:
                await self.state_machine.transition(
                    job.id, JobEvent.START, "Scanning started", expected=JobStatus.QUEUED,
                )
            elif status == JobStatus.SCANNING:
                await self._scan(job)
            elif status == JobStatus.GENERATING_CONTENT:
                await self._generate(job)
            elif status == JobStatus.PROVISIONING:
                await self._provision(job)
            elif status == JobStatus.REJECTED:
                await self.state_machine.resubmit(job.id)
        except InvalidTransitionError as e:
            log.info("Stage superseded by a concurrent write", error=e.message)
        except DemoforgeError as e:
            log.warning("Stage failed", kind=e.kind.value, error=e.message)
            await self._fail(job, e.kind, self._describe(e))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.exception("Unexpected stage error")
            await self._fail(job, ErrorKind.PERMANENT, f"unexpected error: {type(e).__name__}: {e}")

    async def _fail(self, job: Job, reason: ErrorKind, detail: str) -> None:
        try:
            await self.state_machine.fail(
                job.id,
                reason,
                detail,
                event=STAGE_FAIL_EVENTS.get(job.status, JobEvent.FAIL),
                expected=job.status,
            )
        except InvalidTransitionError as e:
            logger.info("Job moved before failure was recorded", job_id=job.id, error=e.message)

    @staticmethod
    def _describe(error: DemoforgeError) -> str:
        if error.detail:
            return f"{error.message} ({error.detail})"
        return error.message

    # ========================================================================
    # Stages
    # ========================================================================

    async def _scan(self, job: Job) -> None:
        await self.state_machine.report_progress(job.id, JobStatus.SCANNING, 10, "Scanning target site")
        scan = await self.scanner.scan(job)

        source = scan.target.source_url or "supplied HTML"
        await self.state_machine.transition(
            job.id,
            JobEvent.SCAN_OK,
            f"Scanned {source}: {scan.target.display_name}",
            expected=JobStatus.SCANNING,
            result={"target": scan.target, "scanned_html": scan.html},
        )

    async def _generate(self, job: Job) -> None:
        page = job.result.scanned_html or job.request.html_content
        if not page:
            raise ValidationError("no scanned content to generate from")

        await self.state_machine.report_progress(
            job.id, JobStatus.GENERATING_CONTENT, 10, "Generating site content",
        )
        source_url = job.result.target.source_url if job.result.target else None
        content = await self.content_generator.generate(
            page,
            source_url,
            business_name=job.request.business_name,
        )

        await self.state_machine.transition(
            job.id,
            JobEvent.CONTENT_OK,
            f"Generated content: {content.site_title}",
            expected=JobStatus.GENERATING_CONTENT,
            result={"content": content},
        )

    async def _provision(self, job: Job) -> None:
        plan = self.planner.plan(job)
        watchdog = ProgressWatchdog(self.settings.provisioning_timeout_seconds)

        async def on_progress(stage: str, message: str, percent: int):
            watchdog.touch()
            await self.state_machine.report_progress(job.id, JobStatus.PROVISIONING, percent, message)

        async with self._provisioning:
            watchdog.touch()
            try:
                result = await watchdog.run(self.planner.execute(plan, on_progress=on_progress))
            except StageTimeoutError as e:
                raise StageTimeoutError(
                    f"provisioning stalled: {e.message}; partial remote artifacts for "
                    f"{plan.manifest.public_host} were left for manual cleanup",
                ) from e

        await self.state_machine.transition(
            job.id,
            JobEvent.DEPLOY_OK,
            f"Deployed to {result.url}",
            expected=JobStatus.PROVISIONING,
            result={
                "url": result.url,
                "package_id": result.package_id,
                "credentials": result.credentials,
                "fingerprint": result.fingerprint,
            },
        )

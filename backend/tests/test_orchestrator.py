"""Tests for the orchestrator control loop and stage drivers."""

import asyncio

import pytest

from demoforge.errors import ErrorKind, PermanentError, StageTimeoutError, TransientError
from demoforge.models import JobCreateRequest, JobEvent, JobStatus
from demoforge.services.orchestrator import Orchestrator, ProgressWatchdog

from fakes import FakeScanner, advance_to


def request_for(name: str, slug: str) -> JobCreateRequest:
    return JobCreateRequest(
        business_name=name,
        website_url=f"https://{slug}.example",
        blueprint_id="static-landing",
        client_slug=slug,
    )


def orchestrator_with(state_machine, scanner, content_generator, planner, settings, **overrides):
    return Orchestrator(
        state_machine,
        scanner,
        content_generator,
        planner,
        settings.model_copy(update=overrides),
    )


async def wait_for_status(state_machine, job_id, status, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        job = await state_machine.get_job(job_id)
        if job.status == status or asyncio.get_running_loop().time() > deadline:
            return job
        await asyncio.sleep(0.01)


class TestProgressWatchdog:

    @pytest.mark.asyncio
    async def test_returns_result(self):
        async def work():
            await asyncio.sleep(0.01)
            return "done"

        assert await ProgressWatchdog(1.0).run(work()) == "done"

    @pytest.mark.asyncio
    async def test_stalled_work_is_cancelled(self):
        cancelled = asyncio.Event()

        async def work():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        with pytest.raises(StageTimeoutError):
            await ProgressWatchdog(0.05).run(work())
        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_touch_extends_deadline(self):
        watchdog = ProgressWatchdog(0.1)

        async def work():
            for _ in range(5):
                await asyncio.sleep(0.05)
                watchdog.touch()
            return "done"

        assert await watchdog.run(work()) == "done"


@pytest.mark.asyncio
async def test_job_reaches_pending_audit(orchestrator, state_machine, transfer, acme_request):
    job = await state_machine.create_job(acme_request)

    job = await orchestrator.drive(job.id)

    assert job.status == JobStatus.PENDING_AUDIT
    assert job.progress == 100
    assert job.result.url == "http://acme.127.0.0.1.nip.io/"
    assert job.result.package_id == "pkg-1"
    assert job.result.fingerprint
    assert job.result.target.domain_candidate == "acme.biz"
    assert job.result.content.site_title == "Acme Plumbing"
    assert "/srv/sites/acme.127.0.0.1.nip.io/demoforge/content.html" in transfer.files
    messages = [entry.message for entry in job.logs]
    assert messages[-1] == "Deployed to http://acme.127.0.0.1.nip.io/"


@pytest.mark.asyncio
async def test_progress_is_monotonic_within_provisioning(orchestrator, state_machine, bus, acme_request):
    seen = []

    async def subscriber(notification):
        if notification.job is not None and notification.job.status == JobStatus.PROVISIONING:
            seen.append(notification.job.progress)

    bus.subscribe(subscriber)
    job = await state_machine.create_job(acme_request)
    await orchestrator.drive(job.id)

    assert seen
    assert seen == sorted(seen)


@pytest.mark.asyncio
async def test_interrupted_job_resumes_on_first_tick(orchestrator, state_machine, acme_request):
    job = await state_machine.create_job(acme_request)
    await advance_to(state_machine, job.id, JobStatus.PROVISIONING)

    assert await orchestrator.tick() == 1
    await orchestrator.drain()

    job = await state_machine.get_job(job.id)
    assert job.status == JobStatus.PENDING_AUDIT
    resumed = [e for e in job.logs if e.message == "Resumed after restart in provisioning"]
    assert len(resumed) == 1
    assert resumed[0].level == "warning"


@pytest.mark.asyncio
async def test_failure_of_one_job_does_not_affect_another(
    state_machine, content_generator, planner, settings,
):
    scanner = FakeScanner(fail_for={"Broken Co": PermanentError("site unreachable")})
    orchestrator = orchestrator_with(state_machine, scanner, content_generator, planner, settings)
    broken = await state_machine.create_job(request_for("Broken Co", "broken"))
    healthy = await state_machine.create_job(request_for("Healthy Co", "healthy"))

    assert await orchestrator.tick() == 2
    await orchestrator.drain()

    broken = await state_machine.get_job(broken.id)
    assert broken.status == JobStatus.FAILED
    assert broken.result.failure_reason == ErrorKind.PERMANENT
    assert broken.logs[-1].message == "Failed (Permanent): site unreachable"
    assert (await state_machine.get_job(healthy.id)).status == JobStatus.PENDING_AUDIT


@pytest.mark.asyncio
async def test_unexpected_error_fails_the_job(state_machine, content_generator, planner, settings):
    scanner = FakeScanner(fail_for={"Buggy Co": RuntimeError("boom")})
    orchestrator = orchestrator_with(state_machine, scanner, content_generator, planner, settings)
    job = await state_machine.create_job(request_for("Buggy Co", "buggy"))

    job = await orchestrator.drive(job.id)

    assert job.status == JobStatus.FAILED
    assert job.result.failure_reason == ErrorKind.PERMANENT
    assert "unexpected error: RuntimeError: boom" in job.logs[-1].message


@pytest.mark.asyncio
async def test_persistent_transient_failure_exhausts_retries(orchestrator, state_machine, hosting, acme_request):
    hosting.failures = [TransientError("503 from control plane") for _ in range(10)]
    job = await state_machine.create_job(acme_request)

    job = await orchestrator.drive(job.id)

    assert job.status == JobStatus.FAILED
    assert job.result.failure_reason == ErrorKind.MAX_RETRIES_EXCEEDED
    assert job.result.url is None


@pytest.mark.asyncio
async def test_stalled_provisioning_times_out(
    state_machine, scanner, content_generator, planner, settings, transfer, acme_request,
):
    transfer.delay = 0.5
    orchestrator = orchestrator_with(
        state_machine, scanner, content_generator, planner, settings,
        provisioning_timeout_seconds=0.1,
    )
    job = await state_machine.create_job(acme_request)

    job = await orchestrator.drive(job.id)

    assert job.status == JobStatus.FAILED
    assert job.result.failure_reason == ErrorKind.TIMEOUT
    assert "manual cleanup" in job.logs[-1].message
    assert not planner.locks.is_locked("acme.biz")


@pytest.mark.asyncio
async def test_job_has_at_most_one_driver(orchestrator, state_machine, scanner, acme_request):
    job = await state_machine.create_job(acme_request)

    first, second = await asyncio.gather(orchestrator.drive(job.id), orchestrator.drive(job.id))

    assert first.status == JobStatus.PENDING_AUDIT
    assert scanner.calls == [job.id]


@pytest.mark.asyncio
async def test_tick_skips_jobs_with_a_driver(orchestrator, state_machine, transfer, acme_request):
    transfer.delay = 0.01
    job = await state_machine.create_job(acme_request)

    assert await orchestrator.tick() == 1
    assert await orchestrator.tick() == 0
    await orchestrator.drain()

    assert (await state_machine.get_job(job.id)).status == JobStatus.PENDING_AUDIT


@pytest.mark.asyncio
async def test_provisioning_concurrency_is_capped(
    state_machine, scanner, content_generator, planner, settings, transfer,
):
    transfer.delay = 0.01
    orchestrator = orchestrator_with(
        state_machine, scanner, content_generator, planner, settings,
        max_concurrent_provisioning=1,
    )
    jobs = [
        await state_machine.create_job(request_for(f"Shop {n}", f"shop{n}"))
        for n in range(3)
    ]

    assert await orchestrator.tick() == 3
    await orchestrator.drain()

    assert transfer.max_active == 1
    for job in jobs:
        assert (await state_machine.get_job(job.id)).status == JobStatus.PENDING_AUDIT


async def rejected_job(state_machine, request):
    job = await state_machine.create_job(request)
    await advance_to(state_machine, job.id, JobStatus.PENDING_AUDIT)
    return await state_machine.transition(
        job.id, JobEvent.REJECT, "Rejected by auditor: logo", result={"issues": ["logo"]},
    )


@pytest.mark.asyncio
async def test_rejected_jobs_wait_without_auto_resubmit(orchestrator, state_machine, acme_request):
    job = await rejected_job(state_machine, acme_request)

    assert await orchestrator.tick() == 0
    assert (await orchestrator.drive(job.id)).status == JobStatus.REJECTED


@pytest.mark.asyncio
async def test_auto_resubmit_redeploys_rejected_jobs(
    state_machine, scanner, content_generator, planner, settings, acme_request,
):
    orchestrator = orchestrator_with(
        state_machine, scanner, content_generator, planner, settings,
        auto_resubmit_rejected=True,
    )
    job = await rejected_job(state_machine, acme_request)

    job = await orchestrator.drive(job.id)

    assert job.status == JobStatus.PENDING_AUDIT
    assert job.resubmit_count == 1
    assert job.result.issues == []
    assert job.result.url == "http://acme.127.0.0.1.nip.io/"


@pytest.mark.asyncio
async def test_start_and_stop(orchestrator, state_machine, acme_request):
    await orchestrator.start()
    job = await state_machine.create_job(acme_request)

    job = await wait_for_status(state_machine, job.id, JobStatus.PENDING_AUDIT)
    await orchestrator.stop()

    assert job.status == JobStatus.PENDING_AUDIT
    assert orchestrator._loop_task is None

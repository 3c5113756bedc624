"""Tests for the job lifecycle state machine."""

from datetime import timedelta

import pytest

from demoforge.errors import (
    ConcurrentModificationError,
    ErrorKind,
    InvalidTransitionError,
    JobNotFoundError,
)
from demoforge.models import Job, JobCreateRequest, JobEvent, JobStatus, utcnow
from demoforge.services.job_store import JobStore
from demoforge.services.notifications import JOB_UPDATED
from demoforge.services.state_machine import (
    TRANSITIONS,
    JobStateMachine,
    next_status,
    slugify,
)

from fakes import SAMPLE_CONTENT, advance_to


class RacingStore(JobStore):
    """Runs ``interfere`` once, right before the next conditional write."""

    def __init__(self):
        super().__init__()
        self.interfere = None

    async def compare_and_swap(self, updated, expected_status, expected_version):
        if self.interfere is not None:
            hook, self.interfere = self.interfere, None
            await hook()
        return await super().compare_and_swap(updated, expected_status, expected_version)


class LosingStore(JobStore):
    async def compare_and_swap(self, updated, expected_status, expected_version):
        return False


def test_transition_table_is_immutable():
    with pytest.raises(TypeError):
        TRANSITIONS[(JobStatus.QUEUED, JobEvent.APPROVE)] = JobStatus.APPROVED


def test_next_status_follows_table():
    assert next_status(JobStatus.QUEUED, JobEvent.START) == JobStatus.SCANNING
    assert next_status(JobStatus.REJECTED, JobEvent.RESUBMIT) == JobStatus.PROVISIONING
    assert next_status(JobStatus.PENDING_AUDIT, JobEvent.FAIL) == JobStatus.FAILED


@pytest.mark.parametrize("status,event", [
    (JobStatus.QUEUED, JobEvent.DEPLOY_OK),
    (JobStatus.SCANNING, JobEvent.APPROVE),
    (JobStatus.PENDING_AUDIT, JobEvent.RESUBMIT),
    (JobStatus.APPROVED, JobEvent.FAIL),
    (JobStatus.FAILED, JobEvent.FAIL),
])
def test_next_status_rejects_pairs_outside_table(status, event):
    with pytest.raises(InvalidTransitionError):
        next_status(status, event)


def test_slugify():
    assert slugify("Acme Plumbing & Heating Ltd.") == "acme-plumbing-heating-ltd"
    assert slugify("!!!") == "site"


@pytest.mark.asyncio
async def test_create_job_queues_with_one_log_entry(state_machine, acme_request, bus):
    seen = []

    async def record(notification):
        seen.append(notification)

    bus.subscribe(record)
    job = await state_machine.create_job(acme_request)

    assert job.status == JobStatus.QUEUED
    assert job.client_slug == "acme"
    assert len(job.logs) == 1
    assert [n.topic for n in seen] == [JOB_UPDATED]


@pytest.mark.asyncio
async def test_create_job_derives_slug_from_business_name(state_machine):
    job = await state_machine.create_job(JobCreateRequest(business_name="Bob's Bikes", domain="bob.com"))
    assert job.client_slug == "bob-s-bikes"


@pytest.mark.asyncio
async def test_valid_transition_changes_status_once_and_logs_once(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)

    updated = await state_machine.transition(job.id, JobEvent.START, "Scanning started")

    assert updated.status == JobStatus.SCANNING
    assert len(updated.logs) == len(job.logs) + 1
    assert updated.logs[-1].message == "Scanning started"
    assert updated.version == job.version + 1
    assert updated.updated_at >= job.updated_at


@pytest.mark.asyncio
async def test_invalid_transition_leaves_record_unchanged(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)
    before = (await state_machine.get_job(job.id)).model_dump()

    with pytest.raises(InvalidTransitionError):
        await state_machine.transition(job.id, JobEvent.APPROVE, "nope")

    assert (await state_machine.get_job(job.id)).model_dump() == before


@pytest.mark.asyncio
async def test_expected_status_mismatch_is_invalid(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)

    with pytest.raises(InvalidTransitionError):
        await state_machine.transition(
            job.id, JobEvent.START, "start", expected=JobStatus.SCANNING,
        )


@pytest.mark.asyncio
async def test_unknown_job(state_machine):
    with pytest.raises(JobNotFoundError):
        await state_machine.transition("missing", JobEvent.START, "start")


@pytest.mark.asyncio
async def test_progress_is_monotonic_within_a_stage(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)
    await state_machine.transition(job.id, JobEvent.START, "start")

    await state_machine.report_progress(job.id, JobStatus.SCANNING, 40)
    job = await state_machine.report_progress(job.id, JobStatus.SCANNING, 20, "late report")

    assert job.progress == 40
    assert job.status == JobStatus.SCANNING


@pytest.mark.asyncio
async def test_progress_resets_on_stage_entry_and_completes_on_audit(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)
    await state_machine.transition(job.id, JobEvent.START, "start")
    await state_machine.report_progress(job.id, JobStatus.SCANNING, 80)

    job = await state_machine.transition(job.id, JobEvent.SCAN_OK, "scanned")
    assert job.progress == 0

    job = await advance_to(state_machine, job.id, JobStatus.PENDING_AUDIT)
    assert job.progress == 100


@pytest.mark.asyncio
async def test_progress_for_another_stage_is_rejected(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)

    with pytest.raises(InvalidTransitionError):
        await state_machine.report_progress(job.id, JobStatus.PROVISIONING, 50)


@pytest.mark.asyncio
async def test_fail_records_reason_and_keeps_progress(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)
    await advance_to(state_machine, job.id, JobStatus.PROVISIONING)
    await state_machine.report_progress(job.id, JobStatus.PROVISIONING, 60)

    job = await state_machine.fail(
        job.id, ErrorKind.TIMEOUT, "stalled", event=JobEvent.DEPLOY_FAIL,
    )

    assert job.status == JobStatus.FAILED
    assert job.progress == 60
    assert job.result.failure_reason == ErrorKind.TIMEOUT
    assert job.result.content == SAMPLE_CONTENT
    assert job.logs[-1].level == "error"
    assert "Timeout" in job.logs[-1].message


@pytest.mark.asyncio
async def test_fail_is_not_allowed_from_terminal(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)
    await state_machine.fail(job.id, ErrorKind.PERMANENT, "boom")

    with pytest.raises(InvalidTransitionError):
        await state_machine.fail(job.id, ErrorKind.PERMANENT, "again")


@pytest.mark.asyncio
async def test_resubmit_routes_rejected_job_back_to_provisioning(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)
    await advance_to(state_machine, job.id, JobStatus.PENDING_AUDIT)
    await state_machine.transition(
        job.id, JobEvent.REJECT, "rejected", result={"issues": ["broken logo"]},
    )

    job = await state_machine.resubmit(job.id)

    assert job.status == JobStatus.PROVISIONING
    assert job.resubmit_count == 1
    assert job.result.issues == []
    assert any("broken logo" in entry.message for entry in job.logs)


@pytest.mark.asyncio
async def test_resubmit_beyond_limit_fails_job(state_machine, settings, acme_request):
    job = await state_machine.create_job(acme_request)
    await advance_to(state_machine, job.id, JobStatus.PENDING_AUDIT)

    for _ in range(settings.max_resubmits):
        await state_machine.transition(job.id, JobEvent.REJECT, "rejected")
        await state_machine.resubmit(job.id)
        await state_machine.transition(job.id, JobEvent.DEPLOY_OK, "redeployed")

    await state_machine.transition(job.id, JobEvent.REJECT, "rejected again")
    job = await state_machine.resubmit(job.id)

    assert job.status == JobStatus.FAILED
    assert job.result.failure_reason == ErrorKind.MAX_RETRIES_EXCEEDED
    assert job.resubmit_count == settings.max_resubmits


@pytest.mark.asyncio
async def test_resubmit_disabled_by_policy(store, bus, settings, acme_request):
    state_machine = JobStateMachine(store, bus, settings.model_copy(update={"allow_resubmit": False}))
    job = await state_machine.create_job(acme_request)
    await advance_to(state_machine, job.id, JobStatus.PENDING_AUDIT)
    await state_machine.transition(job.id, JobEvent.REJECT, "rejected")

    with pytest.raises(InvalidTransitionError):
        await state_machine.resubmit(job.id)
    assert (await state_machine.get_job(job.id)).status == JobStatus.REJECTED


@pytest.mark.asyncio
async def test_lost_write_is_reapplied_on_fresh_state(bus, settings, acme_request):
    store = RacingStore()
    state_machine = JobStateMachine(store, bus, settings)
    job = await state_machine.create_job(acme_request)

    async def concurrent_note():
        await state_machine.annotate(job.id, "written concurrently")

    store.interfere = concurrent_note
    job = await state_machine.transition(job.id, JobEvent.START, "start", expected=JobStatus.QUEUED)

    assert job.status == JobStatus.SCANNING
    assert [entry.message for entry in job.logs[-2:]] == ["written concurrently", "start"]
    assert job.version == 2


@pytest.mark.asyncio
async def test_lost_write_revalidates_against_new_status(bus, settings, acme_request):
    store = RacingStore()
    state_machine = JobStateMachine(store, bus, settings)
    job = await state_machine.create_job(acme_request)

    async def concurrent_failure():
        await state_machine.fail(job.id, ErrorKind.PERMANENT, "cancelled by admin")

    store.interfere = concurrent_failure
    with pytest.raises(InvalidTransitionError):
        await state_machine.transition(job.id, JobEvent.START, "start", expected=JobStatus.QUEUED)

    job = await state_machine.get_job(job.id)
    assert job.status == JobStatus.FAILED
    assert job.logs[-1].message.startswith("Failed (Permanent)")


@pytest.mark.asyncio
async def test_persistent_conflict_gives_up(bus, settings, acme_request):
    store = LosingStore()
    state_machine = JobStateMachine(store, bus, settings)
    job = await state_machine.create_job(acme_request)

    with pytest.raises(ConcurrentModificationError):
        await state_machine.transition(job.id, JobEvent.START, "start")


@pytest.mark.asyncio
async def test_update_fields_cannot_change_status(state_machine, acme_request):
    job = await state_machine.create_job(acme_request)

    def sneaky(j):
        j.status = JobStatus.APPROVED

    with pytest.raises(InvalidTransitionError):
        await state_machine.update_fields(job.id, sneaky)
    assert (await state_machine.get_job(job.id)).status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_eligible_jobs_oldest_first(state_machine, acme_request):
    first = await state_machine.create_job(acme_request)
    second = await state_machine.create_job(acme_request)
    done = await state_machine.create_job(acme_request)
    await advance_to(state_machine, done.id, JobStatus.PENDING_AUDIT)

    eligible = await state_machine.eligible_jobs()

    assert {j.id for j in eligible} == {first.id, second.id}
    assert eligible[0].created_at <= eligible[1].created_at


@pytest.mark.asyncio
async def test_eligible_jobs_never_skip_the_oldest(state_machine, store):
    for i in range(60):
        job = Job(
            id=f"job-{i:02d}",
            request=JobCreateRequest(business_name=f"Shop {i}"),
            client_slug=f"shop{i}",
            created_at=utcnow() - timedelta(minutes=60 - i),
        )
        await store.create(job)

    eligible = await state_machine.eligible_jobs(limit=50)

    assert len(eligible) == 50
    assert eligible[0].id == "job-00"
    assert eligible[-1].id == "job-49"

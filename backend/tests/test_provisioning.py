"""Tests for the provisioning client."""

import httpx
import pytest

from demoforge.errors import (
    ErrorKind,
    MaxRetriesExceededError,
    PayloadTooLargeError,
    PermanentError,
    TransientError,
    ValidationError,
)
from demoforge.models import ProvisioningRequest
from demoforge.services.provisioning import (
    ProvisioningClient,
    derive_public_host,
    is_valid_hostname,
)


def make_request(**overrides) -> ProvisioningRequest:
    fields = {
        "domain": "acme.biz",
        "blueprint_id": "wp-starter",
        "client_id": "client-acme",
        "client_slug": "acme",
        "html_content": "<h1>Acme</h1>",
    }
    fields.update(overrides)
    return ProvisioningRequest(**fields)


def test_request_accepts_camel_case_aliases():
    request = ProvisioningRequest.model_validate({
        "domain": "acme.biz",
        "blueprintId": "static-landing",
        "clientId": "c1",
        "clientSlug": "acme",
        "htmlContent": "<p>hi</p>",
    })
    assert request.blueprint_id == "static-landing"
    assert request.html_content == "<p>hi</p>"


@pytest.mark.parametrize("hostname,valid", [
    ("acme.biz", True),
    ("shop.acme.co.uk", True),
    ("ACME.biz", True),
    ("localhost", False),
    ("-acme.biz", False),
    ("acme-.biz", False),
    ("acme..biz", False),
    ("ac_me.biz", False),
    ("a" * 64 + ".biz", False),
])
def test_is_valid_hostname(hostname, valid):
    assert is_valid_hostname(hostname) is valid


def test_derive_public_host():
    assert derive_public_host("acme", "127.0.0.1.nip.io") == "acme.127.0.0.1.nip.io"


@pytest.mark.parametrize("overrides", [
    {"domain": "not a domain"},
    {"client_slug": "Acme Plumbing"},
    {"client_slug": "acme.biz"},
])
def test_validate_rejects_malformed_requests(provisioning_client, overrides):
    with pytest.raises(ValidationError):
        provisioning_client.validate(make_request(**overrides))


@pytest.mark.asyncio
async def test_oversized_payload_rejected_before_remote_calls(provisioning_client, hosting, settings):
    request = make_request(html_content="x" * (settings.max_html_bytes + 1))

    with pytest.raises(PayloadTooLargeError) as info:
        await provisioning_client.provision(request)

    assert info.value.kind == ErrorKind.PAYLOAD_TOO_LARGE
    assert hosting.create_calls == 0


@pytest.mark.asyncio
async def test_multibyte_payload_is_measured_in_bytes(provisioning_client, settings):
    # Each character encodes to three bytes
    request = make_request(html_content="€" * (settings.max_html_bytes // 3 + 1))

    with pytest.raises(PayloadTooLargeError):
        provisioning_client.validate(request)


@pytest.mark.asyncio
async def test_provision_default_manifest(provisioning_client, transfer):
    progress = []

    async def on_progress(stage, message, percent):
        progress.append(percent)

    result = await provisioning_client.provision(make_request(), on_progress=on_progress)

    assert result.success
    assert result.url == "http://acme.127.0.0.1.nip.io/"
    assert result.package_id == "pkg-1"
    assert result.credentials.username == "user-pkg-1"
    assert transfer.files["/srv/sites/acme.127.0.0.1.nip.io/index.html"] == b"<h1>Acme</h1>"
    assert "/srv/sites/acme.127.0.0.1.nip.io" in transfer.dirs
    assert progress == sorted(progress)


@pytest.mark.asyncio
async def test_transient_failures_are_retried(provisioning_client, hosting, transfer):
    hosting.failures = [TransientError("503"), TransientError("timeout")]
    transfer.failures = [TransientError("connection lost")]

    result = await provisioning_client.provision(make_request())

    assert result.success
    assert hosting.create_calls == 3


@pytest.mark.asyncio
async def test_transient_failures_beyond_retry_limit_escalate(provisioning_client, hosting, settings):
    hosting.failures = [TransientError("503") for _ in range(10)]

    with pytest.raises(MaxRetriesExceededError) as info:
        await provisioning_client.provision(make_request())

    assert info.value.kind == ErrorKind.MAX_RETRIES_EXCEEDED
    assert hosting.create_calls == settings.provisioning_max_attempts


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(provisioning_client, hosting):
    hosting.failures = [PermanentError("invalid credentials"), TransientError("unused")]

    with pytest.raises(PermanentError, match="invalid credentials"):
        await provisioning_client.provision(make_request())

    assert hosting.create_calls == 1


@pytest.mark.asyncio
async def test_provision_is_idempotent(provisioning_client, hosting, transfer):
    first = await provisioning_client.provision(make_request())
    files_after_first = dict(transfer.files)

    second = await provisioning_client.provision(make_request())

    assert second.url == first.url
    assert second.package_id == first.package_id
    assert transfer.files == files_after_first
    assert len(hosting.packages) == 1


def verifying_client(settings, handler) -> ProvisioningClient:
    return ProvisioningClient(
        settings=settings,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_verify_reachable(settings):
    client = verifying_client(settings, lambda r: httpx.Response(200, text="<!-- demoforge:abc -->"))

    assert await client.verify_reachable("http://acme.example/")
    assert await client.verify_reachable("http://acme.example/", "abc")
    assert not await client.verify_reachable("http://acme.example/", "def")


@pytest.mark.asyncio
async def test_verify_unreachable(settings):
    def refuse(request):
        raise httpx.ConnectError("refused", request=request)

    assert not await verifying_client(settings, lambda r: httpx.Response(502)).verify_reachable("http://a.example/")
    assert not await verifying_client(settings, refuse).verify_reachable("http://a.example/")

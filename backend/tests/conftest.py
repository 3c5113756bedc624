"""Pytest configuration for demoforge tests."""

import httpx
import pytest

from demoforge.config import Settings
from demoforge.models import JobCreateRequest
from demoforge.services.audit import AuditCoordinator
from demoforge.services.blueprints import BlueprintRegistry
from demoforge.services.deployer import DeploymentPlanner
from demoforge.services.job_store import AuditorStore, JobStore
from demoforge.services.notifications import JobEventBus
from demoforge.services.orchestrator import Orchestrator
from demoforge.services.provisioning import ProvisioningClient
from demoforge.services.state_machine import JobStateMachine

from fakes import (
    FakeContentGenerator,
    FakeScanner,
    InMemoryFileTransfer,
    InMemoryHostingControlPlane,
    site_transport,
)

SUFFIX = "127.0.0.1.nip.io"
SITE_ROOT = "/srv/sites"


@pytest.fixture
def settings():
    """Settings with no backoff and short deadlines."""
    return Settings(
        _env_file=None,
        hosting_api_key="general-key+oauth-key",
        anthropic_api_key=None,
        firecrawl_api_key=None,
        public_domain_suffix=SUFFIX,
        public_url_scheme="http",
        site_root=SITE_ROOT,
        nginx_conf_dir="/etc/nginx/conf.d",
        secret_key="test-secret",
        max_html_bytes=10_000,
        provisioning_max_attempts=3,
        max_retries=2,
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
        verify_attempts=2,
        provisioning_timeout_seconds=5.0,
        domain_lock_timeout_seconds=5.0,
        poll_interval_seconds=0.01,
        run_orchestrator=False,
    )


@pytest.fixture
def bus():
    return JobEventBus()


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
def auditor_store():
    return AuditorStore()


@pytest.fixture
def state_machine(store, bus, settings):
    return JobStateMachine(store, bus, settings)


@pytest.fixture
def audit(state_machine, auditor_store, bus, settings):
    return AuditCoordinator(state_machine, auditor_store, bus, settings)


@pytest.fixture
def hosting():
    return InMemoryHostingControlPlane()


@pytest.fixture
def transfer():
    return InMemoryFileTransfer()


@pytest.fixture
def site_http(transfer):
    """HTTP client that serves the sites uploaded through ``transfer``."""
    return httpx.AsyncClient(transport=site_transport(transfer, SITE_ROOT))


@pytest.fixture
def provisioning_client(hosting, transfer, settings, site_http):
    return ProvisioningClient(hosting, transfer, settings, http_client=site_http)


@pytest.fixture
def planner(provisioning_client, settings):
    return DeploymentPlanner(provisioning_client, BlueprintRegistry(settings), settings)


@pytest.fixture
def scanner():
    return FakeScanner()


@pytest.fixture
def content_generator():
    return FakeContentGenerator()


@pytest.fixture
def orchestrator(state_machine, scanner, content_generator, planner, settings):
    return Orchestrator(state_machine, scanner, content_generator, planner, settings)


@pytest.fixture
def acme_request():
    return JobCreateRequest(
        business_name="Acme Plumbing",
        website_url="https://acme.biz",
        domain="acme.biz",
        blueprint_id="wp-starter",
        client_id="client-acme",
        client_slug="acme",
    )

"""
Deployment Planner - resolves a job into a deployment plan and applies it.

Handles:
1. Public host selection (override or wildcard-DNS host from the slug)
2. Blueprint rendering with a deterministic content fingerprint
3. Per-domain mutual exclusion around provisioning
4. Post-deploy verification of the public URL

The planner never writes the job; it returns the provisioning result to
its caller.
"""

import asyncio
import hashlib
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import TransientError, ValidationError
from demoforge.models import DeploymentPlan, Job, ProvisioningRequest, ProvisioningResult
from demoforge.services.blueprints import BlueprintRegistry
from demoforge.services.provisioning import (
    ProgressCallback,
    ProvisioningClient,
    derive_public_host,
    is_valid_hostname,
)
from demoforge.services.retry import call_with_retries

logger = structlog.get_logger()


def compute_fingerprint(blueprint_id: str, public_host: str, domain: str, content: str) -> str:
    """Stable identifier of what a deployment should be serving."""
    digest = hashlib.sha1()
    for part in (blueprint_id, public_host, domain, content):
        digest.update(part.encode("utf-8"))
        digest.update(b"\0")
    return digest.hexdigest()


class DomainLocks:
    """Named asyncio locks, created on demand and dropped when unused."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = {}

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, keys: Iterable[str]) -> AsyncIterator[None]:
        """Acquire every key in sorted order; raise TransientError on timeout."""
        acquired: list[str] = []
        try:
            for key in sorted(set(keys)):
                lock = self._locks.setdefault(key, asyncio.Lock())
                self._refs[key] = self._refs.get(key, 0) + 1
                try:
                    await asyncio.wait_for(lock.acquire(), self.timeout)
                except asyncio.TimeoutError:
                    self._unref(key)
                    raise TransientError(
                        f"domain {key} is busy with another provisioning",
                    ) from None
                except BaseException:
                    self._unref(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                self._locks[key].release()
                self._unref(key)

    def _unref(self, key: str) -> None:
        self._refs[key] -= 1
        if self._refs[key] == 0:
            del self._refs[key]
            del self._locks[key]


class DeploymentPlanner:
    """Plans and executes site deployments."""

    def __init__(
        self,
        client: Optional[ProvisioningClient] = None,
        blueprints: Optional[BlueprintRegistry] = None,
        settings: Optional[Settings] = None,
        locks: Optional[DomainLocks] = None,
    ):
        self.settings = settings or get_settings()
        self.client = client or ProvisioningClient(settings=self.settings)
        self.blueprints = blueprints or BlueprintRegistry(self.settings)
        self.locks = locks or DomainLocks(self.settings.domain_lock_timeout_seconds)

    def public_host_for(self, client_slug: str, public_domain: Optional[str] = None) -> str:
        if public_domain:
            return public_domain.lower()
        return derive_public_host(client_slug, self.settings.public_domain_suffix)

    # ========================================================================
    # Planning
    # ========================================================================

    def plan(self, job: Job) -> DeploymentPlan:
        """Plan the deployment of a job's generated content."""
        content = job.result.content
        if content is None:
            raise ValidationError(f"job {job.id} has no generated content to deploy")

        domain = job.request.domain
        if not domain and job.result.target is not None:
            domain = job.result.target.domain_candidate
        public_host = self.public_host_for(job.client_slug, job.request.public_domain)

        request = ProvisioningRequest(
            domain=domain or public_host,
            blueprint_id=job.request.blueprint_id,
            client_id=job.request.client_id,
            client_slug=job.client_slug,
            html_content=content.html,
        )
        return self.plan_request(
            request,
            job_id=job.id,
            public_domain=job.request.public_domain,
            site_title=content.site_title,
        )

    def plan_request(
        self,
        request: ProvisioningRequest,
        job_id: Optional[str] = None,
        public_domain: Optional[str] = None,
        site_title: Optional[str] = None,
    ) -> DeploymentPlan:
        """
        Plan a deployment straight from a provisioning request.

        Raises:
            ValidationError: Malformed request, public host or unknown blueprint
        """
        self.client.validate(request)

        public_host = self.public_host_for(request.client_slug, public_domain)
        if not is_valid_hostname(public_host):
            raise ValidationError(f"invalid public domain: {public_host!r}")

        fingerprint = compute_fingerprint(
            request.blueprint_id,
            public_host,
            request.domain.lower(),
            request.html_content,
        )
        manifest = self.blueprints.render(
            request,
            public_host=public_host,
            site_title=site_title or request.client_slug,
            fingerprint=fingerprint,
        )

        return DeploymentPlan(
            job_id=job_id,
            request=request,
            blueprint_id=request.blueprint_id,
            manifest=manifest,
            fingerprint=fingerprint,
            lock_keys=sorted({public_host, request.domain.lower()}),
        )

    # ========================================================================
    # Execution
    # ========================================================================

    async def execute(
        self,
        plan: DeploymentPlan,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProvisioningResult:
        """
        Apply a plan while holding its domain locks, then verify the site.

        Re-executing the same plan overwrites the same files and returns the
        same URL.
        """
        if on_progress is None:
            async def on_progress(stage: str, message: str, percent: int):
                logger.info(f"[{percent}%] {stage}: {message}")

        if any(self.locks.is_locked(key) for key in plan.lock_keys):
            await on_progress("provisioning", "Waiting for another deployment of this domain", 1)

        async with self.locks.hold(plan.lock_keys):
            logger.info("Domain locks acquired", job_id=plan.job_id, keys=plan.lock_keys)
            await on_progress("provisioning", f"Deploying blueprint {plan.blueprint_id}", 5)

            result = await self.client.provision(plan.request, plan.manifest, on_progress=on_progress)

            await on_progress("provisioning", f"Verifying {plan.manifest.public_url}", 92)
            await call_with_retries(
                "verify site",
                lambda: self._verify(plan),
                self.settings,
                attempts=self.settings.verify_attempts,
            )

        await on_progress("provisioning", "Site verified", 99)
        return result.model_copy(update={"fingerprint": plan.fingerprint})

    async def _verify(self, plan: DeploymentPlan) -> None:
        url = plan.manifest.public_url
        if not await self.client.verify_reachable(url, plan.fingerprint):
            raise TransientError(f"{url} is not serving the deployed content yet")

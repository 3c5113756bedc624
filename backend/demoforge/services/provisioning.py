"""
Provisioning Client - turns a site manifest into a live site.

Handles:
1. Input validation (before any remote call)
2. Hosting package creation and credential retrieval
3. File upload over SFTP with overwrite semantics
4. Post-install commands
5. Reachability checks on the public URL

Each remote step is retried on transient failures; the files are
rendered deterministically and overwritten, so re-running a request
converges to the same state.
"""

import posixpath
import re
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import PayloadTooLargeError, ValidationError
from demoforge.models import (
    PlannedFile,
    ProvisioningRequest,
    ProvisioningResult,
    SiteManifest,
    TransferCredentials,
)
from demoforge.services.file_transfer import FileTransfer, SSHFileTransfer
from demoforge.services.hosting import HostingControlPlane
from demoforge.services.retry import call_with_retries

logger = structlog.get_logger()

# (stage, message, percent)
ProgressCallback = Callable[[str, str, int], Awaitable[None]]

DNS_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def is_valid_label(label: str) -> bool:
    return bool(DNS_LABEL.match(label))


def is_valid_hostname(hostname: str) -> bool:
    """At least two labels, each a valid DNS label, at most 253 characters."""
    if not hostname or len(hostname) > 253:
        return False
    labels = hostname.lower().split(".")
    return len(labels) >= 2 and all(is_valid_label(label) for label in labels)


def derive_public_host(client_slug: str, suffix: str) -> str:
    """Wildcard-DNS host for a client, e.g. ``acme.127.0.0.1.nip.io``."""
    return f"{client_slug}.{suffix}".lower()


async def _log_progress(stage: str, message: str, percent: int) -> None:
    logger.info(f"[{percent}%] {stage}: {message}")


class ProvisioningClient:
    """Creates hosting resources and deploys site files onto them."""

    def __init__(
        self,
        hosting: Optional[HostingControlPlane] = None,
        transfer: Optional[FileTransfer] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.hosting = hosting or HostingControlPlane(self.settings)
        self.transfer = transfer or SSHFileTransfer(self.settings)
        self._http = http_client

    # ========================================================================
    # Validation
    # ========================================================================

    def validate(self, request: ProvisioningRequest) -> None:
        """Reject malformed requests; raises ValidationError or PayloadTooLargeError."""
        if not is_valid_hostname(request.domain):
            raise ValidationError(f"invalid domain: {request.domain!r}")
        if not is_valid_label(request.client_slug):
            raise ValidationError(f"invalid client slug: {request.client_slug!r}")
        if not request.blueprint_id:
            raise ValidationError("blueprint id is required")

        size = len(request.html_content.encode("utf-8"))
        if size > self.settings.max_html_bytes:
            raise PayloadTooLargeError(
                f"html content is {size} bytes; limit is {self.settings.max_html_bytes}",
            )

    def default_manifest(self, request: ProvisioningRequest) -> SiteManifest:
        """Single ``index.html`` under the site root of the derived public host."""
        public_host = derive_public_host(request.client_slug, self.settings.public_domain_suffix)
        return SiteManifest(
            public_host=public_host,
            public_url=f"{self.settings.public_url_scheme}://{public_host}/",
            target_dir=posixpath.join(self.settings.site_root, public_host),
            files=[PlannedFile(path="index.html", content=request.html_content)],
        )

    # ========================================================================
    # Provisioning
    # ========================================================================

    async def provision(
        self,
        request: ProvisioningRequest,
        manifest: Optional[SiteManifest] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ProvisioningResult:
        """
        Provision hosting for ``request`` and deploy ``manifest`` onto it.

        Args:
            request: Domain, blueprint and client identity
            manifest: Files and commands to apply; defaults to a single page
            on_progress: Optional callback for progress updates

        Returns:
            ProvisioningResult with the public URL and package credentials

        Raises:
            ValidationError: Before any remote call, for malformed input
            PermanentError: Auth, quota, conflict or remote command failures
            MaxRetriesExceededError: A transient failure outlived its retries
        """
        self.validate(request)
        manifest = manifest or self.default_manifest(request)
        progress = on_progress or _log_progress

        logger.info(
            "Starting provisioning",
            domain=request.domain,
            public_host=manifest.public_host,
            blueprint=request.blueprint_id,
        )

        # Step 1: Hosting package
        await progress("provisioning", f"Ensuring hosting package {manifest.public_host}", 10)
        package = await self._step(
            "ensure package",
            lambda: self.hosting.ensure_package(
                manifest.public_host,
                request.domain,
                request.client_id or request.client_slug,
            ),
        )
        if package.reused:
            await progress("provisioning", f"Reusing hosting package {package.id}", 15)

        # Step 2: Credentials
        await progress("provisioning", "Fetching transfer credentials", 25)
        credentials = await self._step(
            "fetch credentials",
            lambda: self.hosting.get_credentials(package.id),
        )

        # Step 3: Files
        await progress("provisioning", f"Uploading {len(manifest.files)} files", 40)
        await self._step(
            "upload files",
            lambda: self._upload(credentials, manifest, progress),
        )

        # Step 4: Post-install
        if manifest.post_install:
            await progress("provisioning", "Running post-install steps", 75)
            await self._step(
                "post-install",
                lambda: self._post_install(credentials, manifest),
            )

        await progress("provisioning", f"Deployed to {manifest.public_url}", 90)
        logger.info("Provisioning complete", url=manifest.public_url, package_id=package.id)

        return ProvisioningResult(
            success=True,
            url=manifest.public_url,
            package_id=package.id,
            credentials=credentials,
            fingerprint=manifest.success_indicator,
        )

    async def verify_reachable(self, url: str, indicator: Optional[str] = None) -> bool:
        """True when ``url`` answers 2xx and, if given, serves ``indicator``."""
        timeout = httpx.Timeout(self.settings.status_check_timeout_seconds)
        try:
            if self._http is not None:
                response = await self._http.get(url, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Reachability check failed", url=url, error=str(e))
            return False

        if not response.is_success:
            logger.info("Site not ready", url=url, status=response.status_code)
            return False
        if indicator and indicator not in response.text:
            logger.info("Site serving stale content", url=url)
            return False
        return True

    # ========================================================================
    # Steps
    # ========================================================================

    async def _step(self, operation: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await call_with_retries(operation, fn, self.settings)

    async def _upload(
        self,
        credentials: TransferCredentials,
        manifest: SiteManifest,
        progress: ProgressCallback,
    ) -> None:
        total = len(manifest.files)
        async with self.transfer.session(credentials) as session:
            await session.makedirs(manifest.target_dir)
            for index, planned in enumerate(manifest.files, start=1):
                path = posixpath.join(manifest.target_dir, planned.path)
                await session.write_file(path, planned.content.encode("utf-8"), planned.mode)
                await progress("provisioning", f"Wrote {path}", 40 + (30 * index) // max(total, 1))

    async def _post_install(self, credentials: TransferCredentials, manifest: SiteManifest) -> None:
        async with self.transfer.session(credentials) as session:
            for command in manifest.post_install:
                logger.info("Running post-install command", host=manifest.public_host)
                await session.run(command)

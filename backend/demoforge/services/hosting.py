"""
Hosting Control Plane - creates hosting packages and retrieves their
file-transfer credentials.

Handles:
1. Package creation (reusing an existing package on conflict)
2. Package lookup by name
3. Credential retrieval for the SFTP session
"""

import base64
from typing import Any, Optional

import httpx
import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import ConflictError, PermanentError, TransientError
from demoforge.models import HostingPackage, TransferCredentials

logger = structlog.get_logger()

# Status codes worth retrying.
RETRYABLE_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})

QUOTA_STATUS_CODES = frozenset({402, 507})


def raise_for_status(response: httpx.Response, operation: str) -> None:
    """Classify a non-2xx response as a transient or permanent failure."""
    if response.is_success:
        return

    code = response.status_code
    body = response.text[:300]

    if code in RETRYABLE_STATUS_CODES:
        raise TransientError(f"{operation}: HTTP {code}", status_code=code, detail=body)
    if code in (401, 403):
        raise PermanentError(
            f"{operation}: invalid credentials (HTTP {code})",
            status_code=code,
            detail=body,
        )
    if code in QUOTA_STATUS_CODES or "quota" in body.lower():
        raise PermanentError(f"{operation}: quota exceeded (HTTP {code})", status_code=code, detail=body)
    if code == 409:
        raise ConflictError(f"{operation}: conflict (HTTP {code})", status_code=code, detail=body)
    raise PermanentError(f"{operation}: HTTP {code}", status_code=code, detail=body)


class HostingControlPlane:
    """Client for the hosting reseller API."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.base_url = self.settings.hosting_api_url.rstrip("/")
        self.timeout = httpx.Timeout(
            self.settings.transfer_timeout_seconds,
            connect=self.settings.status_check_timeout_seconds,
        )
        self._client = client

    @property
    def headers(self) -> dict[str, str]:
        """Bearer auth using the base64 of the general part of the API key."""
        general_key = (self.settings.hosting_api_key or "").split("+")[0]
        encoded = base64.b64encode(general_key.encode("utf-8")).decode("utf-8")
        return {
            "Authorization": f"Bearer {encoded}",
            "Content-Type": "application/json",
        }

    async def ensure_package(self, name: str, domain: str, label: str) -> HostingPackage:
        """Create the package, or reuse the one already registered under ``name``."""
        response = await self._request(
            "POST",
            "/packages",
            json={
                "name": name,
                "domain": domain,
                "type": self.settings.hosting_package_type,
                "label": label,
            },
        )

        if response.status_code == 409:
            existing = await self.find_package(name)
            if existing is not None:
                logger.info("Reusing existing hosting package", package_id=existing.id, name=name)
                return existing
            raise ConflictError(
                f"package {name} conflicts with an existing resource that could not be found",
                status_code=409,
                detail=response.text[:300],
            )

        raise_for_status(response, "create package")
        data = self._json(response, "create package")

        # The API returns either a bare id or an object carrying it
        result = data.get("result", data) if isinstance(data, dict) else data
        if isinstance(result, list):
            result = result[0] if result else {}
        if isinstance(result, (str, int)):
            package_id = str(result)
        else:
            package_id = str(result.get("id") or result.get("package_id") or "")
        if not package_id:
            raise PermanentError("create package: no package id in response")

        logger.info("Hosting package created", package_id=package_id, name=name)
        return HostingPackage(id=package_id, name=name)

    async def find_package(self, name: str) -> Optional[HostingPackage]:
        """Look up a package by name."""
        response = await self._request("GET", "/packages", params={"name": name})
        raise_for_status(response, "list packages")
        packages = self._json(response, "list packages")
        if isinstance(packages, dict):
            packages = packages.get("result", [])

        for package in packages or []:
            if package.get("name") == name or name in package.get("names", []):
                return HostingPackage(id=str(package["id"]), name=name, reused=True)
        return None

    async def get_credentials(self, package_id: str) -> TransferCredentials:
        """Fetch the confirmed file-transfer credentials for a package."""
        response = await self._request("GET", f"/packages/{package_id}/credentials")
        raise_for_status(response, "fetch credentials")
        data = self._json(response, "fetch credentials")

        try:
            return TransferCredentials(
                host=data["host"],
                port=int(data.get("port", 22)),
                username=data["username"],
                secret=data["password"],
                protocol=data.get("protocol", "sftp"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentError(
                f"fetch credentials: malformed response for package {package_id}",
            ) from e

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        if not self.settings.hosting_api_key:
            raise PermanentError("hosting API key not configured")

        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                return await self._client.request(
                    method, url, headers=self.headers, timeout=self.timeout, **kwargs
                )
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                return await client.request(method, url, headers=self.headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"hosting API timed out: {method} {path}") from e
        except httpx.TransportError as e:
            raise TransientError(f"hosting API unreachable: {method} {path}: {e}") from e

    def _json(self, response: httpx.Response, operation: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise PermanentError(f"{operation}: response is not JSON") from e

"""
Scanner Service - fetches the target business site for the Scanning stage.

Supports:
- Firecrawl for rendered website content (when an API key is configured)
- A direct GET otherwise
- Pre-supplied HTML when the job has no website URL
"""

import html
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

import httpx
import structlog

from demoforge.config import Settings, get_settings
from demoforge.errors import PermanentError, TransientError, ValidationError
from demoforge.models import Job, TargetIdentity
from demoforge.services.hosting import RETRYABLE_STATUS_CODES
from demoforge.services.retry import call_with_retries

logger = structlog.get_logger()

FIRECRAWL_URL = "https://api.firecrawl.dev/v1/scrape"

TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


@dataclass
class ScanResult:
    """What the scan discovered about the target."""
    target: TargetIdentity
    html: str


def extract_title(page: str) -> Optional[str]:
    match = TITLE_RE.search(page)
    if not match:
        return None
    title = html.unescape(" ".join(match.group(1).split()))
    return title or None


def domain_from_url(url: str) -> Optional[str]:
    host = (urlparse(url).hostname or "").lower()
    if host.startswith("www."):
        host = host[4:]
    return host or None


class SiteScanner:
    """Scans the business site a job was created for."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self.timeout = httpx.Timeout(self.settings.scrape_timeout_seconds)
        self._client = client

    async def scan(self, job: Job) -> ScanResult:
        """
        Fetch the job's website (or use its pre-supplied HTML).

        Raises:
            ValidationError: Nothing to scan
            PermanentError: Non-retryable fetch failure
            MaxRetriesExceededError: Transient fetch failures outlived retries
        """
        request = job.request
        url = str(request.website_url) if request.website_url else None

        if url is None:
            if not request.html_content:
                raise ValidationError("job has neither a website URL nor HTML content")
            logger.info("Using supplied HTML", job_id=job.id)
            page = request.html_content
        elif self.settings.firecrawl_api_key:
            page = await call_with_retries(
                "firecrawl scrape", lambda: self._scrape_firecrawl(url), self.settings,
                attempts=self.settings.max_retries,
            )
        else:
            page = await call_with_retries(
                "fetch website", lambda: self._fetch(url), self.settings,
                attempts=self.settings.max_retries,
            )

        target = TargetIdentity(
            display_name=extract_title(page) or request.business_name,
            domain_candidate=request.domain or (domain_from_url(url) if url else None),
            source_url=url,
        )
        logger.info("Website scanned", job_id=job.id, url=url, bytes=len(page))
        return ScanResult(target=target, html=page)

    # ========================================================================
    # Website (direct)
    # ========================================================================

    async def _fetch(self, url: str) -> str:
        response = await self._request("GET", url)
        self._check(response, f"fetch {url}")
        return response.text

    # ========================================================================
    # Website (Firecrawl)
    # ========================================================================

    async def _scrape_firecrawl(self, url: str) -> str:
        response = await self._request(
            "POST",
            FIRECRAWL_URL,
            headers={
                "Authorization": f"Bearer {self.settings.firecrawl_api_key}",
                "Content-Type": "application/json",
            },
            json={
                "url": url,
                "formats": ["html"],
                "onlyMainContent": False,
            },
        )
        self._check(response, "firecrawl scrape")

        data = response.json()
        if not data.get("success"):
            raise PermanentError(f"firecrawl scrape failed: {data.get('error', 'unknown error')}")
        page = data.get("data", {}).get("html")
        if not page:
            raise PermanentError(f"firecrawl returned no HTML for {url}")
        return page

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            if self._client is not None:
                return await self._client.request(method, url, timeout=self.timeout, **kwargs)
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                return await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientError(f"timed out fetching {url}") from e
        except httpx.TransportError as e:
            raise TransientError(f"could not reach {url}: {e}") from e

    def _check(self, response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        code = response.status_code
        if code in RETRYABLE_STATUS_CODES:
            raise TransientError(f"{operation}: HTTP {code}", status_code=code)
        raise PermanentError(f"{operation}: HTTP {code}", status_code=code)

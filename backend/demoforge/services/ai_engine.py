"""
AI Engine Service - Claude-powered content generation.

Uses Anthropic's Claude API to turn a scanned business site into the
content package deployed as the demo site:
1. Site title and tagline
2. Section outline
3. A complete, self-contained HTML page
"""

import json
from typing import Any, Optional

import structlog
from anthropic import APIConnectionError, APIStatusError, AsyncAnthropic

from demoforge.config import Settings, get_settings
from demoforge.errors import PermanentError, TransientError
from demoforge.models import ContentPackage
from demoforge.services.retry import call_with_retries

logger = structlog.get_logger()

# Scanned pages are truncated to keep the prompt bounded.
MAX_SOURCE_CHARS = 30_000


class ContentGenerator:
    """Generates demo-site content from a scanned page."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[AsyncAnthropic] = None,
    ):
        self.settings = settings or get_settings()
        self.model = self.settings.anthropic_model
        self._client = client

    @property
    def client(self) -> AsyncAnthropic:
        if self._client is None:
            if not self.settings.anthropic_api_key:
                raise PermanentError("Anthropic API key not configured")
            self._client = AsyncAnthropic(api_key=self.settings.anthropic_api_key)
        return self._client

    async def generate(
        self,
        html_content: str,
        url: Optional[str],
        business_name: Optional[str] = None,
    ) -> ContentPackage:
        """
        Generate the demo site's content.

        Args:
            html_content: The scanned page
            url: Where the page came from, if anywhere
            business_name: Name to fall back on when the page has none

        Returns:
            ContentPackage with title, tagline, sections and full HTML

        Raises:
            PermanentError: Non-2xx reply, or a reply that is not the expected JSON
            MaxRetriesExceededError: Connection failures outlived retries
        """
        prompt = self._build_generation_prompt(html_content, url, business_name)

        text = await call_with_retries(
            "generate content",
            lambda: self._complete(prompt),
            self.settings,
            attempts=self.settings.max_retries,
        )

        data = self._parse_json_response(text)
        if data is None:
            raise PermanentError("content service returned malformed JSON", detail=text[:300])

        package = self._to_content_package(data)
        logger.info(
            "Content generated",
            site_title=package.site_title,
            sections=len(package.sections),
            html_bytes=len(package.html.encode("utf-8")),
        )
        return package

    async def _complete(self, prompt: str) -> str:
        try:
            response = await self.client.messages.create(
                model=self.model,
                max_tokens=8192,
                messages=[
                    {"role": "user", "content": prompt}
                ],
                system=self._get_generation_system_prompt(),
            )
        except APIConnectionError as e:
            raise TransientError(f"content service unreachable: {e}") from e
        except APIStatusError as e:
            raise PermanentError(
                f"content service error (HTTP {e.status_code})",
                status_code=e.status_code,
                detail=str(e)[:300],
            ) from e

        if not response.content:
            raise PermanentError("content service returned an empty reply")
        return response.content[0].text

    def _build_generation_prompt(
        self,
        html_content: str,
        url: Optional[str],
        business_name: Optional[str],
    ) -> str:
        """Build the generation prompt with the scanned page."""
        source = html_content[:MAX_SOURCE_CHARS]

        return f"""Redesign the website below as a modern single-page demo site.

Business: {business_name or "unknown (infer from the page)"}
Source URL: {url or "none"}

=== SCANNED PAGE ===
{source}

Return a JSON object with this exact structure:
{{
  "site_title": "Business name as it should appear on the site",
  "tagline": "Short catchy tagline",
  "sections": ["hero", "services", "about", "contact"],
  "html": "<!DOCTYPE html>...complete page..."
}}

IMPORTANT:
- Only use facts that appear on the scanned page
- Do not invent phone numbers, addresses or prices
- The html must be a complete document with inline CSS and no external scripts
- Return ONLY valid JSON, no explanation"""

    def _get_generation_system_prompt(self) -> str:
        """System prompt for content generation."""
        return """You are a web designer and copywriter for small business websites. Your task is to produce a polished demo page from an existing site.

Rules:
1. NEVER invent factual claims not supported by the source page
2. Keep tone professional but friendly
3. Produce accessible, responsive HTML with inline styles

Always return valid JSON matching the requested schema."""

    def _parse_json_response(self, content: str) -> Optional[dict]:
        """Parse JSON from Claude's response; None when it is not a JSON object."""
        # Try to extract JSON from markdown code blocks
        if "```json" in content:
            start = content.find("```json") + 7
            end = content.find("```", start)
            content = content[start:end].strip()
        elif "```" in content:
            start = content.find("```") + 3
            end = content.find("```", start)
            content = content[start:end].strip()

        content = content.strip()

        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as e:
            logger.warning("JSON parse error", error=str(e), content=content[:500])
            return None
        return parsed if isinstance(parsed, dict) else None

    def _to_content_package(self, data: dict[str, Any]) -> ContentPackage:
        """Convert the parsed reply into a ContentPackage."""
        page = data.get("html")
        title = data.get("site_title")
        if not isinstance(page, str) or not page.strip():
            raise PermanentError("content service reply has no html")
        if not isinstance(title, str) or not title.strip():
            raise PermanentError("content service reply has no site_title")

        sections = data.get("sections") or []
        if not isinstance(sections, list):
            sections = []

        return ContentPackage(
            site_title=title.strip(),
            tagline=data.get("tagline") if isinstance(data.get("tagline"), str) else None,
            sections=[str(s) for s in sections],
            html=page,
        )

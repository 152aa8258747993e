"""Fetch reference material from URLs.

Failures never raise: the fetcher returns a bracketed sentinel string
("[Unable to fetch URL: ...]") in place of the content, so one dead link
degrades the research input instead of failing the task.
"""

import html
import logging
import re
from typing import Iterable, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

USER_AGENT = "blog-pipeline/1.0 (content fetcher)"

DEFAULT_FETCH_TIMEOUT = 30.0
DEFAULT_MAX_FETCH_BYTES = 2 * 1024 * 1024

# Extracted text is capped separately from the download size
MAX_TEXT_CHARS = 50_000

ALLOWED_CONTENT_TYPES = (
    "text/html",
    "text/plain",
    "text/markdown",
    "text/xml",
    "application/json",
    "application/xml",
    "application/xhtml+xml",
)

SEPARATOR = "=" * 80


def is_valid_url(url: str) -> bool:
    parsed = urlparse(url.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# --- HTML to text ---

_SCRIPT_RE = re.compile(r"<script[^>]*?>.*?</script>", re.S | re.I)
_STYLE_RE = re.compile(r"<style[^>]*?>.*?</style>", re.S | re.I)
_PRE_RE = re.compile(r"<pre[^>]*?>(.*?)</pre>", re.S | re.I)
_CODE_RE = re.compile(r"<code[^>]*?>(.*?)</code>", re.S | re.I)
_BLOCK_OPEN_RE = re.compile(r"<(p|div|br|h[1-6]|li|tr)\b[^>]*?>", re.I)
_BLOCK_CLOSE_RE = re.compile(r"</(p|div|h[1-6]|li|tr)>", re.I)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACES_RE = re.compile(r"[ \t]+")
_BLANK_LINES_RE = re.compile(r"\n\s*\n\s*\n+")


def html_to_text(markup: str) -> str:
    """Strip markup, keeping paragraph breaks and code blocks."""
    if not markup or not markup.strip():
        return ""
    text = _SCRIPT_RE.sub("", markup)
    text = _STYLE_RE.sub("", text)
    text = _PRE_RE.sub(lambda m: f"\n```\n{m.group(1)}\n```\n", text)
    text = _CODE_RE.sub(lambda m: f"`{m.group(1)}`", text)
    text = _BLOCK_OPEN_RE.sub("\n", text)
    text = _BLOCK_CLOSE_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = html.unescape(text)
    text = _SPACES_RE.sub(" ", text)
    text = _BLANK_LINES_RE.sub("\n\n", text)
    text = text.strip()
    if len(text) > MAX_TEXT_CHARS:
        text = text[:MAX_TEXT_CHARS] + "\n\n[Content truncated]"
    return text


class WebContentFetcher:
    """Async URL fetcher with a timeout, content-type allowlist and size cap."""

    def __init__(
        self,
        timeout: float = DEFAULT_FETCH_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_FETCH_BYTES,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
            transport=self._transport,
        )

    async def fetch_url(self, url: str) -> str:
        """Fetch one URL and return its text, or a sentinel on failure."""
        url = url.strip()
        if not is_valid_url(url):
            logger.warning(f"Rejected invalid URL: {url}")
            return f"[Invalid URL: {url}]"

        logger.info(f"Fetching URL: {url}")
        try:
            async with self._client() as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    content_type = response.headers.get("content-type", "").split(";")[0].strip().lower()
                    if content_type and content_type not in ALLOWED_CONTENT_TYPES:
                        logger.warning(f"Unsupported content type {content_type} for {url}")
                        return f"[Unsupported content type '{content_type}': {url}]"

                    body = bytearray()
                    truncated = False
                    async for chunk in response.aiter_bytes():
                        body.extend(chunk)
                        if len(body) >= self.max_bytes:
                            truncated = True
                            del body[self.max_bytes:]
                            break
                    encoding = response.encoding or "utf-8"
        except httpx.TimeoutException as e:
            logger.error(f"Timed out fetching {url}: {e}")
            return f"[URL fetch timed out: {url}]"
        except httpx.HTTPError as e:
            logger.error(f"HTTP request failed for {url}: {e}")
            return f"[Unable to fetch URL: {url}]\nError: {e}"

        raw = body.decode(encoding, errors="replace")
        text = html_to_text(raw) if "html" in content_type else raw.strip()
        if truncated:
            logger.warning(f"Response from {url} exceeded {self.max_bytes:,} bytes; truncated")
            text += "\n\n[Content truncated]"

        logger.info(f"Fetched {url}: {len(text):,} chars")
        return text

    async def fetch_many(self, urls: Iterable[str]) -> str:
        """Fetch URLs in order and join them under per-source headers."""
        sections = []
        for url in urls:
            if not url or not url.strip():
                continue
            content = await self.fetch_url(url)
            sections.append(f"{SEPARATOR}\nSource: {url.strip()}\n{SEPARATOR}\n{content}")
        return "\n\n".join(sections)

# research_engine/services/extraction.py
"""
Content extraction.

Two extractors share one result contract (`ExtractionResult`):

- ContentExtractor fetches the page directly, refuses anti-bot pages, runs
  trafilatura and falls back to a BeautifulSoup markdown conversion when the
  main-text heuristic yields too little.
- JinaReaderExtractor asks r.jina.ai for a markdown rendition.

Neither raises: timeouts, HTTP errors and blocks come back as
`success=False` so a batch never aborts on one bad URL.

Batches are sequential with a fixed delay between requests.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Protocol
from urllib.parse import urlparse

import httpx
import trafilatura
from bs4 import BeautifulSoup

from ..core.config import get_settings
from ..schemas.pipeline import ExtractionResult
from .retrieval_cache import RetrievalCache

logger = logging.getLogger(__name__)

settings = get_settings()

EXCERPT_CHARS = 500

BROWSER_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

BLOCKED_TITLE_MARKERS = (
    "403 forbidden",
    "access denied",
    "cloudflare",
    "just a moment",
    "attention required",
)
BLOCKED_BODY_MARKERS = ("access to this page is forbidden",)

BLOCKED_DOMAINS = (
    "facebook.com",
    "twitter.com",
    "x.com",
    "instagram.com",
    "linkedin.com",
    "youtube.com",
    "tiktok.com",
    "pinterest.com",
    "reddit.com",
)

_STRIP_TAGS = ("script", "style", "noscript", "nav", "footer", "header")

_PUBLISHED_META = (
    {"property": "article:published_time"},
    {"name": "date"},
    {"name": "publish-date"},
)


class Extractor(Protocol):
    async def extract(self, url: str) -> ExtractionResult: ...


def _failure(url: str, error: str) -> ExtractionResult:
    return ExtractionResult(url=url, success=False, error=error)


def _normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def make_excerpt(content: str) -> str:
    return content[:EXCERPT_CHARS]


def filter_urls(urls: List[str]) -> List[str]:
    """Drop social/video platforms and anything that does not parse as a URL."""
    kept: List[str] = []
    for url in urls:
        try:
            host = (urlparse(url).hostname or "").lower()
        except ValueError:
            continue
        if not host:
            continue
        if any(host == d or host.endswith("." + d) for d in BLOCKED_DOMAINS):
            continue
        kept.append(url)
    return kept


def detect_block(title: str, html: str) -> Optional[str]:
    lowered_title = (title or "").lower()
    for marker in BLOCKED_TITLE_MARKERS:
        if marker in lowered_title:
            return f"Blocked page detected ({title.strip()})"
    lowered_body = (html or "").lower()
    for marker in BLOCKED_BODY_MARKERS:
        if marker in lowered_body:
            return "Blocked page detected (access forbidden)"
    return None


def html_to_markdown(soup: BeautifulSoup) -> str:
    """Headings, paragraphs and list items of an already-stripped document, as markdown."""
    lines: List[str] = []
    for el in soup.find_all(["h1", "h2", "h3", "h4", "h5", "h6", "p", "li"]):
        text = el.get_text(" ", strip=True)
        if not text:
            continue
        if el.name.startswith("h"):
            lines.append(f"{'#' * int(el.name[1])} {text}")
        elif el.name == "li":
            lines.append(f"- {text}")
        else:
            lines.append(text)
    return _normalize_text("\n\n".join(lines))


def find_published_at(soup: BeautifulSoup) -> Optional[str]:
    for attrs in _PUBLISHED_META:
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            return tag["content"].strip()
    time_tag = soup.find("time", attrs={"datetime": True})
    if time_tag:
        return time_tag["datetime"].strip()
    return None


class ContentExtractor:
    """Direct page fetch + trafilatura with a BeautifulSoup fallback."""

    def __init__(
        self,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
        min_content_chars: int | None = None,
    ) -> None:
        self._transport = transport
        self.timeout = timeout or settings.EXTRACTION_TIMEOUT_SECONDS
        self.min_content_chars = min_content_chars or settings.EXTRACTION_MIN_CONTENT_CHARS

    async def _fetch(self, url: str) -> httpx.Response:
        async with httpx.AsyncClient(
            transport=self._transport,
            follow_redirects=True,
            headers={"User-Agent": BROWSER_USER_AGENT, "Accept": "text/html,*/*"},
        ) as client:
            return await client.get(url, timeout=self.timeout)

    async def extract(self, url: str) -> ExtractionResult:
        try:
            resp = await self._fetch(url)
        except httpx.TimeoutException:
            return _failure(url, f"Timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            return _failure(url, f"Request failed: {e}")

        if resp.status_code >= 400:
            return _failure(url, f"HTTP {resp.status_code}")

        html = resp.text or ""
        try:
            soup = BeautifulSoup(html, "html.parser")
            title = soup.title.get_text(strip=True) if soup.title else ""

            blocked = detect_block(title, html)
            if blocked:
                return _failure(url, blocked)

            published_at = find_published_at(soup)
            content = _normalize_text(trafilatura.extract(html, output_format="txt") or "")
            if len(content) < self.min_content_chars:
                for tag in soup(list(_STRIP_TAGS)):
                    tag.decompose()
                fallback = html_to_markdown(soup)
                if len(fallback) > len(content):
                    content = fallback
        except Exception as e:
            logger.warning("Content parsing failed for %s: %s", url, e)
            return _failure(url, f"Parse failed: {e}")

        if not content:
            return _failure(url, "No extractable content")

        return ExtractionResult(
            url=url,
            title=title or url,
            content=content,
            excerpt=make_excerpt(content),
            published_at=published_at,
            success=True,
        )


class JinaReaderExtractor:
    """Markdown rendition of a page via the Jina reader endpoint."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float | None = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = settings.JINA_READER_URL.rstrip("/")
        self._transport = transport
        self.timeout = timeout or settings.EXTRACTION_TIMEOUT_SECONDS

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/plain", "User-Agent": "Mozilla/5.0 (compatible; ResearchEngine/1.0)"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def extract(self, url: str) -> ExtractionResult:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.get(f"{self.base_url}/{url}", headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException:
            return _failure(url, f"Timed out after {self.timeout}s")
        except httpx.HTTPError as e:
            return _failure(url, f"Request failed: {e}")

        if resp.status_code >= 400:
            return _failure(url, f"Jina extraction failed: {resp.status_code} {resp.reason_phrase}")

        markdown = resp.text or ""
        match = re.search(r"^#\s+(.+)$", markdown, re.MULTILINE)
        if match:
            title = match.group(1).strip()
        else:
            title = (markdown.split("\n", 1)[0][:100] or "Untitled").strip()

        blocked = detect_block(title, markdown)
        if blocked:
            return _failure(url, blocked)
        if not markdown.strip():
            return _failure(url, "No extractable content")

        body = re.sub(r"^#.+$", "", markdown, flags=re.MULTILINE).strip()
        excerpt = make_excerpt(body)
        if len(body) > EXCERPT_CHARS:
            excerpt += "..."
        return ExtractionResult(url=url, title=title, content=markdown, excerpt=excerpt, success=True)


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

async def extract_multiple(
    extractor: Extractor,
    urls: List[str],
    on_progress: Optional[Callable[[int, int], None]] = None,
    *,
    delay: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[ExtractionResult]:
    """
    Extract urls one at a time, waiting `delay` seconds between requests.

    Results keep input order. `on_progress(done, total)` fires after each URL.
    """
    delay = settings.EXTRACTION_DELAY_SECONDS if delay is None else delay
    results: List[ExtractionResult] = []
    total = len(urls)
    for i, url in enumerate(urls):
        try:
            result = await extractor.extract(url)
        except Exception as e:
            logger.exception("Extractor raised for %s", url)
            result = _failure(url, str(e))
        results.append(result)
        if on_progress:
            on_progress(i + 1, total)
        if i < total - 1 and delay > 0:
            await sleep(delay)

    ok = sum(1 for r in results if r.success)
    logger.info("Extracted %d/%d url(s)", ok, total)
    return results


def extract_with_cache(
    urls: List[str],
    cache: RetrievalCache,
    extractor: Extractor,
    on_progress: Optional[Callable[[int, int], None]] = None,
    *,
    delay: float | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> List[ExtractionResult]:
    """
    L2-aware batch extraction.

    Fresh cached entries are returned as successful results without a
    request; only the misses are extracted, and every successful extraction
    is written back to the cache. Output follows the de-duplicated input order
    and contains successful results only.
    """
    cached, to_fetch = cache.partition_urls(urls)
    fetched: Dict[str, ExtractionResult] = {}
    if to_fetch:
        # Dedicated event loop; Celery workers are synchronous
        for result in asyncio.run(
            extract_multiple(extractor, to_fetch, on_progress, delay=delay, sleep=sleep)
        ):
            if result.success:
                cache.store(result)
                fetched[result.url] = result

    out: List[ExtractionResult] = []
    for url in dict.fromkeys(urls):
        if url in cached:
            entry = cached[url]
            out.append(
                ExtractionResult(
                    url=url,
                    title=entry.title or "",
                    content=entry.content,
                    excerpt=entry.excerpt or make_excerpt(entry.content),
                    success=True,
                )
            )
        elif url in fetched:
            out.append(fetched[url])
    return out

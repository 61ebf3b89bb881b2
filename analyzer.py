from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import SiteContext
from extractor import AssetExtractor, extract_links
from normalizer import clean_url, is_static_asset_url, normalize_url, site_relative


logger = logging.getLogger("cdn_mirror.analyzer")

USER_AGENT = "CDN-Asset-Mirror/1.0.0"
DEFAULT_TIMEOUT = 30
DEFAULT_MAX_REDIRECTS = 5
EMPTY_CRAWL_REASON = "No suitable URLs found to analyze."
EMPTY_PASTED_REASON = "No suitable URLs found after processing your input."
INVALID_START_REASON = "The start URL is not a valid URL."
NEWLINE_RE = re.compile(r"\r\n|\r|\n")


@dataclass
class AnalysisResult:
    start_url: str
    assets: List[str]
    visited_pages: List[str]
    pages_visited: int
    failed_pages: List[str]
    max_pages: int
    reason: str
    seconds: float


@dataclass
class CrawlState:
    max_pages: int
    visited: Dict[str, None] = field(default_factory=dict)
    assets: set = field(default_factory=set)
    failed: List[str] = field(default_factory=list)
    stack: List[str] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def visited_count(self) -> int:
        return len(self.visited)

    def claim(self, url: str) -> bool:
        with self._lock:
            if url in self.visited or len(self.visited) >= self.max_pages:
                return False
            self.visited[url] = None
            return True

    def has_budget(self) -> bool:
        with self._lock:
            return len(self.visited) < self.max_pages

    def add_assets(self, assets: List[str]) -> None:
        with self._lock:
            self.assets.update(assets)


class SiteAnalyzer:
    def __init__(
        self,
        timeout: int = DEFAULT_TIMEOUT,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        user_agent: str = USER_AGENT,
        verify_ssl: bool = True,
        extractor: Optional[AssetExtractor] = None,
    ) -> None:
        self.session = requests.Session()
        # A failing page is skipped, never retried.
        adapter = HTTPAdapter(max_retries=Retry(total=0, connect=0, read=0, redirect=0, raise_on_status=False))
        self.session.mount("https://", adapter)
        self.session.mount("http://", adapter)
        self.session.max_redirects = max(0, int(max_redirects))
        self.session.headers.update({"User-Agent": user_agent})
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.extractor = extractor or AssetExtractor()

    def fetch(self, url: str) -> Tuple[int, str]:
        response = self.session.get(url, timeout=self.timeout, verify=self.verify_ssl, allow_redirects=True)
        return int(response.status_code), response.text

    def _fetch_page(self, url: str) -> Optional[str]:
        try:
            status, body = self.fetch(url)
        except requests.RequestException as exc:
            logger.warning("Error fetching URL %s: %s", url, exc)
            return None
        if 200 <= status < 300:
            return body
        logger.warning("Error fetching URL %s: HTTP status %s", url, status)
        return None

    def _resolve_start_url(self, start_url: str, ctx: SiteContext) -> str:
        url = (start_url or "").strip()
        if not url:
            return ctx.base_url + "/"
        if url.startswith("/") and not url.startswith("//"):
            url = ctx.base_url + url
        elif "://" not in url:
            url = urljoin(ctx.base_url + "/", url)
        url, _ = urldefrag(url)
        return url

    def analyze(
        self,
        start_url: str,
        max_pages: Optional[int],
        ctx: SiteContext,
        progress_callback: Optional[Callable[[Dict[str, object]], None]] = None,
    ) -> AnalysisResult:
        started = time.time()
        try:
            budget = max(1, int(max_pages or 1))
        except (TypeError, ValueError):
            budget = 1
        try:
            start = self._resolve_start_url(start_url, ctx)
            start_host = urlparse(start).netloc.lower()
        except ValueError as exc:
            logger.warning("Invalid start URL %s: %s", start_url, exc)
            self._emit_progress(
                progress_callback,
                stage="done",
                message=INVALID_START_REASON,
                percent=100,
                current_url="",
                pages_visited=0,
                max_pages=budget,
                assets_found=0,
            )
            return AnalysisResult(
                start_url=str(start_url or ""),
                assets=[],
                visited_pages=[],
                pages_visited=0,
                failed_pages=[],
                max_pages=budget,
                reason=INVALID_START_REASON,
                seconds=round(time.time() - started, 2),
            )
        state = CrawlState(max_pages=budget, stack=[start])

        logger.info("Starting URL analysis from: %s", start)
        self._emit_progress(
            progress_callback,
            stage="crawl",
            message="Starting analysis",
            percent=1,
            current_url=start,
            pages_visited=0,
            max_pages=budget,
            assets_found=0,
        )

        while state.stack and state.has_budget():
            url = state.stack.pop()
            if not state.claim(url):
                continue
            logger.debug("Crawling page: %s", url)
            self._emit_progress(
                progress_callback,
                stage="crawl",
                message="Crawling pages",
                percent=min(96, int((state.visited_count / budget) * 100)),
                current_url=url,
                pages_visited=state.visited_count,
                max_pages=budget,
                assets_found=len(state.assets),
            )

            body = self._fetch_page(url)
            if body is None:
                state.failed.append(url)
                continue

            assets = self.extractor.extract(body, ctx)
            state.add_assets(assets)
            logger.debug("Found %d assets on %s", len(assets), url)

            links = extract_links(body, url, start_host, exclude=state.visited)
            state.stack.extend(reversed(links))

        assets = sorted(state.assets)
        reason = "" if assets else EMPTY_CRAWL_REASON
        logger.info(
            "Analysis complete. Visited %d pages, found %d unique static assets.",
            state.visited_count,
            len(assets),
        )
        self._emit_progress(
            progress_callback,
            stage="done",
            message="Analysis complete",
            percent=100,
            current_url="",
            pages_visited=state.visited_count,
            max_pages=budget,
            assets_found=len(assets),
        )
        return AnalysisResult(
            start_url=start,
            assets=assets,
            visited_pages=list(state.visited),
            pages_visited=state.visited_count,
            failed_pages=list(state.failed),
            max_pages=budget,
            reason=reason,
            seconds=round(time.time() - started, 2),
        )

    def process_pasted(self, urls_text: str, ctx: SiteContext) -> List[str]:
        urls: List[str] = []
        for line in NEWLINE_RE.split(urls_text or ""):
            url = line.strip()
            if not url:
                continue
            normalized = normalize_url(url, ctx)
            if normalized:
                urls.append(normalized)
            elif url.startswith("/") or "wp-" in url:
                urls.append(url if url.startswith("/") else "/" + url)
            else:
                logger.debug("Skipping pasted line: %s", url)
        return sorted(set(urls))

    def process_urls(self, urls: List[str], ctx: SiteContext) -> List[str]:
        result: List[str] = []
        for url in urls:
            if not url:
                continue
            path = site_relative(clean_url(url), ctx)
            if path is None:
                logger.debug("Skipping URL from different domain: %s", url)
                continue
            if is_static_asset_url(path, ctx):
                result.append(path)
        return sorted(set(result))

    def _emit_progress(self, callback: Optional[Callable[[Dict[str, object]], None]], **payload: object) -> None:
        if callback is None:
            return
        callback(payload)

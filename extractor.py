from __future__ import annotations

import html as html_lib
import json
import logging
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Iterable, Iterator, List, Optional, Sequence, Tuple
from urllib.parse import urldefrag, urljoin, urlparse

from bs4 import BeautifulSoup

from config import DEFAULT_EXTENSIONS, SiteContext
from normalizer import normalize_url, parse_srcset


logger = logging.getLogger("cdn_mirror.extractor")

LINK_SKIP_PREFIXES = ("javascript:", "mailto:", "tel:", "#")
LINK_SKIP_MARKERS = ("/wp-admin", "/wp-login", "/wp-json")
STYLE_BLOCK_RE = re.compile(r"<style[^>]*>(.*?)</style>", re.IGNORECASE | re.DOTALL)
SCRIPT_BLOCK_RE = re.compile(r"<script[^>]*>(.*?)</script>", re.IGNORECASE | re.DOTALL)
CSS_URL_RE = re.compile(r"url\(\s*['\"]?([^'\")\s]+)['\"]?\s*\)", re.IGNORECASE)
DATA_SETTINGS_RE = re.compile(r"data-settings=(['\"])(.*?)\1", re.IGNORECASE | re.DOTALL)
FUSION_BG_RE = re.compile(r"data-bg=['\"]([^'\"]+)['\"]", re.IGNORECASE)


@dataclass(frozen=True)
class PatternExtractor:
    name: str
    pattern: "re.Pattern[str]"
    srcset: bool = False

    def candidates(self, text: str) -> List[str]:
        found: List[str] = []
        for match in self.pattern.finditer(text):
            value = match.group(1)
            if not value:
                continue
            if self.srcset:
                found.extend(parse_srcset(value))
            else:
                found.append(value)
        return found


class ElementorSettingsExtractor:
    """Image URLs inside Elementor ``data-settings`` JSON attributes."""

    name = "elementor_settings"

    def candidates(self, text: str) -> List[str]:
        found: List[str] = []
        for match in DATA_SETTINGS_RE.finditer(text):
            raw = html_lib.unescape(match.group(2))
            try:
                payload = json.loads(raw)
            except ValueError:
                continue
            found.extend(_json_urls(payload))
        return found


class FusionBackgroundExtractor:
    """Avada / Fusion Builder lazy backgrounds in ``data-bg``."""

    name = "fusion_background"

    def candidates(self, text: str) -> List[str]:
        return [m.group(1) for m in FUSION_BG_RE.finditer(text)]


def _json_urls(node: object) -> Iterator[str]:
    if isinstance(node, dict):
        for key, value in node.items():
            if isinstance(value, str):
                if key == "url" or "image" in str(key).lower():
                    yield value
            else:
                yield from _json_urls(value)
    elif isinstance(node, list):
        for item in node:
            yield from _json_urls(item)


@lru_cache(maxsize=32)
def build_tag_extractors(extensions: Tuple[str, ...]) -> Tuple[PatternExtractor, ...]:
    ext = "|".join(re.escape(e) for e in sorted(extensions, key=len, reverse=True))
    asset = r"([^'\"]+\.(?:" + ext + r")(?:\?[^'\"]*)?)"
    flags = re.IGNORECASE | re.DOTALL

    def _p(name: str, source: str, srcset: bool = False) -> PatternExtractor:
        return PatternExtractor(name, re.compile(source, flags), srcset)

    return (
        _p("stylesheet", r"<link\b[^>]*?\bhref=['\"]" + asset + r"['\"]"),
        _p("script", r"<script\b[^>]*?\bsrc=['\"]" + asset + r"['\"]"),
        _p("image", r"<img\b[^>]*?\bsrc=['\"]" + asset + r"['\"]"),
        _p("image_srcset", r"<img\b[^>]*?\bsrcset=['\"]([^'\"]+)['\"]", srcset=True),
        _p(
            "inline_background",
            r"style=['\"][^'\"]*background(?:-image)?\s*:[^;'\"]*?url\(\s*(?:&quot;|['\"])?([^'\")\s&]+)",
        ),
        _p("css_url", r"url\(\s*['\"]?([^'\")\s]+\.(?:" + ext + r")(?:\?[^'\")\s]*)?)['\"]?\s*\)"),
        _p("media_source", r"<source\b[^>]*?\bsrc=['\"]" + asset + r"['\"]"),
        _p("object_embed", r"<(?:object|embed)\b[^>]*?\b(?:data|src)=['\"]" + asset + r"['\"]"),
        _p("source_srcset", r"<source\b[^>]*?\bsrcset=['\"]([^'\"]+)['\"]", srcset=True),
        _p("lazy_data", r"\sdata-[\w-]+=['\"]" + asset + r"['\"]"),
        _p("lazy_srcset", r"\sdata-(?:lazy-)?srcset=['\"]([^'\"]+)['\"]", srcset=True),
        _p("preload", r"<link\b[^>]*?\brel=['\"]preload['\"][^>]*?\bhref=['\"]" + asset + r"['\"]"),
        _p(
            "platform_path",
            r"((?:(?:https?:)?\\?/\\?/[^'\"\s()<>/\\]+)?\\?/?"
            r"(?:wp-content\\?/(?:themes|plugins|uploads)|wp-includes)\\?/[^'\"\s()<>]+?\.(?:" + ext + r")"
            r"(?:\?[^'\"\s()<>]*)?)(?![\w])",
        ),
        _p("quoted_path", r"['\"]([^'\"\s]+\.(?:" + ext + r")(?:\?[^'\"]*)?)['\"]"),
    )


@lru_cache(maxsize=32)
def build_script_extractors(extensions: Tuple[str, ...]) -> Tuple[PatternExtractor, ...]:
    ext = "|".join(re.escape(e) for e in sorted(extensions, key=len, reverse=True))
    asset = r"([^'\"]+\.(?:" + ext + r")(?:\?[^'\"]*)?)"
    return (
        PatternExtractor("script_quoted", re.compile(r"['\"]" + asset + r"['\"]", re.IGNORECASE)),
        PatternExtractor(
            "script_assignment",
            re.compile(r"\.(?:src|href)\s*=\s*['\"]" + asset + r"['\"]", re.IGNORECASE),
        ),
        PatternExtractor(
            "script_loader",
            re.compile(r"(?:load|fetch|get|ajax)\s*\(\s*['\"]" + asset + r"['\"]", re.IGNORECASE),
        ),
    )


DEFAULT_BUILDER_EXTRACTORS = (ElementorSettingsExtractor(), FusionBackgroundExtractor())


class AssetExtractor:
    def __init__(self, extra_extractors: Optional[Sequence[object]] = None) -> None:
        self.builder_extractors: List[object] = list(DEFAULT_BUILDER_EXTRACTORS)
        if extra_extractors:
            self.builder_extractors.extend(extra_extractors)

    def candidates(self, text: str, ctx: SiteContext) -> List[str]:
        extensions = tuple(dict.fromkeys(DEFAULT_EXTENSIONS + tuple(ctx.extensions)))
        found: List[str] = []

        for extractor in build_tag_extractors(extensions):
            found.extend(extractor.candidates(text))

        for block in STYLE_BLOCK_RE.findall(text):
            found.extend(CSS_URL_RE.findall(block))

        script_extractors = build_script_extractors(extensions)
        for block in SCRIPT_BLOCK_RE.findall(text):
            for extractor in script_extractors:
                found.extend(extractor.candidates(block))

        for extractor in self.builder_extractors:
            try:
                found.extend(extractor.candidates(text))
            except Exception:
                logger.exception("Extractor %s failed", getattr(extractor, "name", extractor))
        return found

    def extract(self, text: str, ctx: SiteContext) -> List[str]:
        if not text:
            return []
        assets = set()
        for candidate in self.candidates(text, ctx):
            normalized = normalize_url(candidate, ctx)
            if normalized:
                assets.add(normalized)
        return sorted(assets)


_default_extractor = AssetExtractor()


def extract_assets(text: str, ctx: SiteContext) -> List[str]:
    return _default_extractor.extract(text, ctx)


def extract_links(
    text: str,
    page_url: str,
    start_host: str,
    exclude: Iterable[str] = (),
    skip_markers: Iterable[str] = LINK_SKIP_MARKERS,
) -> List[str]:
    """Same-host page links in document order, fragments removed."""
    links: List[str] = []
    if not text:
        return links
    excluded = set(exclude)
    markers = tuple(skip_markers)
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup.find_all("a", href=True):
        href = str(tag.get("href") or "").strip()
        if not href or href.lower().startswith(LINK_SKIP_PREFIXES):
            continue
        if any(marker in href for marker in markers):
            continue
        try:
            resolved, _ = urldefrag(urljoin(page_url, href))
            parsed = urlparse(resolved)
        except ValueError:
            continue
        if parsed.scheme not in ("http", "https"):
            continue
        if parsed.netloc.lower() != start_host.lower():
            continue
        if resolved in excluded:
            continue
        links.append(resolved)
    return list(dict.fromkeys(links))

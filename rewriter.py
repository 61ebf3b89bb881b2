from __future__ import annotations

import hashlib
import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

from config import CDN_BASE_TEMPLATE, DEFAULT_BRANCH, SiteContext
from normalizer import clean_url, site_relative, strip_query


logger = logging.getLogger("cdn_mirror.rewriter")

TAG_ATTR_RE = re.compile(
    r"(<(?:img|link|script|source)\b[^>]*?\s(?:src|href)=)(['\"])([^'\"]*)\2",
    re.IGNORECASE | re.DOTALL,
)
TAG_SRCSET_RE = re.compile(
    r"(<(?:img|source)\b[^>]*?\ssrcset=)(['\"])([^'\"]*)\2",
    re.IGNORECASE | re.DOTALL,
)
CSS_URL_RE = re.compile(r"url\(\s*(['\"]?)([^'\")]+)\1\s*\)", re.IGNORECASE)


def comparison_path(url: str, ctx: SiteContext) -> Optional[str]:
    value = clean_url(url)
    if not value or value.lower().startswith("data:"):
        return None
    path = site_relative(value, ctx)
    if path is None:
        return None
    return strip_query(path)


def normalize_rule(rule: str) -> str:
    value = (rule or "").strip()
    if not value:
        return ""
    if not value.startswith("/"):
        value = "/" + value
    return strip_query(value)


def match_rules(path: str, rules: Iterable[str]) -> Optional[str]:
    """First rule matching ``path``; a trailing ``*`` makes the rule a prefix."""
    for raw in rules:
        rule = normalize_rule(raw)
        if not rule:
            continue
        if rule.endswith("*"):
            if path.startswith(rule[:-1]):
                return rule
        elif path == rule:
            return rule
    return None


def is_admin_path(url: str, ctx: SiteContext) -> bool:
    return any(marker in url for marker in ctx.admin_markers)


def should_rewrite(url: str, rules: Sequence[str], ctx: SiteContext) -> bool:
    if not url or not rules:
        return False
    if is_admin_path(url, ctx):
        return False
    path = comparison_path(url, ctx)
    if path is None:
        return False
    if is_admin_path(path, ctx):
        return False
    if match_rules(path, ctx.excluded_paths):
        return False
    return match_rules(path, rules) is not None


def build_cdn_base_url(username: str, repository: str, branch: str = DEFAULT_BRANCH) -> str:
    return CDN_BASE_TEMPLATE.format(
        username=username.strip(),
        repository=repository.strip(),
        branch=(branch or "").strip() or DEFAULT_BRANCH,
    )


class UrlRewriter:
    """Maps site asset URLs onto the CDN base for a fixed rule set.

    One instance belongs to one settings revision; its cache is never evicted.
    """

    def __init__(
        self,
        ctx: SiteContext,
        rules: Sequence[str],
        cdn_base_url: str,
        enabled: bool = True,
    ) -> None:
        self.ctx = ctx
        self.rules = [rule for rule in (r.strip() for r in rules) if rule]
        self.cdn_base_url = cdn_base_url or ""
        self.enabled = bool(enabled) and bool(self.cdn_base_url)
        self._cache: Dict[str, str] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def rewrite(self, url: str) -> str:
        if not self.enabled or not url:
            return url
        key = hashlib.md5(url.encode("utf-8")).hexdigest()
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        result = url
        try:
            if should_rewrite(url, self.rules, self.ctx):
                path = comparison_path(url, self.ctx) or ""
                result = self.cdn_base_url.rstrip("/") + "/" + path.lstrip("/")
                logger.debug("Rewriting URL: %s -> %s", url, result)
        except ValueError as exc:
            logger.debug("Leaving malformed URL unchanged: %s (%s)", url, exc)
            result = url

        self._cache[key] = result
        return result

    def rewrite_srcset_value(self, value: str) -> str:
        parts: List[str] = []
        for item in value.split(","):
            chunk = item.strip()
            if not chunk:
                continue
            pieces = chunk.split(None, 1)
            rewritten = self.rewrite(pieces[0])
            parts.append(f"{rewritten} {pieces[1]}" if len(pieces) > 1 else rewritten)
        return ", ".join(parts)

    def rewrite_srcset(self, sources: List[Dict[str, object]]) -> List[Dict[str, object]]:
        if not self.enabled:
            return sources
        for source in sources:
            url = source.get("url")
            if isinstance(url, str):
                source["url"] = self.rewrite(url)
        return sources

    def rewrite_content(self, html: str) -> str:
        if not self.enabled or not html:
            return html

        def _attr(match: "re.Match[str]") -> str:
            prefix, quote, value = match.group(1), match.group(2), match.group(3)
            return f"{prefix}{quote}{self.rewrite(value)}{quote}"

        def _srcset(match: "re.Match[str]") -> str:
            prefix, quote, value = match.group(1), match.group(2), match.group(3)
            return f"{prefix}{quote}{self.rewrite_srcset_value(value)}{quote}"

        def _css(match: "re.Match[str]") -> str:
            quote, value = match.group(1), match.group(2)
            rewritten = self.rewrite(value.strip())
            if rewritten == value.strip():
                return match.group(0)
            return f"url({quote}{rewritten}{quote})"

        text = TAG_ATTR_RE.sub(_attr, html)
        text = TAG_SRCSET_RE.sub(_srcset, text)
        return CSS_URL_RE.sub(_css, text)

    def client_config(self) -> Dict[str, object]:
        return {
            "baseUrl": self.ctx.base_url,
            "cdnBaseUrl": self.cdn_base_url,
            "customUrls": list(self.rules),
            "excludedPaths": list(self.ctx.excluded_paths),
        }

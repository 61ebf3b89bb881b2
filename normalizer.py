from __future__ import annotations

import re
from pathlib import Path
from typing import List, Optional
from urllib.parse import urlparse

from config import SiteContext


SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
MULTI_SLASH_RE = re.compile(r"(?<!:)/{2,}")
REJECTED_PREFIXES = ("data:", "blob:")
QUOTE_CHARS = "'\""


def clean_url(raw: str) -> str:
    url = (raw or "").strip()
    url = url.replace("\\/", "/").replace("\\", "/")
    return url.strip(QUOTE_CHARS).strip()


def strip_query(path: str) -> str:
    return re.split(r"[?#]", path or "", maxsplit=1)[0]


def parse_srcset(value: str) -> List[str]:
    urls: List[str] = []
    for part in (value or "").split(","):
        chunk = part.strip()
        if not chunk:
            continue
        urls.append(chunk.split()[0])
    return urls


def _extension_of(path: str) -> str:
    name = strip_query(path).rsplit("/", 1)[-1]
    if "." not in name:
        return ""
    return name.rsplit(".", 1)[-1].lower()


def is_static_asset_url(path: str, ctx: SiteContext) -> bool:
    ext = _extension_of(path)
    return bool(ext) and ext in ctx.extensions


def has_reserved_segment(path: str, ctx: SiteContext) -> bool:
    return any(f"/{segment}/" in path for segment in ctx.reserved_segments)


def _strip_base_path(path: str, ctx: SiteContext) -> str:
    base = ctx.base_path
    if not base:
        return path
    if path == base:
        return "/"
    if path.startswith(base + "/") or path.startswith(base + "?"):
        return path[len(base):]
    return path


def site_relative(url: str, ctx: SiteContext) -> Optional[str]:
    """Site-relative path with its query, or ``None`` for a foreign host."""
    if url.startswith("//"):
        url = "http:" + url

    if SCHEME_RE.match(url):
        try:
            parsed = urlparse(url)
        except ValueError:
            return None
        if (parsed.netloc or "").lower() != ctx.host:
            return None
        url = parsed.path or "/"
        if parsed.query:
            url = f"{url}?{parsed.query}"
    else:
        url = url.split("#", 1)[0]

    if not url.startswith("/"):
        url = "/" + url
    path, sep, query = url.partition("?")
    url = MULTI_SLASH_RE.sub("/", path) + sep + query
    return _strip_base_path(url, ctx)


def normalize_url(raw: str, ctx: SiteContext) -> Optional[str]:
    if not raw:
        return None
    url = clean_url(raw)
    if not url:
        return None
    lowered = url.lower()
    if lowered.startswith(REJECTED_PREFIXES):
        return None

    path = site_relative(url, ctx)
    if path is None:
        return None

    if has_reserved_segment(path, ctx):
        return path
    if not is_static_asset_url(path, ctx):
        return None
    return path


def remote_path_for_url(url: str, ctx: SiteContext) -> str:
    """Storage key for ``url``: site-relative, no leading slash, no query."""
    path = site_relative(clean_url(url), ctx) or ""
    return strip_query(path).lstrip("/")


def local_path_for_url(url: str, ctx: SiteContext) -> Optional[Path]:
    if ctx.document_root is None:
        return None
    remote = remote_path_for_url(url, ctx)
    if not remote:
        return None
    root = Path(ctx.document_root)
    candidate = (root / remote).resolve()
    try:
        candidate.relative_to(root.resolve())
    except ValueError:
        return None
    return candidate

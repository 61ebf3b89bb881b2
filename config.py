from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse


DEFAULT_EXTENSIONS: Tuple[str, ...] = (
    "js",
    "css",
    "png",
    "jpg",
    "jpeg",
    "gif",
    "svg",
    "webp",
    "ico",
    "woff",
    "woff2",
    "ttf",
    "eot",
    "otf",
)
RESERVED_SEGMENTS: Tuple[str, ...] = ("wp-content", "wp-includes")
ADMIN_MARKERS: Tuple[str, ...] = ("/wp-admin", "/wp-login")
DEFAULT_FILE_TYPES = "css,js"
DEFAULT_BRANCH = "main"
CDN_BASE_TEMPLATE = "https://cdn.jsdelivr.net/gh/{username}/{repository}@{branch}/"


class ConfigurationError(RuntimeError):
    pass


def split_lines(value: str) -> List[str]:
    text = (value or "").replace("\r\n", "\n").replace("\r", "\n")
    return [line.strip() for line in text.split("\n") if line.strip()]


def parse_extensions(value: Any) -> Tuple[str, ...]:
    if isinstance(value, str):
        items = value.split(",")
    else:
        items = list(value or [])
    cleaned = [str(item).strip().lower().lstrip(".") for item in items]
    return tuple(dict.fromkeys(item for item in cleaned if item))


@dataclass(frozen=True)
class SiteContext:
    base_url: str
    host: str
    base_path: str = ""
    extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS
    excluded_paths: Tuple[str, ...] = ()
    reserved_segments: Tuple[str, ...] = RESERVED_SEGMENTS
    admin_markers: Tuple[str, ...] = ADMIN_MARKERS
    document_root: Optional[Path] = None

    @classmethod
    def from_site_url(
        cls,
        site_url: str,
        extensions: Any = None,
        excluded_paths: Any = None,
        document_root: Optional[str] = None,
    ) -> "SiteContext":
        raw = (site_url or "").strip()
        if not raw:
            raise ConfigurationError("Site URL is not configured")
        if "://" not in raw:
            raw = "https://" + raw
        parsed = urlparse(raw)
        if not parsed.netloc:
            raise ConfigurationError(f"Could not resolve a host from site URL: {site_url}")

        base_path = (parsed.path or "").rstrip("/")
        exts = parse_extensions(extensions) if extensions is not None else DEFAULT_EXTENSIONS
        if isinstance(excluded_paths, str):
            excluded = tuple(split_lines(excluded_paths))
        else:
            excluded = tuple(p.strip() for p in (excluded_paths or []) if p and p.strip())

        return cls(
            base_url=f"{parsed.scheme}://{parsed.netloc}{base_path}",
            host=parsed.netloc.lower(),
            base_path=base_path,
            extensions=exts or DEFAULT_EXTENSIONS,
            excluded_paths=excluded,
            document_root=Path(document_root).expanduser() if document_root else None,
        )


@dataclass
class CdnSettings:
    """User-editable settings, stored as one JSON document."""

    enabled: bool = False
    debug_mode: bool = False
    site_url: str = ""
    document_root: str = ""
    github_username: str = ""
    github_repository: str = ""
    github_branch: str = DEFAULT_BRANCH
    github_token: str = ""
    file_types: str = DEFAULT_FILE_TYPES
    excluded_paths: str = ""
    custom_urls: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "CdnSettings":
        data = dict(data or {})
        known = {f.name for f in fields(cls)} - {"extra"}
        values = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known and k != "extra"}
        settings = cls(**values)
        settings.enabled = _as_flag(settings.enabled)
        settings.debug_mode = _as_flag(settings.debug_mode)
        settings.extra = extra
        return settings

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        extra = out.pop("extra", {}) or {}
        out.update(extra)
        return out

    def public_dict(self) -> Dict[str, Any]:
        out = self.to_dict()
        out["github_token"] = "********" if self.github_token else ""
        out["cdn_base_url"] = self.cdn_base_url
        return out

    @property
    def branch(self) -> str:
        return self.github_branch.strip() or DEFAULT_BRANCH

    @property
    def cdn_base_url(self) -> str:
        username = self.github_username.strip()
        repository = self.github_repository.strip()
        if not username or not repository:
            return ""
        return CDN_BASE_TEMPLATE.format(username=username, repository=repository, branch=self.branch)

    def file_type_list(self) -> List[str]:
        return list(parse_extensions(self.file_types))

    def excluded_path_list(self) -> List[str]:
        return split_lines(self.excluded_paths)

    def custom_url_list(self) -> List[str]:
        return split_lines(self.custom_urls)

    def site_context(self, fallback_site_url: str = "") -> SiteContext:
        return SiteContext.from_site_url(
            self.site_url or fallback_site_url,
            extensions=self.file_type_list(),
            excluded_paths=self.excluded_path_list(),
            document_root=self.document_root or None,
        )

    def merged(self, updates: Dict[str, Any]) -> "CdnSettings":
        # An empty or masked token keeps the stored one.
        current = self.to_dict()
        for key, value in (updates or {}).items():
            if key in ("enabled", "debug_mode"):
                current[key] = _as_flag(value)
            elif key == "file_types":
                if isinstance(value, (list, tuple)):
                    current[key] = ",".join(parse_extensions(value))
                else:
                    current[key] = ",".join(parse_extensions(str(value)))
            elif key in ("excluded_paths", "custom_urls"):
                if isinstance(value, (list, tuple)):
                    value = "\n".join(str(v) for v in value)
                current[key] = "\n".join(split_lines(str(value)))
            elif key == "github_token":
                token = str(value or "").strip()
                if token and set(token) != {"*"}:
                    current[key] = token
            elif key in current:
                current[key] = str(value if value is not None else "").strip()
        return CdnSettings.from_dict(current)


def _as_flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Dict, Iterable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import ConfigurationError, DEFAULT_BRANCH


logger = logging.getLogger("cdn_mirror.storage")

GITHUB_API_URL = "https://api.github.com"
PURGE_API_URL = "https://purge.jsdelivr.net"
USER_AGENT = "CDN-Asset-Mirror/1.0.0"
COMMIT_SUFFIX = "via CDN Asset Mirror"
PURGE_FILE_TYPES = ("js", "css", "png", "jpg", "jpeg", "gif", "svg", "woff", "woff2", "ttf")


def _build_session(user_agent: str) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        connect=2,
        read=2,
        backoff_factor=0.5,
        status_forcelist=(502, 503, 504),
        allowed_methods=frozenset(["GET"]),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("https://", adapter)
    session.mount("http://", adapter)
    session.headers.update({"User-Agent": user_agent})
    return session


class GitHubStorage:
    """Repository-backed asset store using the GitHub contents API."""

    def __init__(
        self,
        username: str,
        repository: str,
        branch: str = DEFAULT_BRANCH,
        token: str = "",
        timeout: int = 30,
    ) -> None:
        self.username = (username or "").strip()
        self.repository = (repository or "").strip()
        if not self.username or not self.repository:
            raise ConfigurationError("GitHub username or repository is not configured")
        self.branch = (branch or "").strip() or DEFAULT_BRANCH
        self.timeout = timeout
        self.session = _build_session(USER_AGENT)
        self.session.max_redirects = 5
        self.session.headers.update({"Accept": "application/vnd.github.v3+json"})
        if token:
            self.session.headers.update({"Authorization": f"token {token}"})

    @property
    def repo_url(self) -> str:
        return f"{GITHUB_API_URL}/repos/{self.username}/{self.repository}"

    def contents_url(self, remote_path: str) -> str:
        return f"{self.repo_url}/contents/{remote_path.lstrip('/')}"

    def test_connection(self) -> bool:
        logger.info("Testing GitHub connection for %s/%s", self.username, self.repository)
        try:
            response = self.session.get(self.repo_url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("GitHub API error: %s", exc)
            return False
        if not 200 <= response.status_code < 300:
            logger.error("GitHub API error: status %s, response: %s", response.status_code, response.text[:500])
            return False
        try:
            payload = response.json()
        except ValueError:
            logger.error("GitHub API returned a non-JSON response")
            return False
        permissions = payload.get("permissions") or {}
        if permissions.get("push") is True:
            logger.info("GitHub permissions test successful: write access confirmed")
            return True
        logger.error("GitHub permissions test failed: write access not confirmed")
        return False

    def exists(self, remote_path: str) -> Optional[str]:
        """SHA of ``remote_path`` on the branch, or ``None`` when it is absent."""
        try:
            response = self.session.get(
                self.contents_url(remote_path),
                params={"ref": self.branch},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.error("GitHub API error: %s", exc)
            return None
        if response.status_code == 404:
            logger.debug("File not found in repository: %s", remote_path)
            return None
        if not 200 <= response.status_code < 300:
            logger.error(
                "Failed to get contents of %s. Status: %s, Response: %s",
                remote_path,
                response.status_code,
                response.text[:500],
            )
            return None
        try:
            payload = response.json()
        except ValueError:
            return None
        if isinstance(payload, dict):
            sha = payload.get("sha")
            return str(sha) if sha else None
        return None

    def put(self, remote_path: str, content: bytes, message: str, sha: Optional[str] = None) -> bool:
        data: Dict[str, str] = {
            "message": message,
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            data["sha"] = sha
        try:
            response = self.session.put(self.contents_url(remote_path), json=data, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("GitHub API error: %s", exc)
            return False
        if 200 <= response.status_code < 300:
            logger.debug("GitHub API create/update status: %s", response.status_code)
            return True
        detail = ""
        try:
            detail = str((response.json() or {}).get("message") or "")
        except ValueError:
            detail = response.text[:500]
        logger.error("Failed to create/update %s. Status: %s, %s", remote_path, response.status_code, detail)
        return False

    def upload_file(self, local_path: Path, remote_path: str) -> bool:
        local_path = Path(local_path)
        logger.info("Starting upload of file: %s to %s", local_path, remote_path)
        if not local_path.is_file():
            logger.error("Local file does not exist: %s", local_path)
            return False
        try:
            content = local_path.read_bytes()
        except OSError as exc:
            logger.error("Failed to read local file %s: %s", local_path, exc)
            return False

        remote_path = remote_path.lstrip("/")
        sha = self.exists(remote_path)
        verb = "Update" if sha else "Add"
        message = f"{verb} {local_path.name} {COMMIT_SUFFIX}"
        logger.debug("Commit message: %s", message)
        return self.put(remote_path, content, message, sha)


class JsDelivrPurger:
    def __init__(self, username: str, repository: str, branch: str = DEFAULT_BRANCH, timeout: int = 30) -> None:
        self.username = (username or "").strip()
        self.repository = (repository or "").strip()
        if not self.username or not self.repository:
            raise ConfigurationError("GitHub username or repository is not configured")
        self.branch = (branch or "").strip() or DEFAULT_BRANCH
        self.timeout = timeout
        self.session = _build_session(USER_AGENT)

    def purge_url(self, path: str = "") -> str:
        return f"{PURGE_API_URL}/gh/{self.username}/{self.repository}@{self.branch}/{path.lstrip('/')}"

    def _request(self, url: str) -> bool:
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.error("jsDelivr API error: %s", exc)
            return False
        if 200 <= response.status_code < 300:
            return True
        logger.error("Failed to purge %s. Status: %s, Response: %s", url, response.status_code, response.text[:500])
        return False

    def purge(self, path: str) -> bool:
        ok = self._request(self.purge_url(path))
        if ok:
            logger.info("Successfully purged file from jsDelivr: %s", path)
        return ok

    def purge_file_types(self, file_types: Iterable[str] = ("js", "css")) -> bool:
        ok = True
        for file_type in file_types:
            if not self._request(self.purge_url(f"**/*.{file_type}")):
                ok = False
        return ok

    def purge_all(self) -> bool:
        url = self.purge_url("")
        logger.info("Purging all files from jsDelivr using URL: %s", url)
        if not self._request(url):
            return False
        self.purge_file_types(PURGE_FILE_TYPES)
        logger.info("Successfully purged all files from jsDelivr")
        return True

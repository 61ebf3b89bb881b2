from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional, Sequence, TypeVar

from config import SiteContext
from normalizer import local_path_for_url, remote_path_for_url
from storage import GitHubStorage


logger = logging.getLogger("cdn_mirror.publisher")

BATCH_SIZE = 5
T = TypeVar("T")


@dataclass
class BatchResult:
    processed: int = 0
    success: int = 0
    failed: int = 0
    exists: int = 0
    details: List[Dict[str, object]] = field(default_factory=list)

    def record(self, url: str, status: str, message: str) -> None:
        self.processed += 1
        if status == "uploaded":
            self.success += 1
        elif status == "exists":
            self.exists += 1
        else:
            self.failed += 1
        self.details.append(
            {
                "url": url,
                "status": status,
                "success": status != "failed",
                "message": message,
            }
        )

    def to_dict(self) -> Dict[str, object]:
        out = asdict(self)
        out["total"] = self.processed
        return out


def chunked(items: Sequence[T], size: int = BATCH_SIZE) -> List[List[T]]:
    size = max(1, int(size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def plan_batches(urls: Sequence[str], size: int = BATCH_SIZE) -> Dict[str, object]:
    batches = chunked(urls, size)
    return {
        "total_urls": len(urls),
        "batches": len(batches),
        "batch_size": size,
        "message": f"Processing {len(urls)} URLs in {len(batches)} batches...",
    }


def upload_summary(result: BatchResult) -> str:
    if result.failed > 0 and result.success > 0:
        return (
            f"Upload completed with issues: {result.success} successful, {result.exists} already on GitHub, "
            f"{result.failed} failed, {result.processed} total."
        )
    if result.failed > 0 and result.success == 0 and result.exists == 0:
        return "Upload failed for all files. Check details for more information."
    if result.exists == result.processed:
        return "All files already exist on GitHub."
    return f"All {result.success} files were successfully uploaded to GitHub."


class AssetPublisher:
    def __init__(self, storage: GitHubStorage, ctx: SiteContext) -> None:
        self.storage = storage
        self.ctx = ctx

    def publish_one(self, url: str, result: BatchResult) -> None:
        local_path = local_path_for_url(url, self.ctx)
        if local_path is None:
            result.record(url, "failed", "Could not determine local path for URL")
            return
        if not local_path.is_file():
            result.record(url, "failed", f"File not found: {local_path}")
            return

        remote_path = remote_path_for_url(url, self.ctx)
        if self.storage.exists(remote_path):
            result.record(url, "exists", "File already exists on GitHub")
            return

        if self.storage.upload_file(local_path, remote_path):
            result.record(url, "uploaded", "Successfully uploaded to GitHub")
        else:
            result.record(url, "failed", "Failed to upload to GitHub")

    def publish(self, urls: Sequence[str], result: Optional[BatchResult] = None) -> BatchResult:
        result = result or BatchResult()
        for url in urls:
            logger.debug("Processing URL: %s", url)
            try:
                self.publish_one(url, result)
            except Exception as exc:
                logger.exception("Publishing %s failed", url)
                result.record(url, "failed", str(exc) or exc.__class__.__name__)
        logger.info(
            "Publish finished: %d uploaded, %d existing, %d failed",
            result.success,
            result.exists,
            result.failed,
        )
        return result

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify, request

from analyzer import EMPTY_CRAWL_REASON, EMPTY_PASTED_REASON, AnalysisResult, SiteAnalyzer
from config import CdnSettings, ConfigurationError, SiteContext, split_lines
from db import SQLiteStore
from logging_config import DEFAULT_LOG_LINES, clear_log, read_log_lines, setup_logging
from publisher import BATCH_SIZE, AssetPublisher, BatchResult, plan_batches, upload_summary
from rewriter import UrlRewriter
from storage import GitHubStorage, JsDelivrPurger


BASE_DIR = Path(__file__).resolve().parent
DB_PATH = Path(os.environ.get("DB_PATH", str(BASE_DIR / "cdn_mirror.sqlite3"))).expanduser()
LOG_FILE = Path(os.environ.get("LOG_FILE", str(BASE_DIR / "logs" / "cdn-mirror.log"))).expanduser()
SITE_URL = (os.environ.get("SITE_URL") or "").strip()

app = Flask(__name__)
analyzer = SiteAnalyzer()
store = SQLiteStore(DB_PATH)
logger = logging.getLogger("cdn_mirror.app")

ANALYZE_JOBS: dict[str, dict] = {}
ANALYZE_JOBS_LOCK = threading.Lock()

QUICK_MAX_PAGES = 1
DEFAULT_DEEP_MAX_PAGES = 5
MAX_DEEP_PAGES = 20
CACHE_TTL_SECONDS = 900
MAX_ACTIVE_JOBS = int(os.environ.get("MAX_ACTIVE_JOBS", "4"))
REQUIRE_LOCAL_MUTATIONS = (os.environ.get("REQUIRE_LOCAL_MUTATIONS", "1").strip().lower() in {"1", "true", "yes", "on"})
APP_API_TOKEN = (os.environ.get("APP_API_TOKEN") or "").strip()
ACTIVE_JOBS_LOCK = threading.Lock()
ACTIVE_JOBS_COUNT = 0
JOB_RETENTION_SECONDS = int(os.environ.get("JOB_RETENTION_SECONDS", "3600"))
JOB_CLEANUP_INTERVAL_SECONDS = int(os.environ.get("JOB_CLEANUP_INTERVAL_SECONDS", "60"))
_LAST_JOB_CLEANUP_TS = 0.0
DB_PRUNE_INTERVAL_SECONDS = int(os.environ.get("DB_PRUNE_INTERVAL_SECONDS", "600"))
DB_CACHE_RETENTION_SECONDS = int(os.environ.get("DB_CACHE_RETENTION_SECONDS", str(14 * 24 * 3600)))
DB_JOBS_RETENTION_SECONDS = int(os.environ.get("DB_JOBS_RETENTION_SECONDS", str(30 * 24 * 3600)))
_LAST_DB_PRUNE_TS = 0.0

_REWRITER: Optional[UrlRewriter] = None
_REWRITER_LOCK = threading.Lock()


class JobCapacityError(RuntimeError):
    pass


def _load_settings() -> CdnSettings:
    return CdnSettings.from_dict(store.get_settings())


def _configure_logging(settings: CdnSettings) -> None:
    setup_logging("DEBUG" if settings.debug_mode else "INFO", LOG_FILE)


def _site_context(settings: CdnSettings) -> SiteContext:
    return settings.site_context(fallback_site_url=SITE_URL)


def _build_storage(settings: CdnSettings) -> GitHubStorage:
    return GitHubStorage(
        settings.github_username,
        settings.github_repository,
        branch=settings.branch,
        token=settings.github_token,
    )


def _build_purger(settings: CdnSettings) -> JsDelivrPurger:
    return JsDelivrPurger(settings.github_username, settings.github_repository, branch=settings.branch)


def _get_rewriter() -> UrlRewriter:
    global _REWRITER
    with _REWRITER_LOCK:
        if _REWRITER is None:
            settings = _load_settings()
            _REWRITER = UrlRewriter(
                _site_context(settings),
                settings.custom_url_list(),
                settings.cdn_base_url,
                enabled=settings.enabled,
            )
        return _REWRITER


def _reset_rewriter() -> None:
    global _REWRITER
    with _REWRITER_LOCK:
        _REWRITER = None


def _save_settings(settings: CdnSettings) -> None:
    store.save_settings(settings.to_dict())
    _reset_rewriter()
    _configure_logging(settings)


def _is_local_request() -> bool:
    addr = (request.remote_addr or "").strip()
    return addr in {"127.0.0.1", "::1", "localhost"}


def _security_error(message: str, status: int = 403):
    return jsonify({"ok": False, "error": message}), status


def _claim_job_slot() -> None:
    global ACTIVE_JOBS_COUNT
    with ACTIVE_JOBS_LOCK:
        if ACTIVE_JOBS_COUNT >= max(1, MAX_ACTIVE_JOBS):
            raise JobCapacityError(f"Too many active jobs ({ACTIVE_JOBS_COUNT}/{MAX_ACTIVE_JOBS}). Wait for current jobs to finish.")
        ACTIVE_JOBS_COUNT += 1


def _release_job_slot() -> None:
    global ACTIVE_JOBS_COUNT
    with ACTIVE_JOBS_LOCK:
        ACTIVE_JOBS_COUNT = max(0, ACTIVE_JOBS_COUNT - 1)


def _cleanup_old_jobs() -> None:
    now = time.time()
    with ANALYZE_JOBS_LOCK:
        for job_id, job in list(ANALYZE_JOBS.items()):
            if str(job.get("state") or "") not in {"done", "error"}:
                continue
            started_at = float(job.get("started_at") or now)
            if (now - started_at) > max(60, JOB_RETENTION_SECONDS):
                ANALYZE_JOBS.pop(job_id, None)


def _maybe_cleanup_jobs() -> None:
    global _LAST_JOB_CLEANUP_TS
    now = time.time()
    if (now - _LAST_JOB_CLEANUP_TS) < max(5, JOB_CLEANUP_INTERVAL_SECONDS):
        return
    _cleanup_old_jobs()
    _LAST_JOB_CLEANUP_TS = now


def _maybe_prune_db() -> None:
    global _LAST_DB_PRUNE_TS
    now = time.time()
    if (now - _LAST_DB_PRUNE_TS) < max(30, DB_PRUNE_INTERVAL_SECONDS):
        return
    try:
        store.prune_old_data(DB_CACHE_RETENTION_SECONDS, DB_JOBS_RETENTION_SECONDS)
    except Exception:
        logger.exception("Database prune failed")
    _LAST_DB_PRUNE_TS = now


@app.before_request
def apply_security_guards():
    _maybe_cleanup_jobs()
    _maybe_prune_db()
    if app.config.get("TESTING"):
        return None

    if request.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return None

    if REQUIRE_LOCAL_MUTATIONS and not _is_local_request():
        return _security_error("This app allows write operations from localhost only.", 403)

    if APP_API_TOKEN and not _is_local_request():
        sent_token = (
            request.headers.get("X-App-Token")
            or request.form.get("app_token")
            or (request.get_json(silent=True) or {}).get("app_token")
            or ""
        ).strip()
        if sent_token != APP_API_TOKEN:
            return _security_error("Invalid app token.", 401)
    return None


def _elapsed_seconds(started_at: float) -> int:
    return max(0, int(time.time() - float(started_at or time.time())))


def _normalize_progress(
    payload: Optional[dict],
    started_at: float,
    *,
    stage: str = "running",
    message: str = "Working",
    current_item: str = "",
) -> dict:
    raw = dict(payload or {})
    pct = raw.get("percent", 0)
    try:
        percent = int(float(pct))
    except (TypeError, ValueError):
        percent = 0
    percent = max(0, min(100, percent))

    current = raw.get("current_item") or raw.get("current_url") or current_item

    raw["stage"] = str(raw.get("stage") or stage)
    raw["message"] = str(raw.get("message") or message)
    raw["percent"] = percent
    raw["current_item"] = str(current or "")
    raw["elapsed_seconds"] = _elapsed_seconds(started_at)
    return raw


def _queued_progress(started_at: float, **extra: object) -> dict:
    base = {
        "stage": "queued",
        "message": "Job queued",
        "percent": 0,
        "current_item": "",
    }
    base.update(extra)
    return _normalize_progress(base, started_at, stage="queued", message="Job queued")


def _jobs_state_counts(job_map: dict[str, dict], lock: threading.Lock) -> dict[str, int]:
    counts: dict[str, int] = {}
    with lock:
        for job in job_map.values():
            state = str(job.get("state") or "unknown")
            counts[state] = counts.get(state, 0) + 1
    return counts


def _parse_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    raw = str(value if value is not None else "").strip()
    try:
        num = int(raw)
    except ValueError:
        num = default
    return max(min_value, min(num, max_value))


def _request_data() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _url_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            try:
                value = json.loads(text)
            except json.JSONDecodeError:
                return split_lines(text)
        else:
            return split_lines(text)
    if not isinstance(value, (list, tuple)):
        return []
    return [str(item).strip() for item in value if str(item or "").strip()]


def _count_message(count: int, singular: str, plural: str) -> str:
    return (singular if count == 1 else plural) % count


def _analysis_payload(result: AnalysisResult) -> dict:
    payload = asdict(result)
    payload["urls"] = list(result.assets)
    payload["count"] = len(result.assets)
    if result.assets:
        payload["message"] = _count_message(len(result.assets), "Found %d URL to analyze.", "Found %d URLs to analyze.")
    else:
        payload["message"] = result.reason or EMPTY_CRAWL_REASON
    return payload


def _analysis_cache_key(start_url: str, max_pages: int, ctx: SiteContext) -> str:
    return f"a|{ctx.base_url}|{start_url}|{max_pages}|{','.join(ctx.extensions)}"


def _resolve_analyze_request(data: Dict[str, Any]) -> tuple[str, int]:
    analyze_type = str(data.get("analyze_type") or "quick").strip().lower()
    if analyze_type == "deep":
        start_url = str(data.get("start_url") or "").strip()
        max_pages = _parse_int(data.get("max_pages"), default=DEFAULT_DEEP_MAX_PAGES, min_value=1, max_value=MAX_DEEP_PAGES)
        return start_url, max_pages
    return "", QUICK_MAX_PAGES


@app.get("/diagnostics")
def diagnostics():
    settings = _load_settings()
    payload = {
        "ok": True,
        "config": {
            "host": os.environ.get("HOST", "127.0.0.1"),
            "port": int(os.environ.get("PORT", "5000")),
            "max_active_jobs": MAX_ACTIVE_JOBS,
            "require_local_mutations": REQUIRE_LOCAL_MUTATIONS,
            "site_url": settings.site_url or SITE_URL,
            "cdn_enabled": settings.enabled,
            "debug_mode": settings.debug_mode,
            "github_configured": bool(settings.cdn_base_url),
            "custom_url_count": len(settings.custom_url_list()),
        },
        "runtime": {
            "active_jobs": ACTIVE_JOBS_COUNT,
            "jobs": {
                "analyze": _jobs_state_counts(ANALYZE_JOBS, ANALYZE_JOBS_LOCK),
            },
            "rewrite_cache_size": _REWRITER.cache_size if _REWRITER is not None else 0,
            "recent_jobs": store.list_recent_jobs(limit=5),
        },
        "storage": {
            "db_path": str(DB_PATH),
            "db_size_bytes": int(DB_PATH.stat().st_size) if DB_PATH.exists() else 0,
            "log_file": str(LOG_FILE),
            "log_size_bytes": int(LOG_FILE.stat().st_size) if LOG_FILE.exists() else 0,
        },
    }
    return jsonify(payload)


@app.get("/settings")
def settings_get():
    return jsonify({"ok": True, "settings": _load_settings().public_dict()})


@app.post("/settings")
def settings_save():
    data = _request_data()
    if not data:
        return jsonify({"ok": False, "error": "No settings provided."}), 400
    settings = _load_settings().merged(data)
    _save_settings(settings)
    logger.info("Settings saved")
    return jsonify({"ok": True, "settings": settings.public_dict(), "message": "Settings saved."})


@app.post("/custom-urls")
def custom_urls_update():
    data = _request_data()
    if "custom_urls" not in data:
        return jsonify({"ok": False, "error": "custom_urls is required"}), 400
    settings = _load_settings().merged({"custom_urls": data.get("custom_urls")})
    _save_settings(settings)
    count = len(settings.custom_url_list())
    logger.info("Custom URLs updated: %d entries", count)
    return jsonify({"ok": True, "count": count, "message": "Custom URLs updated successfully."})


@app.post("/analyze")
def analyze_target():
    data = _request_data()
    start_url, max_pages = _resolve_analyze_request(data)
    refresh = _parse_bool(data.get("refresh"), default=False)
    try:
        ctx = _site_context(_load_settings())
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400

    cache_key = _analysis_cache_key(start_url, max_pages, ctx)
    payload = None if refresh else store.get_analysis_cache(cache_key, CACHE_TTL_SECONDS)
    if payload is None:
        result = analyzer.analyze(start_url, max_pages, ctx)
        payload = _analysis_payload(result)
        if result.assets:
            store.set_analysis_cache(cache_key, result.start_url, max_pages, payload)
        store.add_job_history(
            "analyze",
            result.start_url,
            "done",
            summary={"count": len(result.assets), "pages_visited": result.pages_visited},
        )

    if not payload.get("urls"):
        return jsonify({"ok": False, "message": payload.get("message") or EMPTY_CRAWL_REASON, "result": payload})
    return jsonify({"ok": True, **payload})


@app.post("/analyze/start")
def analyze_start():
    data = _request_data()
    start_url, max_pages = _resolve_analyze_request(data)
    try:
        ctx = _site_context(_load_settings())
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    try:
        job_id = _start_analyze_job(start_url, max_pages, ctx)
    except JobCapacityError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 429
    return jsonify({"ok": True, "job_id": job_id})


@app.get("/analyze/status/<job_id>")
def analyze_status(job_id: str):
    with ANALYZE_JOBS_LOCK:
        job = ANALYZE_JOBS.get(job_id)
        job = dict(job) if job else None
    if not job:
        return jsonify({"ok": False, "error": "Job not found"}), 404
    return jsonify({"ok": True, **job})


@app.post("/analyze/direct")
def analyze_direct():
    data = _request_data()
    urls_text = data.get("urls")
    if isinstance(urls_text, (list, tuple)):
        urls_text = "\n".join(str(u) for u in urls_text)
    urls_text = str(urls_text or "")
    if not urls_text.strip():
        return jsonify({"ok": False, "error": "No URLs provided."}), 400
    try:
        ctx = _site_context(_load_settings())
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400

    urls = analyzer.process_pasted(urls_text, ctx)
    if not urls:
        return jsonify({"ok": False, "message": EMPTY_PASTED_REASON})
    return jsonify(
        {
            "ok": True,
            "urls": urls,
            "count": len(urls),
            "message": _count_message(len(urls), "Found %d valid URL from your input.", "Found %d valid URLs from your input."),
        }
    )


@app.post("/validate")
def validate_urls():
    data = _request_data()
    settings = _load_settings()

    if _parse_bool(data.get("batch_mode"), default=False):
        batch_urls = _url_list(data.get("batch_urls"))
        if not batch_urls:
            return jsonify({"ok": False, "error": "Invalid URL format in batch."}), 400
        batch_index = _parse_int(data.get("batch_index"), default=0, min_value=0, max_value=100000)
        total_batches = _parse_int(data.get("total_batches"), default=1, min_value=1, max_value=100000)
        try:
            publisher = AssetPublisher(_build_storage(settings), _site_context(settings))
        except ConfigurationError as exc:
            return jsonify({"ok": False, "error": str(exc)}), 400
        batch_results = publisher.publish(batch_urls)
        return jsonify(
            {
                "ok": True,
                "batch_index": batch_index,
                "total_batches": total_batches,
                "batch_results": asdict(batch_results),
            }
        )

    custom_urls = settings.custom_url_list()
    if not custom_urls:
        return jsonify({"ok": False, "error": "No custom URLs defined."}), 400
    return jsonify({"ok": True, **plan_batches(custom_urls, BATCH_SIZE)})


@app.post("/upload")
def upload_urls():
    data = _request_data()
    urls = _url_list(data.get("urls"))
    if not urls:
        return jsonify({"ok": False, "error": "No URLs provided for upload."}), 400
    settings = _load_settings()
    try:
        publisher = AssetPublisher(_build_storage(settings), _site_context(settings))
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400

    preview = ", ".join(urls[:5]) + ("..." if len(urls) > 5 else "")
    logger.info("Received URLs for upload: %s", preview)
    results: BatchResult = publisher.publish(urls)
    message = upload_summary(results)
    store.add_job_history(
        "upload",
        settings.site_url or SITE_URL,
        "done",
        summary={"success": results.success, "exists": results.exists, "failed": results.failed},
    )
    return jsonify({"ok": True, "results": results.to_dict(), "message": message})


@app.post("/purge")
def purge_cache():
    data = _request_data()
    path = str(data.get("path") or "").strip()
    try:
        purger = _build_purger(_load_settings())
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400

    ok = purger.purge(path) if path else purger.purge_all()
    store.add_job_history("purge", path or "*", "done" if ok else "error")
    if ok:
        return jsonify({"ok": True, "message": "jsDelivr CDN cache has been purged successfully."})
    return jsonify({"ok": False, "message": "Failed to purge jsDelivr CDN cache. Please check the logs for details."})


@app.post("/test-connection")
def test_connection():
    try:
        storage = _build_storage(_load_settings())
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    if storage.test_connection():
        return jsonify(
            {
                "ok": True,
                "message": "GitHub connection test successful. Your credentials are correct and you have proper access to the repository.",
            }
        )
    return jsonify(
        {
            "ok": False,
            "message": "GitHub connection test failed. Check the username, repository name and access token, and make sure the token has repo scope.",
        }
    )


@app.get("/cdn-config")
def cdn_config():
    try:
        rewriter = _get_rewriter()
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400
    return jsonify({"ok": True, "config": rewriter.client_config(), "enabled": rewriter.enabled})


@app.post("/rewrite/preview")
def rewrite_preview():
    data = _request_data()
    urls = _url_list(data.get("urls"))
    html = data.get("html")
    if not urls and not html:
        return jsonify({"ok": False, "error": "urls or html is required"}), 400
    try:
        rewriter = _get_rewriter()
    except ConfigurationError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 400

    payload: Dict[str, Any] = {
        "ok": True,
        "enabled": rewriter.enabled,
        "urls": [{"url": url, "rewritten": rewriter.rewrite(url)} for url in urls],
    }
    if html:
        payload["html"] = rewriter.rewrite_content(str(html))
    return jsonify(payload)


@app.get("/log")
def view_log():
    lines = _parse_int(request.args.get("lines"), default=DEFAULT_LOG_LINES, min_value=1, max_value=DEFAULT_LOG_LINES)
    log_lines = read_log_lines(LOG_FILE, lines)
    if not log_lines:
        return jsonify({"ok": True, "content": "Log file is empty or does not exist.", "lines": []})
    return jsonify({"ok": True, "content": "\n".join(log_lines), "lines": log_lines})


@app.post("/log/clear")
def log_clear():
    clear_log(LOG_FILE)
    return jsonify({"ok": True, "message": "Log cleared."})


def _start_analyze_job(start_url: str, max_pages: int, ctx: SiteContext) -> str:
    _claim_job_slot()
    job_id = uuid.uuid4().hex
    started_at = time.time()
    with ANALYZE_JOBS_LOCK:
        ANALYZE_JOBS[job_id] = {
            "state": "queued",
            "error": None,
            "started_at": started_at,
            "start_url": start_url,
            "max_pages": max_pages,
            "progress": _queued_progress(started_at),
            "result": None,
        }

    def _runner() -> None:
        target = start_url or ctx.base_url + "/"
        try:
            def _update(payload: dict) -> None:
                with ANALYZE_JOBS_LOCK:
                    if job_id in ANALYZE_JOBS:
                        ANALYZE_JOBS[job_id]["state"] = "running"
                        ANALYZE_JOBS[job_id]["progress"] = _normalize_progress(payload, started_at, stage="crawl", message="Crawling pages")

            result = analyzer.analyze(start_url, max_pages, ctx, progress_callback=_update)
            payload = _analysis_payload(result)
            if result.assets:
                store.set_analysis_cache(_analysis_cache_key(start_url, max_pages, ctx), result.start_url, max_pages, payload)
            store.add_job_history(
                "analyze",
                result.start_url,
                "done",
                summary={"count": len(result.assets), "pages_visited": result.pages_visited},
            )
            with ANALYZE_JOBS_LOCK:
                if job_id in ANALYZE_JOBS:
                    ANALYZE_JOBS[job_id]["state"] = "done"
                    done_progress = dict(ANALYZE_JOBS[job_id].get("progress", {}))
                    done_progress["stage"] = "done"
                    done_progress["message"] = "Analyze completed"
                    done_progress["percent"] = 100
                    ANALYZE_JOBS[job_id]["progress"] = _normalize_progress(done_progress, started_at, stage="done", message="Analyze completed")
                    ANALYZE_JOBS[job_id]["result"] = payload
        except Exception as exc:
            logger.exception("Analyze job %s failed", job_id)
            store.add_job_history("analyze", target, "error", summary={"error": str(exc)})
            with ANALYZE_JOBS_LOCK:
                if job_id in ANALYZE_JOBS:
                    ANALYZE_JOBS[job_id]["state"] = "error"
                    ANALYZE_JOBS[job_id]["error"] = str(exc)
                    err_progress = dict(ANALYZE_JOBS[job_id].get("progress", {}))
                    err_progress["stage"] = "error"
                    err_progress["message"] = str(exc)
                    ANALYZE_JOBS[job_id]["progress"] = _normalize_progress(err_progress, started_at, stage="error", message=str(exc))
        finally:
            _release_job_slot()

    threading.Thread(target=_runner, daemon=True).start()
    return job_id


_configure_logging(_load_settings())


if __name__ == "__main__":
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))
    debug = _parse_bool(os.environ.get("FLASK_DEBUG"), default=False)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)

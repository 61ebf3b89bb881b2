from __future__ import annotations

import argparse
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

import requests


APP_DIR = Path(__file__).resolve().parent


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def fetch_diagnostics(url: str, timeout: float = 2.0) -> Optional[dict]:
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException:
        return None
    if response.status_code >= 500:
        return None
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def is_healthy(url: str, timeout: float = 2.0) -> bool:
    payload = fetch_diagnostics(url, timeout=timeout)
    return bool(payload and payload.get("ok"))


def main() -> int:
    load_env_file(APP_DIR / ".env")
    parser = argparse.ArgumentParser(description="Start the CDN asset mirror API in the background and wait for /diagnostics.")
    parser.add_argument("--host", default=os.environ.get("HOST", "127.0.0.1"), help="Host to bind/check")
    parser.add_argument("--port", type=int, default=int(os.environ.get("PORT", "5000")), help="Port to bind/check")
    parser.add_argument("--site-url", default=os.environ.get("SITE_URL", ""), help="Fallback site URL when none is saved in settings")
    parser.add_argument("--db-path", default=os.environ.get("DB_PATH", ""), help="SQLite database path")
    parser.add_argument("--log-file", default=os.environ.get("LOG_FILE", ""), help="JSON log file path")
    parser.add_argument("--timeout", type=float, default=25.0, help="Seconds to wait for health")
    parser.add_argument("--check-only", action="store_true", help="Only check current health, do not spawn")
    args = parser.parse_args()

    health_url = f"http://{args.host}:{args.port}/diagnostics"

    if is_healthy(health_url):
        print(f"Already healthy: {health_url}")
        return 0

    if args.check_only:
        print(f"Not healthy: {health_url}")
        return 1

    runtime_dir = APP_DIR / "runtime"
    runtime_dir.mkdir(parents=True, exist_ok=True)
    server_log = runtime_dir / "server.log"
    pid_file = runtime_dir / "server.pid"

    env = os.environ.copy()
    env["HOST"] = args.host
    env["PORT"] = str(args.port)
    env["FLASK_DEBUG"] = "0"
    for key, value in (("SITE_URL", args.site_url), ("DB_PATH", args.db_path), ("LOG_FILE", args.log_file)):
        if value:
            env[key] = value

    creation_flags = 0
    if os.name == "nt":
        creation_flags = (
            getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
            | getattr(subprocess, "DETACHED_PROCESS", 0)
            | getattr(subprocess, "CREATE_NO_WINDOW", 0)
        )

    with server_log.open("ab") as log_stream:
        proc = subprocess.Popen(
            [sys.executable, "app.py"],
            stdout=log_stream,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            env=env,
            cwd=str(APP_DIR),
            creationflags=creation_flags,
            close_fds=True,
        )

    deadline = time.time() + max(1.0, args.timeout)
    while time.time() < deadline:
        if proc.poll() is not None:
            print("Server process exited before becoming healthy.")
            print(f"See log: {server_log}")
            return 1
        payload = fetch_diagnostics(health_url)
        if payload and payload.get("ok"):
            pid_file.write_text(str(proc.pid), encoding="utf-8")
            config = payload.get("config") or {}
            print(f"Server started. URL: {health_url}")
            print(f"Site: {config.get('site_url') or '(not configured)'}")
            print(f"PID: {proc.pid}")
            print(f"Log: {server_log}")
            return 0
        time.sleep(0.4)

    proc.terminate()
    print(f"Health check timed out after {args.timeout}s: {health_url}")
    print(f"See log: {server_log}")
    return 1


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from dataclasses import asdict
from pathlib import Path
from typing import Optional

from flask import Flask, Response, jsonify, request, send_from_directory, stream_with_context

from cloner import CloneConfig, CloneResult, WebsiteCloner
from db import SQLiteStore
from errors import InvalidUrl, JobCapacityError, JobStateError
from jobs import JobLedger, utc_now
from urls import normalize


BASE_DIR = Path(__file__).resolve().parent
OUTPUT_ROOT_DIR = Path(os.environ.get("OUTPUT_ROOT_DIR", str(BASE_DIR / "output"))).expanduser().resolve()
OUTPUT_ROOT_DIR.mkdir(parents=True, exist_ok=True)
DB_PATH = Path(os.environ.get("CLONE_HISTORY_DB", str(BASE_DIR / "clone_history.sqlite3"))).expanduser()


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_int(value: Optional[str], default: int, min_value: int, max_value: int) -> int:
    raw = (value or "").strip()
    try:
        num = int(raw)
    except ValueError:
        num = default
    return max(min_value, min(num, max_value))


MAX_ACTIVE_JOBS = int(os.environ.get("MAX_ACTIVE_JOBS", "4"))
JOB_RETENTION_SECONDS = int(os.environ.get("JOB_RETENTION_SECONDS", "3600"))
JOB_CLEANUP_INTERVAL_SECONDS = int(os.environ.get("JOB_CLEANUP_INTERVAL_SECONDS", "60"))
DB_PRUNE_INTERVAL_SECONDS = int(os.environ.get("DB_PRUNE_INTERVAL_SECONDS", "600"))
DB_HISTORY_RETENTION_SECONDS = int(os.environ.get("DB_HISTORY_RETENTION_SECONDS", str(30 * 24 * 3600)))
FETCH_WORKERS = _parse_int(os.environ.get("FETCH_WORKERS"), 6, 1, 32)
ASSET_TIMEOUT_SECONDS = float(os.environ.get("ASSET_TIMEOUT_SECONDS", "10"))
NAVIGATION_TIMEOUT_SECONDS = float(os.environ.get("NAVIGATION_TIMEOUT_SECONDS", "60"))
HEADLESS = _parse_bool(os.environ.get("HEADLESS"), default=True)
SSE_HEARTBEAT_SECONDS = float(os.environ.get("SSE_HEARTBEAT_SECONDS", "15"))
APP_API_TOKEN = (os.environ.get("APP_API_TOKEN") or "").strip()

logger = logging.getLogger("page_cloner")

app = Flask(__name__)
ledger = JobLedger()
store = SQLiteStore(DB_PATH)
ACTIVE_JOBS_LOCK = threading.Lock()
ACTIVE_JOBS_COUNT = 0
_LAST_JOB_CLEANUP_TS = 0.0
_LAST_DB_PRUNE_TS = 0.0


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


def _maybe_cleanup_jobs() -> None:
    global _LAST_JOB_CLEANUP_TS
    now = time.time()
    if (now - _LAST_JOB_CLEANUP_TS) < max(5, JOB_CLEANUP_INTERVAL_SECONDS):
        return
    removed = ledger.prune(max(60, JOB_RETENTION_SECONDS))
    if removed:
        logger.debug("Dropped %d finished jobs from memory", removed)
    _LAST_JOB_CLEANUP_TS = now


def _maybe_prune_db() -> None:
    global _LAST_DB_PRUNE_TS
    now = time.time()
    if (now - _LAST_DB_PRUNE_TS) < max(30, DB_PRUNE_INTERVAL_SECONDS):
        return
    try:
        store.prune_old_data(DB_HISTORY_RETENTION_SECONDS)
    except sqlite3.Error as exc:
        logger.warning("Could not prune clone history: %s", exc)
    _LAST_DB_PRUNE_TS = now


def _is_local_request() -> bool:
    addr = (request.remote_addr or "").strip()
    return addr in {"127.0.0.1", "::1", "localhost"}


@app.before_request
def apply_guards():
    _maybe_cleanup_jobs()
    _maybe_prune_db()
    if app.config.get("TESTING"):
        return None
    if request.method not in {"POST", "PUT", "PATCH", "DELETE"}:
        return None
    if APP_API_TOKEN and not _is_local_request():
        sent_token = (request.headers.get("X-App-Token") or "").strip()
        if sent_token != APP_API_TOKEN:
            return jsonify({"ok": False, "error": "Invalid app token."}), 401
    return None


def _clone_config(headless: bool) -> CloneConfig:
    return CloneConfig(
        output_root=OUTPUT_ROOT_DIR,
        headless=headless,
        navigation_timeout=NAVIGATION_TIMEOUT_SECONDS,
        asset_timeout=ASSET_TIMEOUT_SECONDS,
        max_workers=FETCH_WORKERS,
    )


def _record_history(job_id: str, source_url: str, status: str, result: dict) -> None:
    try:
        store.add_clone_history(job_id, source_url, status, result)
    except sqlite3.Error as exc:
        logger.warning("Could not record clone history for %s: %s", job_id, exc)


def _start_clone_job(source_url: str, headless: bool) -> str:
    _claim_job_slot()
    job_id = ledger.create(source_url).id

    def _emit(kind: str, message: str) -> None:
        ledger.emit(job_id, kind, message)

    def _runner() -> None:
        try:
            try:
                cloner = WebsiteCloner(_clone_config(headless), emit=_emit)
                result = cloner.clone(source_url)
            except Exception as exc:
                logger.exception("Clone job %s crashed", job_id)
                payload = asdict(CloneResult(success=False, error=str(exc)))
                ledger.finish(job_id, False, payload, f"Fatal error: {exc}", event_type="error")
                _record_history(job_id, source_url, "failed", payload)
                return

            payload = asdict(result)
            message = "Clone completed successfully!" if result.success else f"Clone failed: {result.error}"
            ledger.finish(job_id, result.success, payload, message)
            _record_history(job_id, source_url, "completed" if result.success else "failed", payload)
        except JobStateError:
            logger.exception("Clone job %s finished twice", job_id)
        finally:
            _release_job_slot()

    thread = threading.Thread(target=_runner, name=f"clone-{job_id[:8]}", daemon=True)
    thread.start()
    return job_id


@app.get("/")
def index():
    return jsonify(
        {
            "ok": True,
            "service": "page-cloner",
            "endpoints": {
                "submit": "POST /api/clone",
                "status": "GET /api/jobs/<job_id>",
                "events": "GET /api/jobs/<job_id>/events",
                "jobs": "GET /api/jobs",
                "history": "GET /api/history",
                "health": "GET /api/health",
                "clones": "GET /clone/<folder>/index.html",
            },
        }
    )


@app.get("/api/health")
def health():
    return jsonify({"ok": True, "status": "ok", "timestamp": utc_now()})


@app.get("/api/diagnostics")
def diagnostics():
    return jsonify(
        {
            "ok": True,
            "config": {
                "max_active_jobs": MAX_ACTIVE_JOBS,
                "output_root_dir": str(OUTPUT_ROOT_DIR),
                "fetch_workers": FETCH_WORKERS,
                "asset_timeout_seconds": ASSET_TIMEOUT_SECONDS,
                "navigation_timeout_seconds": NAVIGATION_TIMEOUT_SECONDS,
                "headless": HEADLESS,
            },
            "runtime": {
                "active_jobs": ACTIVE_JOBS_COUNT,
                "jobs": ledger.status_counts(),
            },
            "storage": {
                "db_path": str(DB_PATH),
                "db_size_bytes": int(DB_PATH.stat().st_size) if DB_PATH.exists() else 0,
            },
        }
    )


@app.post("/api/clone")
def clone_start():
    data = request.get_json(silent=True) or request.form
    raw_url = str(data.get("url") or "").strip()
    if not raw_url:
        return jsonify({"ok": False, "error": "URL is required"}), 400
    try:
        source_url = normalize(raw_url)
    except InvalidUrl as exc:
        return jsonify({"ok": False, "error": str(exc), "error_type": "InvalidUrl"}), 400

    headless_raw = data.get("headless")
    headless = HEADLESS if headless_raw is None else _parse_bool(str(headless_raw), default=HEADLESS)
    try:
        job_id = _start_clone_job(source_url, headless)
    except JobCapacityError as exc:
        return jsonify({"ok": False, "error": str(exc)}), 429
    return jsonify({"ok": True, "job_id": job_id, "status": "running"})


@app.get("/api/jobs")
def jobs_list():
    return jsonify({"ok": True, "jobs": ledger.list_jobs()})


@app.get("/api/jobs/<job_id>")
def job_status(job_id: str):
    job = ledger.get(job_id)
    if not job:
        return jsonify({"ok": False, "error": "Job not found"}), 404
    return jsonify({"ok": True, **job})


@app.get("/api/jobs/<job_id>/events")
def job_events(job_id: str):
    try:
        subscription = ledger.subscribe(job_id)
    except KeyError:
        return jsonify({"ok": False, "error": "Job not found"}), 404

    def _stream():
        try:
            for event in subscription.stream(heartbeat=SSE_HEARTBEAT_SECONDS):
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event.to_dict())}\n\n"
        finally:
            ledger.unsubscribe(subscription)

    return Response(
        stream_with_context(_stream()),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.get("/api/history")
def clone_history():
    limit = _parse_int(request.args.get("limit"), 20, 1, 500)
    domain = (request.args.get("domain") or "").strip() or None
    return jsonify({"ok": True, "history": store.list_clone_history(limit=limit, domain=domain)})


@app.get("/clone/<path:subpath>")
def serve_clone(subpath: str):
    return send_from_directory(OUTPUT_ROOT_DIR, subpath)


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    host = os.environ.get("HOST", "127.0.0.1")
    port = int(os.environ.get("PORT", "5000"))
    debug = _parse_bool(os.environ.get("FLASK_DEBUG"), default=False)
    logger.info("Serving clones from %s", OUTPUT_ROOT_DIR)
    app.run(host=host, port=port, debug=debug, use_reloader=False, threaded=True)

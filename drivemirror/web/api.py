from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from drivemirror.core.config import AppConfig, clamp_page_limit, load_config
from drivemirror.core.logging_setup import engine_log_func
from drivemirror.providers.gdrive import DriveClient, SyncEngine, TreeStore
from drivemirror.providers.gdrive.db import init_db
from drivemirror.providers.gdrive.tree import assemble_tree, extract_folder_id, preview_tree
from drivemirror.web.security import require_user

router = APIRouter(prefix="/api")
logger = logging.getLogger("api")

SYNC_LOCKS_GUARD = threading.Lock()
SCHEDULER_STATE_LOCK = threading.Lock()
SCHEDULER_POLL_GRANULARITY_SEC = 1
SCHEDULER_MIN_INTERVAL_SEC = 10

DEFAULT_FOLDER_NAME = "Google Drive Folder"

_sync_locks: dict[str, threading.Lock] = {}
_scheduler_task: asyncio.Task | None = None
_scheduler_stop_event: asyncio.Event | None = None
_scheduler_state: dict[str, object] = {
    "running": False,
    "enabled": False,
    "interval_sec": 0,
    "last_started_at": None,
    "last_finished_at": None,
    "last_result": None,
    "last_error": None,
    "run_count": 0,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _sync_lock(sync_id: str) -> threading.Lock:
    with SYNC_LOCKS_GUARD:
        lock = _sync_locks.get(sync_id)
        if lock is None:
            lock = threading.Lock()
            _sync_locks[sync_id] = lock
        return lock


def _build_store(cfg: AppConfig) -> TreeStore:
    init_db(cfg.database.path)
    return TreeStore(cfg.database.path)


def _build_drive_client(cfg: AppConfig):
    return DriveClient(
        access_token=cfg.auth.access_token,
        token_file=cfg.auth.token_file,
        client_id=cfg.auth.client_id,
        client_secret=cfg.auth.client_secret,
        timeout=int(cfg.auth.timeout_sec),
    )


def _build_sync_engine() -> tuple[AppConfig, TreeStore, SyncEngine]:
    cfg = load_config()
    store = _build_store(cfg)
    client = _build_drive_client(cfg)
    engine = SyncEngine(cfg.model_dump(), store, client, engine_log_func)
    return cfg, store, engine


def _require_drive_token(client) -> None:
    if not client.get_access_token():
        raise HTTPException(status_code=403, detail="drive_not_linked")


def _engine_failure(action: str, e: Exception) -> HTTPException:
    if str(e) == "no_token":
        return HTTPException(status_code=403, detail="drive_not_linked")
    logger.exception("%s_failed: %s", action, e)
    return HTTPException(status_code=500, detail=f"{action}_failed: {e}")


def _owned_subscription(store: TreeStore, sync_id: str, user_id: str) -> dict[str, Any]:
    sub = store.get_subscription(sync_id)
    if not sub:
        raise HTTPException(status_code=404, detail="sync_not_found")
    if sub["user_id"] != user_id:
        raise HTTPException(status_code=403, detail="forbidden")
    return sub


def _poll_one(engine: SyncEngine, subscription: dict[str, Any], page_limit: int) -> dict[str, Any]:
    lock = _sync_lock(subscription["id"])
    if not lock.acquire(blocking=False):
        logger.warning("poll_skipped sync_busy sync_id=%s", subscription["id"])
        return {"sync_id": subscription["id"], "processed_changes": 0, "pages": 0, "skipped": "sync_busy"}
    try:
        return engine.poll(subscription, page_limit)
    finally:
        lock.release()


def _poll_all_subscriptions(page_limit: int | None = None) -> list[dict[str, Any]]:
    cfg, store, engine = _build_sync_engine()
    limit = clamp_page_limit(page_limit, default=cfg.sync.page_limit)
    results = []
    for sub in store.list_subscriptions():
        try:
            results.append(_poll_one(engine, sub, limit))
        except Exception as e:
            logger.exception("poll_failed sync_id=%s: %s", sub["id"], e)
            results.append({"sync_id": sub["id"], "processed_changes": 0, "pages": 0, "error": str(e)})
    return results


# ---- scheduler ----


def _scheduler_state_update(**kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state.update(kwargs)


def _scheduler_state_snapshot() -> dict[str, object]:
    with SCHEDULER_STATE_LOCK:
        return dict(_scheduler_state)


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


async def _scheduler_loop(stop_event: asyncio.Event) -> None:
    sched_logger = logging.getLogger("scheduler")
    next_run_at: float | None = None
    _scheduler_state_update(running=True, last_error=None, last_result=None)
    sched_logger.info("scheduler_started")

    try:
        while not stop_event.is_set():
            cfg = load_config()
            configured = int(cfg.sync.poll_interval_sec or 0)
            interval = max(configured, SCHEDULER_MIN_INTERVAL_SEC) if configured > 0 else 0
            _scheduler_state_update(enabled=interval > 0, interval_sec=interval)

            if interval <= 0:
                next_run_at = None
                await _wait_stop_or_timeout(stop_event, SCHEDULER_POLL_GRANULARITY_SEC)
                continue

            now_ts = time.time()
            if next_run_at is None:
                next_run_at = now_ts + interval
            if next_run_at > now_ts:
                await _wait_stop_or_timeout(stop_event, min(next_run_at - now_ts, SCHEDULER_POLL_GRANULARITY_SEC))
                continue

            _scheduler_state_update(last_started_at=_now_iso(), last_result="running", last_error=None)
            try:
                results = await asyncio.to_thread(_poll_all_subscriptions)
                processed = sum(int(r.get("processed_changes", 0)) for r in results)
                _scheduler_state_update(last_result="success", run_count=int(_scheduler_state_snapshot()["run_count"]) + 1)
                sched_logger.info("scheduled_poll_completed subscriptions=%s processed=%s", len(results), processed)
            except Exception as e:
                _scheduler_state_update(last_result="failed", last_error=str(e))
                sched_logger.exception("scheduled_poll_failed: %s", e)
            finally:
                _scheduler_state_update(last_finished_at=_now_iso())
                next_run_at = time.time() + interval
    finally:
        _scheduler_state_update(running=False)
        sched_logger.info("scheduler_stopped")


def start_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_task and not _scheduler_task.done():
        return

    _scheduler_stop_event = asyncio.Event()
    _scheduler_task = asyncio.create_task(_scheduler_loop(_scheduler_stop_event), name="drivemirror_scheduler")


async def stop_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_stop_event is not None:
        _scheduler_stop_event.set()

    if _scheduler_task is not None:
        try:
            await _scheduler_task
        except Exception:
            logging.getLogger("scheduler").exception("scheduler_stop_error")

    _scheduler_task = None
    _scheduler_stop_event = None
    _scheduler_state_update(running=False)


# ---- health ----


def _build_readiness_payload() -> dict:
    checks: dict[str, bool] = {
        "config_load": False,
        "database_parent_ready": False,
        "log_parent_ready": False,
        "drive_auth_configured": False,
        "scheduler_running": False,
    }
    errors: list[str] = []
    warnings: list[str] = []
    scheduler = _scheduler_state_snapshot()
    checks["scheduler_running"] = bool(scheduler.get("running"))

    cfg = None
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        checks["drive_auth_configured"] = bool(cfg.auth.access_token or cfg.auth.token_file)
        if not checks["drive_auth_configured"]:
            warnings.append("drive_auth_not_configured")

        try:
            Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
            checks["database_parent_ready"] = True
        except OSError as e:
            errors.append(f"database_parent_unavailable: {e}")

        try:
            Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
            checks["log_parent_ready"] = True
        except OSError as e:
            errors.append(f"log_parent_unavailable: {e}")

    ok = checks["config_load"] and checks["database_parent_ready"] and checks["log_parent_ready"]
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
        "scheduler": scheduler,
    }


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz():
    payload = _build_readiness_payload()
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


# ---- subscriptions ----


@router.get("/subscriptions")
def list_subscriptions(user_id: str = Depends(require_user)):
    store = _build_store(load_config())
    return {"ok": True, "items": store.list_subscriptions(user_id)}


@router.post("/subscriptions")
def create_subscription(payload: dict, user_id: str = Depends(require_user)):
    folder_id = str(payload.get("drive_folder_id") or "").strip()
    folder_name = str(payload.get("drive_folder_name") or "").strip()
    if not folder_id or not folder_name:
        raise HTTPException(status_code=400, detail="missing_fields")
    store = _build_store(load_config())
    sub = store.create_subscription(user_id, folder_id, folder_name)
    logger.info("subscription_created sync_id=%s folder_id=%s", sub["id"], folder_id)
    return {"ok": True, "subscription": sub}


@router.get("/subscriptions/summary")
def subscriptions_summary(user_id: str = Depends(require_user)):
    store = _build_store(load_config())
    items = []
    for sub in store.list_subscriptions(user_id):
        cursor = store.get_cursor_row(sub["id"])
        items.append(
            {
                "id": sub["id"],
                "name": sub["drive_folder_name"],
                "drive_id": sub["drive_folder_id"],
                "created_at": sub["created_at"],
                "counts": store.node_counts(sub["id"]),
                "last_updated_at": cursor["updated_at"] if cursor else None,
                "has_cursor": bool(cursor and cursor.get("page_token")),
            }
        )
    return {"ok": True, "items": items}


# ---- drive ----


@router.post("/drive/verify")
def drive_verify(payload: dict):
    url = str(payload.get("url") or "").strip()
    if not url:
        raise HTTPException(status_code=400, detail="missing_url")
    folder_id = extract_folder_id(url)
    if not folder_id:
        raise HTTPException(status_code=400, detail="invalid_link")

    client = _build_drive_client(load_config())
    if not client.get_access_token():
        return {"ok": False, "folder_id": folder_id, "name": DEFAULT_FOLDER_NAME, "reason": "no_drive_token"}
    try:
        meta = client.get_file_meta(folder_id, fields="id,name,mimeType")
    except RuntimeError as e:
        logger.warning("drive_verify_failed folder_id=%s error=%s", folder_id, e)
        return {
            "ok": False,
            "folder_id": folder_id,
            "name": DEFAULT_FOLDER_NAME,
            "reason": "drive_resp_not_ok",
            "error": str(e),
        }
    return {"ok": True, "folder_id": folder_id, "name": meta.get("name") or DEFAULT_FOLDER_NAME}


@router.post("/drive/tree")
def drive_tree_preview(payload: dict, user_id: str = Depends(require_user)):
    folder_id = str(payload.get("folder_id") or "").strip()
    if not folder_id:
        raise HTTPException(status_code=400, detail="missing_folder_id")
    cfg = load_config()
    client = _build_drive_client(cfg)
    _require_drive_token(client)
    try:
        result = preview_tree(client, folder_id, limit_nodes=cfg.sync.preview_node_limit)
    except Exception as e:
        raise _engine_failure("drive_tree", e)
    return {"ok": True, **result}


@router.post("/drive/sync/start")
def sync_start(payload: dict, user_id: str = Depends(require_user)):
    sync_id = str(payload.get("sync_id") or "").strip()
    if not sync_id:
        raise HTTPException(status_code=400, detail="missing_sync_id")

    _cfg, store, engine = _build_sync_engine()
    sub = _owned_subscription(store, sync_id, user_id)
    folder_id = str(payload.get("folder_id") or "").strip() or sub["drive_folder_id"]
    if folder_id != sub["drive_folder_id"]:
        raise HTTPException(status_code=400, detail="folder_mismatch")
    _require_drive_token(engine.client)

    lock = _sync_lock(sync_id)
    if not lock.acquire(blocking=False):
        raise HTTPException(status_code=409, detail="sync_busy")
    try:
        result = engine.crawl(sync_id, folder_id)
    except Exception as e:
        raise _engine_failure("sync_start", e)
    finally:
        lock.release()
    return {"ok": True, **result}


@router.post("/drive/sync/poll")
def sync_poll(payload: dict | None = None, user_id: str = Depends(require_user)):
    payload = payload or {}
    cfg, store, engine = _build_sync_engine()
    page_limit = clamp_page_limit(payload.get("page_limit"), default=cfg.sync.page_limit)

    sync_id = str(payload.get("sync_id") or "").strip()
    drive_id = str(payload.get("drive_id") or "").strip()
    if sync_id:
        subs = [_owned_subscription(store, sync_id, user_id)]
    elif drive_id:
        sub = store.find_subscription_by_folder(drive_id, user_id=user_id)
        subs = [sub] if sub else []
    else:
        subs = store.list_subscriptions(user_id)
    _require_drive_token(engine.client)

    results = []
    for sub in subs:
        try:
            results.append(_poll_one(engine, sub, page_limit))
        except Exception as e:
            if sync_id or str(e) == "no_token":
                raise _engine_failure("sync_poll", e)
            logger.exception("poll_failed sync_id=%s: %s", sub["id"], e)
            results.append({"sync_id": sub["id"], "processed_changes": 0, "pages": 0, "error": str(e)})
    return {"ok": True, "results": results}


@router.get("/drive/tree/by-sync")
def drive_tree_by_sync(sync_id: str | None = None, drive_id: str | None = None, user_id: str = Depends(require_user)):
    if not sync_id and not drive_id:
        raise HTTPException(status_code=400, detail="missing_sync_id_or_drive_id")
    store = _build_store(load_config())
    if sync_id:
        sub = _owned_subscription(store, sync_id, user_id)
    else:
        sub = store.find_subscription_by_folder(drive_id or "", user_id=user_id)
        if not sub:
            raise HTTPException(status_code=404, detail="sync_not_found")
    return {"ok": True, "tree": assemble_tree(store, sub)}

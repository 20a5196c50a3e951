import json
from collections import deque
from datetime import datetime
from typing import Any, Dict, List, Optional

from .drive_client import FOLDER_MIME_TYPE
from .store import TreeStore


def _as_int(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def iso_or_none(value) -> Optional[str]:
    if not value:
        return None
    raw = str(value)
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).isoformat()
    except ValueError:
        return raw


def node_row(sync_id: str, item: dict, parent_id: Optional[str]) -> Dict[str, Any]:
    """Map a Drive file resource onto a drive_nodes row."""
    owners = item.get("owners") or []
    owner = owners[0] if owners and isinstance(owners[0], dict) else {}
    video = item.get("videoMediaMetadata") or {}
    mime_type = item.get("mimeType") or ""
    return {
        "sync_id": sync_id,
        "drive_id": item.get("id"),
        "name": item.get("name"),
        "mime_type": mime_type or None,
        "is_folder": 1 if mime_type == FOLDER_MIME_TYPE else 0,
        "parent_drive_id": parent_id,
        "owner_name": owner.get("displayName"),
        "owner_email": owner.get("emailAddress"),
        "size": _as_int(item.get("size")),
        "created_time": iso_or_none(item.get("createdTime")),
        "modified_time": iso_or_none(item.get("modifiedTime")),
        "video_duration_ms": _as_int(video.get("durationMillis")),
        "video_width": _as_int(video.get("width")),
        "video_height": _as_int(video.get("height")),
    }


class SyncEngine:
    """Mirror a Drive folder tree into the row store and keep it current.

    Callers must serialize crawl/poll per subscription: both do
    read-modify-write on the same rows and cursor.
    """

    def __init__(self, cfg: dict, store: TreeStore, client, log_func):
        self.cfg = cfg
        self.store = store
        self.client = client
        self.log_func = log_func

        sync_cfg = cfg.get("sync", {})
        self.change_page_size = int(sync_cfg.get("change_page_size", 1000))

    def _log(self, level: str, module: str, message: str, detail: Optional[str] = None):
        self.log_func(level, module, message, detail)

    # ---- initial crawl ----

    def crawl(self, sync_id: str, root_id: str) -> dict:
        # Cursor first: anything changed while we list is replayed by the next poll.
        start_token = self.client.get_start_page_token()

        root_meta = self.client.get_file_meta(root_id)
        rows: List[Dict[str, Any]] = [node_row(sync_id, root_meta, None)]

        queue = deque([root_meta["id"]])
        # A drive id is written once, under the first folder that lists it.
        recorded = {root_meta["id"]}
        folders = 0

        while queue:
            folder_id = queue.popleft()
            folders += 1

            for child in self.client.list_children_once(folder_id):
                child_id = child.get("id")
                if not child_id or child_id in recorded:
                    continue
                recorded.add(child_id)
                rows.append(node_row(sync_id, child, folder_id))
                if child.get("mimeType") == FOLDER_MIME_TYPE:
                    queue.append(child_id)

        inserted = self.store.upsert_nodes(rows)
        self.store.set_cursor(sync_id, start_token)

        self._log(
            "INFO",
            "crawl",
            "crawl_success",
            json.dumps({"sync_id": sync_id, "root_id": root_id, "inserted": inserted, "folders": folders}, ensure_ascii=False),
        )
        return {"sync_id": sync_id, "inserted": inserted}

    # ---- incremental poll ----

    def ensure_cursor(self, sync_id: str) -> str:
        token = self.store.get_cursor(sync_id)
        if token:
            return token
        # Never start from position zero; that would replay the whole history.
        token = self.client.get_start_page_token()
        self.store.set_cursor(sync_id, token)
        self._log("INFO", "poll", "cursor_initialized", json.dumps({"sync_id": sync_id}, ensure_ascii=False))
        return token

    def _resolve_parent(self, sync_id: str, root_id: str, parents: List[str]) -> Optional[str]:
        if root_id in parents:
            return root_id
        known = self.store.existing_ids(sync_id, parents)
        for parent_id in parents:
            if parent_id in known:
                return parent_id
        return None

    def _apply_change(self, sync_id: str, root_id: str, change: dict, summary: dict) -> None:
        file = change.get("file") if isinstance(change.get("file"), dict) else None
        file_id = change.get("fileId") or (file or {}).get("id")
        if not file_id:
            summary["skipped"] += 1
            return

        if change.get("removed") or (file or {}).get("trashed"):
            self.store.delete_node(sync_id, file_id)
            summary["deleted"] += 1
            summary["processed_changes"] += 1
            return

        if file is None:
            summary["skipped"] += 1
            return

        parents = [p for p in (file.get("parents") or []) if isinstance(p, str)]
        parent_id = self._resolve_parent(sync_id, root_id, parents)
        if parent_id is None and file_id != root_id:
            # Lives outside this subscription's subtree.
            summary["discarded"] += 1
            return

        self.store.upsert_node(node_row(sync_id, {**file, "id": file_id}, parent_id))
        summary["upserted"] += 1
        summary["processed_changes"] += 1

    def poll(self, subscription: dict, page_limit: int) -> dict:
        sync_id = subscription["id"]
        root_id = subscription["drive_folder_id"]

        page_token = self.ensure_cursor(sync_id)
        summary = {
            "sync_id": sync_id,
            "processed_changes": 0,
            "pages": 0,
            "upserted": 0,
            "deleted": 0,
            "discarded": 0,
            "skipped": 0,
            "stopped": "budget",
        }

        while summary["pages"] < page_limit:
            res = self.client.list_changes(page_token, page_size=self.change_page_size)
            if not res.get("ok"):
                # Transient: keep the cursor on the failed page so it is re-fetched.
                summary["stopped"] = "provider_error"
                self._log(
                    "WARN",
                    "poll",
                    "changes_page_failed",
                    json.dumps({"sync_id": sync_id, "status": res.get("status"), "error": res.get("error")}, ensure_ascii=False),
                )
                break

            for change in res.get("changes", []):
                self._apply_change(sync_id, root_id, change, summary)

            summary["pages"] += 1
            next_token = res.get("next_page_token")
            if next_token:
                page_token = next_token
                self.store.set_cursor(sync_id, page_token)
                continue

            page_token = res.get("new_start_page_token") or page_token
            self.store.set_cursor(sync_id, page_token)
            summary["stopped"] = "exhausted"
            break

        self._log("INFO", "poll", "poll_finished", json.dumps(summary, ensure_ascii=False))
        return summary
